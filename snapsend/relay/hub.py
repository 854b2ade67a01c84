"""
Relay hub: the signaling multiplexer.

Each attached socket is one device handle. Inbound messages are decoded into
tagged models and dispatched to the registry, the pairing coordinator and the
transfer pipeline; events those components publish are routed back to the
sockets they are addressed to. State mutations triggered by socket messages
are serialized through one lock.
"""

import asyncio
import logging
import uuid

from fastapi import WebSocket, WebSocketDisconnect

from snapsend.config import CHUNK_ASSEMBLY_TIMEOUT, CHUNK_SIZE, CHUNK_THRESHOLD
from snapsend.discovery.registry import DeviceRegistry, RegistryChange, RegistryChangeKind
from snapsend.errors import ChannelLost, ProtocolError, UnreachableTarget
from snapsend.events import Event, EventBus
from snapsend.pairing.coordinator import PairingCoordinator
from snapsend.relay import protocol
from snapsend.storage import FileStore, TransferStore
from snapsend.transfer.channel import WebSocketChannel
from snapsend.transfer.engine import ChunkedTransferEngine
from snapsend.transfer.manager import TransferManager
from snapsend.transfer.models import FileMeta, Outcome, Route, TargetDescriptor, Transfer
from snapsend.transfer.payload import BytesSource, FileSource
from snapsend.transfer.resolver import TargetResolver

logger = logging.getLogger(__name__)


class RelayHub:
    """Owns the registry, pairings and transfer pipeline of one relay endpoint."""

    def __init__(
        self,
        files: FileStore,
        store: TransferStore | None = None,
        chunk_size: int = CHUNK_SIZE,
        threshold: int = CHUNK_THRESHOLD,
        assembly_timeout: float = CHUNK_ASSEMBLY_TIMEOUT,
        auto_pair: bool = True,
    ) -> None:
        self.events = EventBus()
        self.registry = DeviceRegistry()
        # device-list events must precede the coordinator's pairing events
        self.registry.on_change(self._on_registry_change)
        self.coordinator = PairingCoordinator(self.registry, self.events, auto_pair=auto_pair)
        self.resolver = TargetResolver(self.registry, self.coordinator)
        self.engine = ChunkedTransferEngine(
            self.events,
            chunk_size=chunk_size,
            threshold=threshold,
            assembly_timeout=assembly_timeout,
        )
        self.engine.on_received(self._on_upload)
        self.files = files
        self.transfers = TransferManager(
            self.registry,
            self.coordinator,
            self.resolver,
            self.engine,
            self.events,
            store or TransferStore(),
            files,
            channel_for=self._channel_for,
            message_type="file-received",
        )

        self._channels: dict[str, WebSocketChannel] = {}
        self._lock = asyncio.Lock()
        self._queue = self.events.subscribe()
        self._pump_task: asyncio.Task | None = None

    async def start(self) -> None:
        await self.engine.start()
        self._ensure_pump()

    async def stop(self) -> None:
        if self._pump_task:
            self._pump_task.cancel()
        await self.transfers.stop()
        await self.engine.stop()
        for channel in list(self._channels.values()):
            await channel.close()
        self._channels.clear()

    # --- Sockets ---

    def channel(self, handle: str) -> WebSocketChannel | None:
        return self._channels.get(handle)

    def _channel_for(self, route: Route) -> WebSocketChannel | None:
        return self._channels.get(route.handle)

    async def attach(self, websocket) -> WebSocketChannel:
        """Give an accepted socket a handle. It is not a device until device-setup."""
        channel = WebSocketChannel(uuid.uuid4().hex[:12], websocket)
        async with self._lock:
            self._channels[channel.handle] = channel
        self._ensure_pump()
        logger.info(f"Socket attached: {channel.handle} (total {len(self._channels)})")
        return channel

    async def detach(self, handle: str) -> None:
        channel = self._channels.pop(handle, None)
        if channel is None:
            return
        self.engine.discard_from(handle)
        self.engine.cancel(handle)
        async with self._lock:
            self.registry.mark_offline(handle)
        await channel.close()
        logger.info(f"Socket detached: {handle} (total {len(self._channels)})")

    async def serve(self, websocket: WebSocket) -> None:
        """Read loop for one accepted socket."""
        channel = await self.attach(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.dispatch(channel.handle, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self.detach(channel.handle)

    async def forward(self, handle: str, message: dict) -> None:
        """Send a message straight to an attached socket."""
        channel = self._channels.get(handle)
        if channel is None:
            raise UnreachableTarget(handle)
        await channel.send(message)

    # --- Event routing ---

    def _ensure_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while True:
            event = await self._queue.get()
            await self._route(event)

    async def _route(self, event: Event) -> None:
        message = event.to_message()
        for handle, channel in list(self._channels.items()):
            if not event.addressed_to(handle):
                continue
            try:
                await channel.send(message)
            except ChannelLost as e:
                logger.warning(f"Dropping {event.type} for {handle}: {e.reason}")

    async def drain(self) -> None:
        """Route every queued event now."""
        while not self._queue.empty():
            await self._route(self._queue.get_nowait())

    def _on_registry_change(self, change: RegistryChange) -> None:
        data = {
            "device": change.device.to_wire(),
            "onlineDevices": [d.to_wire() for d in self.registry.list_online()],
        }
        if change.kind == RegistryChangeKind.REGISTERED:
            self.events.publish("setup-complete", data, targets=[change.handle])
            self.events.publish("device-connected", data, exclude=[change.handle])
        elif change.kind == RegistryChangeKind.OFFLINE:
            self.events.publish("device-disconnected", data)
        elif change.kind == RegistryChangeKind.RELEASED:
            # still online under another handle
            self.events.publish("device-connected", data)
        elif change.kind == RegistryChangeKind.RENAMED:
            self.events.publish("name-updated", data)

    # --- Dispatch ---

    async def dispatch(self, handle: str, raw) -> None:
        """Handle one inbound message. Errors go back to the sender as `error`."""
        try:
            message = protocol.decode_client_message(raw)
            await self._handle(handle, message)
        except (ProtocolError, UnreachableTarget) as e:
            logger.warning(f"Rejected message from {handle}: {e}")
            self.events.publish("error", {"message": str(e)}, targets=[handle])

    async def _handle(self, handle: str, message) -> None:
        if isinstance(message, protocol.DeviceSetup):
            async with self._lock:
                self.registry.register(message.data.stable_id, message.data.name, handle)
            return

        stable_id = self.registry.stable_id_for(handle)
        if stable_id is None:
            raise ProtocolError("Device setup required before any other message")

        if isinstance(message, protocol.DeviceNameUpdate):
            async with self._lock:
                self.registry.rename(stable_id, message.data.name)
        elif isinstance(message, protocol.PairRequest):
            async with self._lock:
                self.coordinator.pair(handle, message.data.target_device_handle)
        elif isinstance(message, protocol.TerminateConnection):
            async with self._lock:
                pairing = self.coordinator.terminate(message.data.pairing_id, handle)
            if pairing is None:
                logger.debug(f"Pairing {message.data.pairing_id} was not active")
        elif isinstance(message, protocol.FileTransferMessage):
            meta = FileMeta.model_validate(message.data.model_dump(exclude={"from_device"}))
            await self.engine.accept(handle, meta, notify=[handle])
        elif isinstance(message, protocol.FileChunkMessage):
            await self.engine.accept_chunk(handle, message.data)

    async def _on_upload(self, meta: FileMeta, payload: bytes, origin: str) -> None:
        """A device finished uploading a payload; route it on."""
        device = self.registry.get_by_handle(origin)
        target = (
            TargetDescriptor.local() if meta.save_local
            else TargetDescriptor.parse(meta.target_device_handle)
        )
        transfer = Transfer(
            id=meta.transfer_id,
            filename=meta.filename,
            original_name=meta.original_name,
            mime_type=meta.mime_type,
            size_bytes=len(payload),
            is_clipboard=meta.is_clipboard,
            from_device=device.display_name if device else origin,
        )
        if self.engine.is_chunked(len(payload)):
            source = FileSource(await self.files.write_bytes(meta.filename, payload))
        else:
            source = BytesSource(payload)

        resolution = await self.transfers.send(transfer, source, target, origin)
        if meta.is_clipboard and resolution.outcome == Outcome.DELIVER_NOW:
            self.events.publish(
                "clipboard-sync",
                {
                    "content": payload.decode("utf-8", errors="replace"),
                    "fromDevice": transfer.from_device,
                },
                targets=[r.handle for r in resolution.routes],
            )

    # --- Inspection ---

    def list_devices(self):
        return self.registry.list_known()

    def list_pairings(self):
        return self.coordinator.list_all()

    def list_transfers(self):
        return self.transfers.list_transfers()
