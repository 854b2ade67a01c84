"""
Relay-mode device node.

All devices connect to one shared relay, which owns the registry, the
pairings and target resolution. This node mirrors what the relay tells it,
uploads outgoing payloads to the relay and reassembles payloads the relay
delivers.
"""

import logging

from snapsend.config import RELAY_URL
from snapsend.discovery.identity import IdentityService
from snapsend.discovery.models import DeviceEvent, DeviceEventKind
from snapsend.discovery.relay import RELAY_HANDLE, RelayDiscovery
from snapsend.errors import ChannelLost
from snapsend.node.base import LOCAL_HANDLE, Node
from snapsend.pairing.models import Pairing
from snapsend.relay import protocol
from snapsend.transfer.manager import store_received
from snapsend.transfer.models import (
    FileMeta,
    TargetDescriptor,
    TargetKind,
    Transfer,
    TransferDirection,
)
from snapsend.transfer.payload import FileSource, PayloadSource, encode_content, is_text_payload

logger = logging.getLogger(__name__)

# relay notifications shown to the UI as they arrive
_PASSTHROUGH = (
    protocol.PairingMessage,
    protocol.ConnectionTerminated,
    protocol.FileSentConfirmation,
    protocol.FileQueued,
    protocol.FileSaved,
    protocol.TransferFailed,
    protocol.ChunkProgressMessage,
    protocol.ErrorMessage,
)


class RelayNode(Node):
    """A device attached to a shared relay endpoint."""

    mode = "relay"

    def __init__(
        self,
        identity: IdentityService,
        discovery: RelayDiscovery | None = None,
        relay_url: str = RELAY_URL,
        **kwargs,
    ) -> None:
        super().__init__(identity, **kwargs)
        self.discovery = discovery or RelayDiscovery(identity, url=relay_url)
        self.discovery.on_message(self._on_relay_message)
        self.discovery.on_drop(self._on_relay_drop)
        self._senders: dict[str, str] = {}  # transfer id -> sender name

    async def start(self) -> None:
        await self.engine.start()
        await self.discovery.start()
        self._start_consuming()
        logger.info(f"Relay node {self.identity.display_name} started ({self.discovery.url})")

    async def stop(self) -> None:
        self._stop_consuming()
        await self.discovery.stop()
        await self.engine.stop()
        logger.info("Relay node stopped")

    def status(self) -> dict:
        status = super().status()
        status.update({
            "relayUrl": self.discovery.url,
            "connected": self.discovery.connected,
            "handle": self.discovery.handle,
        })
        return status

    # --- Relay events ---

    async def _on_device_event(self, event: DeviceEvent) -> None:
        if event.kind == DeviceEventKind.APPEARED:
            self.registry.register(event.stable_id, event.display_name, event.handle)
        else:
            self.registry.mark_offline(event.handle)

    async def _on_relay_message(self, message) -> None:
        if isinstance(message, protocol.FileReceived):
            self._senders[message.data.file.transfer_id] = message.data.from_device
            await self.engine.accept(RELAY_HANDLE, message.data.file)
        elif isinstance(message, protocol.FileChunkMessage):
            await self.engine.accept_chunk(RELAY_HANDLE, message.data)
        elif isinstance(message, _PASSTHROUGH):
            self.events.publish(message.type, message.data.to_wire())

    async def _on_relay_drop(self) -> None:
        """Every transfer riding the relay connection fails with it."""
        self.engine.cancel(LOCAL_HANDLE)
        self.engine.discard_from(RELAY_HANDLE, reason="relay connection lost")
        self._senders.clear()
        self.events.publish("relay-disconnected", {"url": self.discovery.url})

    async def _on_received(self, meta: FileMeta, payload: bytes, origin: str) -> None:
        await store_received(
            meta,
            payload,
            self._senders.pop(meta.transfer_id, ""),
            self.store,
            self.files,
            self.events,
        )

    # --- UI operations ---

    async def _send(self, transfer: Transfer, source: PayloadSource, target: TargetDescriptor) -> Transfer:
        transfer = transfer.model_copy(update={"target": str(target), "size_bytes": source.size})

        if target.kind == TargetKind.LOCAL:
            return await self._save_local(transfer, source)

        channel = self.discovery.channel
        if channel is None or channel.closed:
            logger.warning(f"Cannot send {transfer.original_name}: relay not connected")
            self.events.publish(
                "transfer-failed",
                {
                    "transferId": transfer.id,
                    "originalName": transfer.original_name,
                    "direction": TransferDirection.SENT.value,
                    "reason": "not connected to relay",
                },
            )
            return transfer

        record = self.store.record_sent(
            transfer.model_copy(update={"direction": TransferDirection.SENT})
        )
        self.engine.submit(
            transfer,
            source,
            channel,
            origin=LOCAL_HANDLE,
            from_device=self.identity.display_name,
            target_handle=None if target.kind == TargetKind.BROADCAST else str(target),
        )
        return record

    async def _save_local(self, transfer: Transfer, source: PayloadSource) -> Transfer:
        record = transfer.model_copy(update={"direction": TransferDirection.SAVED_LOCAL})
        if isinstance(source, FileSource):
            record = record.model_copy(update={"content_ref": source.path})
        else:
            content, encoding = encode_content(
                await source.read_all(), is_text_payload(record.mime_type, record.is_clipboard)
            )
            record = record.model_copy(update={"content": content, "encoding": encoding})
        record = self.store.record_sent(record)
        self.events.publish("file-saved", {"transfer": record.to_wire()})
        return record

    def list_pairings(self) -> list[Pairing]:
        return self.discovery.pairings()

    async def pair(self, handle: str) -> None:
        await self.discovery.connect(handle)

    async def terminate(self, pairing_id: str) -> bool:
        await self.discovery.send("terminate-connection", {"pairingId": pairing_id})
        return True

    async def rename(self, name: str) -> None:
        self.identity.rename(name)
        if self.discovery.connected:
            try:
                await self.discovery.send("device-name-update", {"name": self.identity.display_name})
            except ChannelLost as e:
                # device-setup carries the new name once the relay is back
                logger.warning(f"Relay dropped before the rename reached it: {e}")
