"""
Local-network device node.

Links to other devices directly. An established link is the pairing, so
auto-pairing by device count does not apply here. The node also hosts a
relay endpoint of its own so that clients without direct links (browsers,
phones) can attach to it and be reached by its peers.
"""

import asyncio
import logging

from snapsend.discovery.identity import IdentityService
from snapsend.discovery.lan import LocalNetworkDiscovery
from snapsend.discovery.models import Device, DeviceEvent, DeviceEventKind
from snapsend.discovery.registry import RegistryChange
from snapsend.discovery.service import BeaconService
from snapsend.errors import ChannelLost, UnreachableTarget
from snapsend.node.base import LOCAL_HANDLE, Node
from snapsend.pairing.coordinator import PairingCoordinator
from snapsend.pairing.models import Pairing
from snapsend.relay import protocol
from snapsend.relay.hub import RelayHub
from snapsend.transfer.channel import Channel, RelayedChannel
from snapsend.transfer.manager import TransferManager, store_received
from snapsend.transfer.models import FileMeta, Route, TargetDescriptor, Transfer
from snapsend.transfer.payload import PayloadSource
from snapsend.transfer.resolver import TargetResolver

logger = logging.getLogger(__name__)


class AttachedClientChannel(Channel):
    """A client attached to this node's relay endpoint, spoken to in the relay dialect."""

    def __init__(self, inner: Channel) -> None:
        super().__init__(inner.handle)
        self._inner = inner

    @property
    def closed(self) -> bool:
        return self._closed or self._inner.closed

    async def _write(self, message: dict) -> None:
        await self._inner.send(protocol.to_client_message(message))


class LanNode(Node):
    """A device that discovers and links with peers over the local network."""

    mode = "lan"

    def __init__(
        self,
        identity: IdentityService,
        discovery: LocalNetworkDiscovery | None = None,
        **kwargs,
    ) -> None:
        super().__init__(identity, **kwargs)
        self.discovery = discovery or LocalNetworkDiscovery(identity, BeaconService(identity))
        self.discovery.on_message(self._on_peer_message)

        self.coordinator = PairingCoordinator(self.registry, self.events, auto_pair=False)
        self.resolver = TargetResolver(self.registry, self.coordinator)
        self.transfers = TransferManager(
            self.registry,
            self.coordinator,
            self.resolver,
            self.engine,
            self.events,
            self.store,
            self.files,
            channel_for=self._channel_for,
        )

        self.hub = RelayHub(self.files, **self.engine_options)
        self.hub.registry.on_change(self._on_clients_changed)
        self._relayed: dict[str, list[Device]] = {}  # peer handle -> its attached clients

    async def start(self) -> None:
        self.registry.register(self.identity.stable_id, self.identity.display_name, LOCAL_HANDLE)
        await self.engine.start()
        await self.hub.start()
        await self.discovery.start()
        self._start_consuming()
        logger.info(f"LAN node {self.identity.display_name} started")

    async def stop(self) -> None:
        self._stop_consuming()
        await self.discovery.stop()
        await self.hub.stop()
        await self.transfers.stop()
        await self.engine.stop()
        logger.info("LAN node stopped")

    # --- Links ---

    def _channel_for(self, route: Route) -> Channel | None:
        if route.handle == LOCAL_HANDLE:
            client = self.hub.channel(route.relay_to) if route.relay_to else None
            return AttachedClientChannel(client) if client else None
        channel = self.discovery.channel(route.handle)
        if channel is not None and route.relay_to:
            return RelayedChannel(channel, route.relay_to)
        return channel

    async def _on_device_event(self, event: DeviceEvent) -> None:
        if event.kind == DeviceEventKind.APPEARED:
            self.registry.register(event.stable_id, event.display_name, event.handle)
            self.coordinator.pair(LOCAL_HANDLE, event.handle, auto=True)
            await self._announce_clients([event.handle])
            return

        self.engine.discard_from(event.handle, reason="device lost")
        self.registry.mark_offline(event.handle)
        self.resolver.drop_host(event.handle)
        if self._relayed.pop(event.handle, None) is not None:
            self._publish_relayed()

    # --- Relayed clients ---

    def relayed_clients(self) -> dict:
        clients = {LOCAL_HANDLE: self.hub.registry.list_online()}
        clients.update(self._relayed)
        return {host: [d.to_wire() for d in devices] for host, devices in clients.items()}

    def _publish_relayed(self) -> None:
        self.events.publish("relay-devices", {"clients": self.relayed_clients()})

    def _on_clients_changed(self, change: RegistryChange) -> None:
        clients = self.hub.registry.list_online()
        self.resolver.set_relay_routes(LOCAL_HANDLE, {d.handle: d.stable_id for d in clients})
        self.transfers.flush_ready()
        self._publish_relayed()
        asyncio.create_task(self._announce_clients(self.discovery.handles()))

    async def _announce_clients(self, handles: list[str]) -> None:
        message = protocol.envelope(
            "relay-devices",
            {"devices": [d.to_wire() for d in self.hub.registry.list_online()]},
        )
        for handle in handles:
            channel = self.discovery.channel(handle)
            if channel is None:
                continue
            try:
                await channel.send(message)
            except ChannelLost as e:
                logger.warning(f"Could not announce clients to {handle}: {e.reason}")

    # --- Inbound ---

    async def _on_peer_message(self, channel: Channel, raw: dict) -> None:
        message = protocol.decode_peer_message(raw)
        origin = channel.handle

        if isinstance(message, protocol.FileTransferMessage):
            meta = FileMeta.model_validate(message.data.model_dump(exclude={"from_device"}))
            await self.engine.accept(origin, meta)
        elif isinstance(message, protocol.FileChunkMessage):
            await self.engine.accept_chunk(origin, message.data)
        elif isinstance(message, protocol.FileReceivedAck):
            logger.info(f"{origin} confirmed receipt of {message.data.filename}")
        elif isinstance(message, protocol.RelayDevices):
            self._relayed[origin] = message.data.devices
            self.resolver.set_relay_routes(
                origin, {d.handle: d.stable_id for d in message.data.devices}
            )
            self.transfers.flush_ready()
            self._publish_relayed()
        elif isinstance(message, protocol.RelayForward):
            try:
                await self.hub.forward(
                    message.data.target, protocol.to_client_message(message.data.message)
                )
            except (UnreachableTarget, ChannelLost) as e:
                logger.warning(f"Cannot forward to relayed client: {e}")

    async def _on_received(self, meta: FileMeta, payload: bytes, origin: str) -> None:
        device = self.registry.get_by_handle(origin)
        await store_received(
            meta,
            payload,
            device.display_name if device else origin,
            self.store,
            self.files,
            self.events,
        )
        channel = self.discovery.channel(origin)
        if channel is None:
            return
        try:
            await channel.send(protocol.envelope(
                "file-received-ack",
                {"transferId": meta.transfer_id, "filename": meta.filename},
            ))
        except ChannelLost as e:
            logger.warning(f"Could not acknowledge {meta.filename}: {e.reason}")

    # --- UI operations ---

    async def _send(self, transfer: Transfer, source: PayloadSource, target: TargetDescriptor) -> Transfer:
        await self.transfers.send(transfer, source, target, LOCAL_HANDLE)
        return self.store.get(transfer.id) or transfer

    def list_pairings(self) -> list[Pairing]:
        return self.coordinator.list_all()

    def list_pending(self) -> list:
        return self.transfers.list_pending()

    def delete_transfer(self, transfer_id: str) -> bool:
        return self.transfers.delete_transfer(transfer_id)

    async def pair(self, handle: str) -> Pairing | None:
        """Pair with a linked peer, or dial it first."""
        if self.registry.is_online(handle):
            return self.coordinator.pair(LOCAL_HANDLE, handle)
        await self.discovery.connect(handle)
        return None

    async def terminate(self, pairing_id: str) -> bool:
        return self.coordinator.terminate(pairing_id, LOCAL_HANDLE) is not None

    async def rename(self, name: str) -> None:
        self.identity.rename(name)
        self.registry.rename(self.identity.stable_id, self.identity.display_name)
