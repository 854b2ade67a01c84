"""
Relay discovery strategy.

The device keeps one WebSocket open to the shared relay endpoint. The relay
owns the canonical registry; this side mirrors the online-device list it
broadcasts and turns differences into DeviceAppeared/DeviceLost events.
A dropped connection is retried forever with a fixed delay, and every device
learned through it is reported lost until the relay says otherwise.
"""

import asyncio
import logging

import websockets

from snapsend.config import RECONNECT_DELAY, RELAY_URL
from snapsend.discovery.identity import IdentityService
from snapsend.discovery.models import Device, DeviceEvent, DeviceEventKind
from snapsend.discovery.provider import DiscoveryProvider
from snapsend.errors import ChannelLost, ProtocolError
from snapsend.pairing.models import Pairing, PairingStatus
from snapsend.relay import protocol
from snapsend.transfer.channel import ClientSocketChannel

logger = logging.getLogger(__name__)

RELAY_HANDLE = "relay"


class RelayDiscovery(DiscoveryProvider):
    """Client side of the relay signaling endpoint."""

    def __init__(
        self,
        identity: IdentityService,
        url: str = RELAY_URL,
        reconnect_delay: float = RECONNECT_DELAY,
    ) -> None:
        super().__init__()
        self.identity = identity
        self.url = url
        self._reconnect_delay = reconnect_delay
        self.channel: ClientSocketChannel | None = None
        self.handle: str | None = None  # our handle as assigned by the relay
        self._devices: dict[str, Device] = {}  # handle -> device, excluding us
        self._pairings: dict[str, Pairing] = {}
        self._drop_callbacks: list = []
        self._task: asyncio.Task | None = None

    def on_drop(self, callback) -> None:
        """Register a callback for a lost relay connection: async fn()."""
        self._drop_callbacks.append(callback)

    @property
    def connected(self) -> bool:
        return self.channel is not None and not self.channel.closed

    async def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
        if self.channel:
            await self.channel.close()

    async def _run(self) -> None:
        while True:
            try:
                async with websockets.connect(
                    self.url, max_size=None, ping_interval=20, ping_timeout=60
                ) as ws:
                    self.channel = ClientSocketChannel(RELAY_HANDLE, ws)
                    logger.info(f"Connected to relay {self.url}")
                    await self.send("device-setup", {
                        "name": self.identity.display_name,
                        "stableId": self.identity.stable_id,
                    })
                    async for raw in ws:
                        await self._handle(raw)
            except (OSError, websockets.ConnectionClosed, websockets.InvalidHandshake, ChannelLost) as e:
                logger.warning(f"Relay connection failed: {e}")
            finally:
                await self._on_connection_lost()

            logger.info(f"Reconnecting to relay in {self._reconnect_delay}s")
            await asyncio.sleep(self._reconnect_delay)

    async def _on_connection_lost(self) -> None:
        was_connected = self.channel is not None
        if self.channel:
            await self.channel.close()
        self.channel = None
        self.handle = None
        self._sync([])
        self._pairings.clear()
        if not was_connected:
            return
        for cb in self._drop_callbacks:
            try:
                await cb()
            except Exception as e:
                logger.error(f"Relay drop callback error: {e}", exc_info=True)

    async def send(self, message_type: str, data: dict) -> None:
        if not self.connected:
            raise ChannelLost(RELAY_HANDLE, "not connected to relay")
        await self.channel.send(protocol.envelope(message_type, data))

    # --- Inbound ---

    async def _handle(self, raw) -> None:
        try:
            message = protocol.decode_relay_message(raw)
        except ProtocolError as e:
            logger.warning(f"Ignoring relay message: {e}")
            return

        if isinstance(message, protocol.DeviceListMessage):
            if message.type == "setup-complete":
                self.handle = message.data.device.handle
            self._sync(message.data.online_devices)
        elif isinstance(message, protocol.PairingMessage):
            self._pairings[message.data.pairing.id] = message.data.pairing
        elif isinstance(message, protocol.ConnectionTerminated):
            self._pairings.pop(message.data.pairing_id, None)

        for cb in self._message_callbacks:
            try:
                await cb(message)
            except ProtocolError as e:
                logger.warning(f"Rejected relay message {message.type}: {e}")
            except Exception as e:
                logger.error(f"Relay message handler error: {e}", exc_info=True)

    def _sync(self, online: list[Device]) -> None:
        """Diff the relay's online list against the mirror."""
        current = {
            d.handle: d for d in online if d.stable_id != self.identity.stable_id
        }
        for handle, device in list(self._devices.items()):
            if handle not in current:
                del self._devices[handle]
                self._publish(DeviceEvent(
                    kind=DeviceEventKind.LOST,
                    handle=handle,
                    stable_id=device.stable_id,
                    display_name=device.display_name,
                ))
        for handle, device in current.items():
            known = self._devices.get(handle)
            if known is not None and known.display_name == device.display_name:
                continue
            self._devices[handle] = device
            self._publish(DeviceEvent(
                kind=DeviceEventKind.APPEARED,
                handle=handle,
                stable_id=device.stable_id,
                display_name=device.display_name,
            ))

    # --- Links ---

    def devices(self) -> list[Device]:
        return list(self._devices.values())

    def pairings(self) -> list[Pairing]:
        return [p for p in self._pairings.values() if p.status == PairingStatus.ACTIVE]

    async def connect(self, handle: str) -> None:
        """Ask the relay to pair us with `handle`."""
        await self.send("pair-request", {"targetDeviceHandle": handle})

    async def disconnect(self, handle: str) -> None:
        for pairing in self.pairings():
            if pairing.involves(handle):
                await self.send("terminate-connection", {"pairingId": pairing.id})
