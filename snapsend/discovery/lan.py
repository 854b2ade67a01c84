"""
Local-network discovery strategy.

Every device runs a small TCP link server and advertises its port with UDP
beacons. Resolving an advertisement dials the advertised link; the link is
the device's data channel and its presence is what makes the device
"discovered". To avoid both sides dialing at once, the device with the
smaller stable id dials immediately and the other one only dials after a
grace period without an inbound link. When duplicates still happen, both
sides keep the link initiated by the smaller stable id.
"""

import asyncio
import logging
import random

from snapsend.config import CONNECT_GRACE, TRANSFER_PORT_MAX, TRANSFER_PORT_MIN
from snapsend.discovery.identity import IdentityService
from snapsend.discovery.models import DeviceEvent, DeviceEventKind, PeerInfo
from snapsend.discovery.provider import DiscoveryProvider
from snapsend.discovery.service import BeaconService
from snapsend.errors import ProtocolError
from snapsend.transfer.channel import StreamChannel

logger = logging.getLogger(__name__)


class _Link:
    def __init__(self, channel: StreamChannel, stable_id: str, name: str, initiator: str):
        self.channel = channel
        self.stable_id = stable_id
        self.name = name
        self.initiator = initiator
        self.reader: asyncio.Task | None = None


class LocalNetworkDiscovery(DiscoveryProvider):
    """Direct device-to-device links over the LAN."""

    def __init__(
        self,
        identity: IdentityService,
        beacon: BeaconService | None = None,
        host: str = "0.0.0.0",
        connect_grace: float = CONNECT_GRACE,
    ) -> None:
        super().__init__()
        self.identity = identity
        self.beacon = beacon
        self._host = host
        self._connect_grace = connect_grace
        self._server: asyncio.AbstractServer | None = None
        self._links: dict[str, _Link] = {}  # handle -> link
        self._pending: dict[str, asyncio.Task] = {}  # stable id -> dial task
        self.link_port = 0

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start the link server on a random port, then advertise it."""
        port = random.randint(TRANSFER_PORT_MIN, TRANSFER_PORT_MAX)

        # Try a few ports if the first one is busy
        for attempt in range(10):
            try:
                self._server = await asyncio.start_server(
                    self._handle_incoming_connection, self._host, port
                )
                break
            except OSError:
                port = random.randint(TRANSFER_PORT_MIN, TRANSFER_PORT_MAX)
        else:
            raise RuntimeError("Could not bind to any link port")

        self.link_port = port
        logger.info(f"Link server listening on port {port}")

        if self.beacon:
            self.beacon.link_port = port
            self.beacon.on_peer_change(self._on_peer_change)
            await self.beacon.start()

    async def stop(self) -> None:
        if self.beacon:
            await self.beacon.stop()
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
        for handle in list(self._links):
            await self.disconnect(handle)
        if self._server:
            self._server.close()
            await self._server.wait_closed()
        logger.info("Local-network discovery stopped")

    def _hello(self) -> dict:
        return {
            "stableId": self.identity.stable_id,
            "name": self.identity.display_name,
            "port": self.link_port,
        }

    # --- Links ---

    def channel(self, handle: str) -> StreamChannel | None:
        link = self._links.get(handle)
        return link.channel if link else None

    def handles(self) -> list[str]:
        return list(self._links)

    def _handle_for(self, stable_id: str) -> str | None:
        for handle, link in self._links.items():
            if link.stable_id == stable_id:
                return handle
        return None

    async def _adopt(self, channel: StreamChannel, peer_hello: dict, initiator: str) -> bool:
        """Register a freshly handshaken link, resolving duplicates."""
        stable_id = peer_hello.get("stableId")
        if not stable_id or stable_id == self.identity.stable_id:
            await channel.close()
            raise ProtocolError(f"Invalid HELLO from {channel.handle}")
        name = peer_hello.get("name") or channel.handle

        existing_handle = self._handle_for(stable_id)
        if existing_handle is not None:
            existing = self._links[existing_handle]
            if existing.initiator <= initiator:
                logger.info(f"Closing duplicate link to {name} ({channel.handle})")
                await channel.close()
                return False
            # swap in the preferred link; the handle stays the same
            logger.info(f"Replacing link to {name} with the one it initiated")
            del self._links[existing_handle]
            if existing.reader:
                existing.reader.cancel()
            await existing.channel.close()
            link = _Link(channel, stable_id, name, initiator)
            self._links[channel.handle] = link
            link.reader = asyncio.create_task(self._read_loop(link))
            return True

        link = _Link(channel, stable_id, name, initiator)
        self._links[channel.handle] = link
        link.reader = asyncio.create_task(self._read_loop(link))
        logger.info(f"Linked with {name} ({channel.handle})")
        self._publish(DeviceEvent(
            kind=DeviceEventKind.APPEARED,
            handle=channel.handle,
            stable_id=stable_id,
            display_name=name,
        ))
        return True

    def _drop(self, link: _Link) -> None:
        handle = link.channel.handle
        if self._links.get(handle) is not link:
            return
        del self._links[handle]
        if self.beacon:
            self.beacon.forget(link.stable_id)
        logger.info(f"Link lost: {link.name} ({handle})")
        self._publish(DeviceEvent(
            kind=DeviceEventKind.LOST,
            handle=handle,
            stable_id=link.stable_id,
            display_name=link.name,
        ))

    async def _handle_incoming_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            channel, peer_hello = await StreamChannel.accept(reader, writer, self._hello())
            await self._adopt(channel, peer_hello, initiator=peer_hello.get("stableId", ""))
        except (asyncio.IncompleteReadError, ConnectionError, OSError, ValueError, ProtocolError) as e:
            logger.warning(f"Inbound link handshake failed: {e}")
            writer.close()

    async def connect(self, handle: str) -> None:
        """Dial a peer's link server at `host:port`."""
        if handle in self._links:
            return
        host, _, port = handle.rpartition(":")
        channel, peer_hello = await StreamChannel.open(host, int(port), self._hello())
        await self._adopt(channel, peer_hello, initiator=self.identity.stable_id)

    async def disconnect(self, handle: str) -> None:
        link = self._links.get(handle)
        if link is None:
            return
        await link.channel.close()
        if link.reader:
            link.reader.cancel()
        self._drop(link)

    async def _read_loop(self, link: _Link) -> None:
        channel = link.channel
        try:
            while True:
                try:
                    message = await channel.recv()
                except ValueError as e:
                    logger.warning(f"Malformed message from {channel.handle}: {e}")
                    continue
                except ProtocolError as e:
                    # framing is out of sync; the link cannot recover
                    logger.warning(f"Closing link {channel.handle}: {e}")
                    await channel.close()
                    break
                if message is None:
                    break
                for cb in self._message_callbacks:
                    try:
                        await cb(channel, message)
                    except ProtocolError as e:
                        logger.warning(f"Rejected message from {channel.handle}: {e}")
                    except Exception as e:
                        logger.error(f"Link message handler error: {e}", exc_info=True)
        finally:
            await channel.close()
            self._drop(link)

    # --- Beacons ---

    def _on_peer_change(self, kind: DeviceEventKind, peer: PeerInfo) -> None:
        if kind == DeviceEventKind.LOST:
            pending = self._pending.pop(peer.stable_id, None)
            if pending:
                pending.cancel()
            handle = self._handle_for(peer.stable_id)
            if handle:
                asyncio.create_task(self.disconnect(handle))
            return

        if self._handle_for(peer.stable_id) or peer.stable_id in self._pending:
            return
        delay = 0 if self.identity.stable_id < peer.stable_id else self._connect_grace
        task = asyncio.create_task(self._dial_after(peer, delay))
        self._pending[peer.stable_id] = task
        task.add_done_callback(lambda t, sid=peer.stable_id: self._pending.pop(sid, None))

    async def _dial_after(self, peer: PeerInfo, delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)
        if self._handle_for(peer.stable_id):
            return
        try:
            await self.connect(peer.handle)
        except (ConnectionError, OSError, asyncio.IncompleteReadError, ValueError, ProtocolError) as e:
            logger.warning(f"Could not link with {peer.device_name} ({peer.handle}): {e}")
            if self.beacon:
                self.beacon.forget(peer.stable_id)
