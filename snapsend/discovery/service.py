"""
UDP-based LAN discovery service.

Broadcasts a periodic beacon and listens for beacons from other SnapSend
devices on the same LAN. A peer whose beacon has not been heard for
PEER_TIMEOUT seconds is reported lost.
"""

import asyncio
import json
import logging
import socket
import time

from pydantic import ValidationError

from snapsend.config import (
    API_PORT,
    APP_ID,
    DISCOVERY_INTERVAL,
    DISCOVERY_PORT,
    PEER_TIMEOUT,
    PLATFORM,
)
from snapsend.discovery.identity import IdentityService
from snapsend.discovery.models import DeviceEventKind, DiscoveryBeacon, PeerInfo

logger = logging.getLogger(__name__)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving discovery beacons."""

    def __init__(self, service: "BeaconService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            payload = json.loads(data.decode("utf-8"))
            beacon = DiscoveryBeacon(**payload)
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return

        if beacon.app_id != APP_ID:
            return
        # Ignore our own beacons
        if beacon.stable_id == self.service.identity.stable_id:
            return

        self.service.update_peer(PeerInfo(
            stable_id=beacon.stable_id,
            device_name=beacon.device_name,
            host=addr[0],
            port=beacon.link_port,
            platform=beacon.platform,
            last_seen=time.time(),
        ))

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class BeaconService:
    """Advertises this device and resolves other devices' advertisements."""

    def __init__(
        self,
        identity: IdentityService,
        port: int = DISCOVERY_PORT,
        interval: float = DISCOVERY_INTERVAL,
        peer_timeout: float = PEER_TIMEOUT,
    ) -> None:
        self.identity = identity
        self.link_port = 0  # set once the link server is listening
        self._port = port
        self._interval = interval
        self._peer_timeout = peer_timeout
        self._peers: dict[str, PeerInfo] = {}
        self._broadcast_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._on_peer_change: list = []  # callbacks: fn(kind, peer)

    def on_peer_change(self, callback) -> None:
        """Register a callback for peer appeared/lost: fn(kind: DeviceEventKind, peer)."""
        self._on_peer_change.append(callback)

    def _emit(self, kind: DeviceEventKind, peer: PeerInfo) -> None:
        for cb in self._on_peer_change:
            try:
                cb(kind, peer)
            except Exception as e:
                logger.error(f"Peer change callback error: {e}", exc_info=True)

    async def start(self) -> None:
        """Start the beacon broadcaster and listener."""
        logger.info(f"Starting discovery on UDP port {self._port}")

        loop = asyncio.get_running_loop()

        # SO_REUSEADDR before binding so several instances can share the port
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        sock.bind(("0.0.0.0", self._port))

        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self._transport = transport

        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Discovery service started")

    async def stop(self) -> None:
        if self._broadcast_task:
            self._broadcast_task.cancel()
        if self._cleanup_task:
            self._cleanup_task.cancel()
        if self._transport:
            self._transport.close()
        logger.info("Discovery service stopped")

    def get_peers(self) -> list[PeerInfo]:
        return list(self._peers.values())

    def update_peer(self, peer: PeerInfo) -> None:
        """Add or refresh a peer. A peer that moved address counts as new."""
        previous = self._peers.get(peer.stable_id)
        self._peers[peer.stable_id] = peer

        if previous is None or previous.handle != peer.handle:
            logger.info(f"Discovered peer: {peer.device_name} ({peer.handle})")
            self._emit(DeviceEventKind.APPEARED, peer)

    def forget(self, stable_id: str) -> None:
        """Drop a peer silently so its next beacon is reported as new."""
        self._peers.pop(stable_id, None)

    def expire_stale(self, now: float | None = None) -> list[PeerInfo]:
        """Remove peers whose advertisement has expired."""
        now = time.time() if now is None else now
        stale = [p for p in self._peers.values() if now - p.last_seen > self._peer_timeout]
        for peer in stale:
            del self._peers[peer.stable_id]
            logger.info(f"Peer lost: {peer.device_name} ({peer.handle})")
            self._emit(DeviceEventKind.LOST, peer)
        return stale

    def _beacon(self) -> bytes:
        beacon = DiscoveryBeacon(
            app_id=APP_ID,
            stable_id=self.identity.stable_id,
            device_name=self.identity.display_name,
            link_port=self.link_port,
            api_port=API_PORT,
            platform=PLATFORM,
        )
        return json.dumps(beacon.model_dump()).encode("utf-8")

    @staticmethod
    def _broadcast_addresses() -> set[str]:
        addresses = {"<broadcast>", "255.255.255.255", "127.255.255.255"}
        try:
            _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        except OSError as e:
            logger.debug(f"Error resolving local IPs: {e}")
            return addresses
        for ip in ips:
            if ip.startswith("127."):
                continue
            # /24 heuristic
            parts = ip.split(".")
            if len(parts) == 4:
                parts[3] = "255"
                addresses.add(".".join(parts))
        return addresses

    async def _broadcast_loop(self) -> None:
        """Periodically send a discovery beacon."""
        while True:
            if self._transport and self.link_port:
                data = self._beacon()
                for address in self._broadcast_addresses():
                    try:
                        self._transport.sendto(data, (address, self._port))
                    except OSError as e:
                        # some interfaces refuse broadcast
                        logger.debug(f"Beacon to {address} failed: {e}")
            await asyncio.sleep(self._interval)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.expire_stale()
