"""
Channels that transfer messages travel over.

A channel carries JSON envelopes ({type, data}) to exactly one device handle.
Direct device-to-device links use a type-length-payload framing over asyncio
TCP streams; relay sockets are WebSockets; a relayed channel wraps every
message for forwarding by a host peer.
"""

import asyncio
import json
import logging
import struct
from abc import ABC, abstractmethod

from snapsend.errors import ChannelLost, ProtocolError

logger = logging.getLogger(__name__)

# --- Wire protocol helpers ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
MAX_FRAME_SIZE = 128 * 1024 * 1024


class FrameType:
    HELLO = 0x01
    HELLO_ACK = 0x02
    MESSAGE = 0x03


async def send_frame(
    writer: asyncio.StreamWriter, frame_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload frame."""
    header = struct.pack(HEADER_FORMAT, frame_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_frame(
    reader: asyncio.StreamReader,
) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > MAX_FRAME_SIZE:
        raise ProtocolError(f"Frame of {length} bytes exceeds limit")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload


class Channel(ABC):
    """An ordered, reliable message pipe to one device handle."""

    def __init__(self, handle: str) -> None:
        self.handle = handle
        self._closed = False
        self._send_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def link(self) -> str:
        """Handle of the connection that physically carries this channel."""
        return self.handle

    async def send(self, message: dict) -> None:
        if self.closed:
            raise ChannelLost(self.handle)
        async with self._send_lock:
            try:
                await self._write(message)
            except ChannelLost:
                self._closed = True
                raise
            except Exception as e:
                self._closed = True
                raise ChannelLost(self.handle, str(e)) from e

    @abstractmethod
    async def _write(self, message: dict) -> None:
        ...

    async def close(self) -> None:
        self._closed = True


class StreamChannel(Channel):
    """A direct TCP link to a peer, established by a HELLO exchange."""

    def __init__(
        self,
        handle: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        super().__init__(handle)
        self._reader = reader
        self._writer = writer

    @classmethod
    async def open(cls, host: str, port: int, hello: dict) -> tuple["StreamChannel", dict]:
        """Dial a peer and perform the handshake as initiator."""
        reader, writer = await asyncio.open_connection(host, port)
        try:
            await send_frame(writer, FrameType.HELLO, json.dumps(hello).encode("utf-8"))
            frame_type, payload = await recv_frame(reader)
            if frame_type != FrameType.HELLO_ACK:
                raise ProtocolError(f"Expected HELLO_ACK, got {frame_type:#x}")
            peer_hello = json.loads(payload.decode("utf-8"))
        except BaseException:
            writer.close()
            raise
        return cls(f"{host}:{port}", reader, writer), peer_hello

    @classmethod
    async def accept(
        cls,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        hello: dict,
    ) -> tuple["StreamChannel", dict]:
        """Answer an inbound handshake. The handle uses the peer's listening port."""
        frame_type, payload = await recv_frame(reader)
        if frame_type != FrameType.HELLO:
            raise ProtocolError(f"Expected HELLO, got {frame_type:#x}")
        peer_hello = json.loads(payload.decode("utf-8"))
        await send_frame(writer, FrameType.HELLO_ACK, json.dumps(hello).encode("utf-8"))

        host = writer.get_extra_info("peername")[0]
        return cls(f"{host}:{peer_hello.get('port', 0)}", reader, writer), peer_hello

    async def _write(self, message: dict) -> None:
        payload = json.dumps(message, ensure_ascii=False).encode("utf-8")
        await send_frame(self._writer, FrameType.MESSAGE, payload)

    async def recv(self) -> dict | None:
        """Next message, or None once the peer has gone away."""
        try:
            frame_type, payload = await recv_frame(self._reader)
        except (asyncio.IncompleteReadError, ConnectionError, OSError):
            self._closed = True
            return None
        if frame_type != FrameType.MESSAGE:
            raise ProtocolError(f"Unexpected frame type {frame_type:#x}")
        return json.loads(payload.decode("utf-8"))

    async def close(self) -> None:
        if self._closed and self._writer.is_closing():
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass


class WebSocketChannel(Channel):
    """A device socket accepted by a relay endpoint."""

    def __init__(self, handle: str, websocket) -> None:
        super().__init__(handle)
        self._websocket = websocket

    async def _write(self, message: dict) -> None:
        await self._websocket.send_text(json.dumps(message, ensure_ascii=False))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._websocket.close()
        except RuntimeError:
            # already closed by the peer
            pass


class ClientSocketChannel(Channel):
    """The device side of a relay connection (a `websockets` client)."""

    def __init__(self, handle: str, connection) -> None:
        super().__init__(handle)
        self._connection = connection

    async def _write(self, message: dict) -> None:
        await self._connection.send(json.dumps(message, ensure_ascii=False))

    async def close(self) -> None:
        self._closed = True
        await self._connection.close()


class RelayedChannel(Channel):
    """Reaches a client attached to a host peer by wrapping each message."""

    def __init__(self, host: Channel, client_handle: str) -> None:
        super().__init__(client_handle)
        self.host = host

    @property
    def closed(self) -> bool:
        return self._closed or self.host.closed

    @property
    def link(self) -> str:
        return self.host.link

    async def _write(self, message: dict) -> None:
        await self.host.send({
            "type": "relay-forward",
            "data": {"target": self.handle, "message": message},
        })
