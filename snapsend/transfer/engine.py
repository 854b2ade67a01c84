"""
Chunked Transfer Engine.

Moves payloads over an established channel. Payloads at or below the chunk
threshold travel inline in the transfer-request message; larger ones are
announced by that message and then streamed as fixed-size chunk frames with
no per-chunk acknowledgement. The receiving side reassembles frames by index
and hands the completed payload to the same callbacks used for inline
transfers. Partial payloads are never handed out.
"""

import asyncio
import base64
import binascii
import logging
import math
import time

from snapsend.config import (
    ASSEMBLY_SWEEP_INTERVAL,
    CHUNK_ASSEMBLY_TIMEOUT,
    CHUNK_SIZE,
    CHUNK_THRESHOLD,
)
from snapsend.errors import ChannelLost, ChunkAssemblyTimeout, ProtocolError
from snapsend.events import EventBus
from snapsend.relay.protocol import transfer_message
from snapsend.transfer.channel import Channel
from snapsend.transfer.models import (
    ChunkFrame,
    ChunkProgress,
    FileMeta,
    Transfer,
    TransferDirection,
)
from snapsend.transfer.payload import (
    PayloadSource,
    decode_content,
    encode_content,
    is_text_payload,
)

logger = logging.getLogger(__name__)


class _Assembly:
    """Chunks received so far for one transfer id."""

    def __init__(self, meta: FileMeta, origin: str, notify, timeout: float) -> None:
        self.meta = meta
        self.origin = origin
        self.notify = notify
        self.timeout = timeout
        self.chunks: dict[int, bytes] = {}
        self.bytes_received = 0
        self.deadline = time.monotonic() + timeout

    def put(self, index: int, data: bytes) -> None:
        previous = self.chunks.get(index)
        if previous is not None:
            self.bytes_received -= len(previous)
        self.chunks[index] = data
        self.bytes_received += len(data)
        self.deadline = time.monotonic() + self.timeout

    @property
    def complete(self) -> bool:
        return len(self.chunks) == self.meta.total_chunks


class ChunkedTransferEngine:
    """Sends and receives payloads, chunking the large ones."""

    def __init__(
        self,
        events: EventBus,
        chunk_size: int = CHUNK_SIZE,
        threshold: int = CHUNK_THRESHOLD,
        assembly_timeout: float = CHUNK_ASSEMBLY_TIMEOUT,
    ) -> None:
        self._events = events
        self.chunk_size = chunk_size
        self.threshold = threshold
        self._assembly_timeout = assembly_timeout
        self._progress: dict[str, ChunkProgress] = {}
        self._assemblies: dict[str, _Assembly] = {}
        self._inflight: dict[tuple[str, str], set[asyncio.Task]] = {}
        self._received_callbacks: list = []  # async fn(meta, payload, origin)
        self._sweep_task: asyncio.Task | None = None

    def on_received(self, callback) -> None:
        """Register callback: async fn(meta: FileMeta, payload: bytes, origin: str)."""
        self._received_callbacks.append(callback)

    async def start(self) -> None:
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
        for tasks in list(self._inflight.values()):
            for task in list(tasks):
                task.cancel()
        self._inflight.clear()

    def is_chunked(self, size: int) -> bool:
        return size > self.threshold

    def total_chunks(self, size: int) -> int:
        return math.ceil(size / self.chunk_size)

    def get_progress(self) -> list[ChunkProgress]:
        return list(self._progress.values())

    # --- Notifications ---

    def _report(self, progress: ChunkProgress, notify) -> None:
        percent = progress.progress
        self._events.publish(
            "chunk-progress",
            {
                "transferId": progress.transfer_id,
                "progress": percent,
                "direction": progress.direction.value,
            },
            targets=notify,
        )
        if percent >= 100:
            self._progress.pop(progress.transfer_id, None)

    def _fail(self, transfer_id: str, name: str, direction: TransferDirection, reason: str, notify) -> None:
        self._progress.pop(transfer_id, None)
        logger.warning(f"Transfer {transfer_id} ({name}) failed: {reason}")
        self._events.publish(
            "transfer-failed",
            {
                "transferId": transfer_id,
                "originalName": name,
                "direction": direction.value,
                "reason": reason,
            },
            targets=notify,
        )

    # --- Send path ---

    async def send(
        self,
        transfer: Transfer,
        source: PayloadSource,
        channel: Channel,
        message_type: str = "file-transfer",
        from_device: str = "",
        target_handle: str | None = None,
        notify=None,
    ) -> bool:
        """Deliver one payload over `channel`. Returns False on failure."""
        meta = FileMeta(
            transfer_id=transfer.id,
            filename=transfer.filename,
            original_name=transfer.original_name,
            mime_type=transfer.mime_type,
            size=source.size,
            is_clipboard=transfer.is_clipboard,
            target_device_handle=target_handle,
        )

        try:
            if not self.is_chunked(source.size):
                data = await source.read_all()
                content, encoding = encode_content(
                    data, is_text_payload(transfer.mime_type, transfer.is_clipboard)
                )
                meta = meta.model_copy(update={"content": content, "encoding": encoding})
                await channel.send(transfer_message(message_type, meta, from_device))
                logger.info(f"Sent {transfer.original_name} inline to {channel.handle}")
                return True

            await self._send_chunks(meta, source, channel, message_type, from_device, notify)
            return True

        except ChannelLost as e:
            self._fail(transfer.id, transfer.original_name, TransferDirection.SENT, e.reason, notify)
            return False
        except asyncio.CancelledError:
            self._fail(transfer.id, transfer.original_name, TransferDirection.SENT, "cancelled", notify)
            raise
        finally:
            self._progress.pop(transfer.id, None)

    async def _send_chunks(
        self,
        meta: FileMeta,
        source: PayloadSource,
        channel: Channel,
        message_type: str,
        from_device: str,
        notify,
    ) -> None:
        size = source.size
        total = self.total_chunks(size)
        meta = meta.model_copy(update={"chunked": True, "total_chunks": total})
        await channel.send(transfer_message(message_type, meta, from_device))

        progress = ChunkProgress(
            transfer_id=meta.transfer_id,
            total_bytes=size,
            direction=TransferDirection.SENT,
        )
        self._progress[meta.transfer_id] = progress
        logger.info(
            f"Streaming {meta.original_name} to {channel.handle} in {total} chunks"
        )

        for index in range(total):
            if channel.closed:
                raise ChannelLost(channel.handle)
            offset = index * self.chunk_size
            data = await source.read(offset, min(self.chunk_size, size - offset))
            frame = ChunkFrame(
                transfer_id=meta.transfer_id,
                index=index,
                total_chunks=total,
                data=base64.b64encode(data).decode("ascii"),
            )
            await channel.send({"type": "file-chunk", "data": frame.to_wire()})
            progress.bytes_delivered += len(data)
            self._report(progress, notify)

    def submit(
        self,
        transfer: Transfer,
        source: PayloadSource,
        channel: Channel,
        origin: str,
        **kwargs,
    ) -> asyncio.Task:
        """Run send() as a task bound to (origin, link) so it can be cancelled."""
        key = (origin, channel.link)
        task = asyncio.create_task(self.send(transfer, source, channel, **kwargs))
        self._inflight.setdefault(key, set()).add(task)

        def _done(t: asyncio.Task) -> None:
            tasks = self._inflight.get(key)
            if tasks is not None:
                tasks.discard(t)
                if not tasks:
                    self._inflight.pop(key, None)

        task.add_done_callback(_done)
        return task

    def cancel(self, handle: str, partner: str | None = None) -> int:
        """Cancel in-flight sends involving `handle` (and `partner`, if given)."""
        cancelled = 0
        for key, tasks in list(self._inflight.items()):
            if handle not in key or (partner is not None and partner not in key):
                continue
            for task in list(tasks):
                if not task.done():
                    task.cancel()
                    cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} in-flight transfer(s) on {handle}")
        return cancelled

    # --- Receive path ---

    async def accept(self, origin: str, meta: FileMeta, notify=None) -> None:
        """Handle a transfer-request message from `origin`."""
        if not meta.chunked:
            if meta.content is None:
                raise ProtocolError(f"Inline transfer {meta.transfer_id} has no content")
            try:
                payload = decode_content(meta.content, meta.encoding)
            except (binascii.Error, ValueError) as e:
                raise ProtocolError(f"Undecodable content for {meta.transfer_id}: {e}") from e
            await self._deliver(meta, payload, origin)
            return

        if meta.total_chunks <= 0:
            raise ProtocolError(f"Chunked transfer {meta.transfer_id} announces no chunks")
        self._assemblies[meta.transfer_id] = _Assembly(
            meta, origin, notify, self._assembly_timeout
        )
        self._progress[meta.transfer_id] = ChunkProgress(
            transfer_id=meta.transfer_id,
            total_bytes=meta.size,
            direction=TransferDirection.RECEIVED,
        )
        logger.info(
            f"Expecting {meta.total_chunks} chunks of {meta.original_name} from {origin}"
        )

    async def accept_chunk(self, origin: str, frame: ChunkFrame) -> None:
        """Store one chunk frame; deliver the payload once every index is present."""
        assembly = self._assemblies.get(frame.transfer_id)
        if assembly is None or assembly.origin != origin:
            raise ProtocolError(f"Chunk for unknown transfer {frame.transfer_id}")

        total = assembly.meta.total_chunks
        if frame.total_chunks != total or not 0 <= frame.index < total:
            raise ProtocolError(
                f"Chunk {frame.index}/{frame.total_chunks} does not fit "
                f"transfer {frame.transfer_id} of {total} chunks"
            )
        try:
            data = base64.b64decode(frame.data)
        except (binascii.Error, ValueError) as e:
            raise ProtocolError(f"Undecodable chunk {frame.index}: {e}") from e

        assembly.put(frame.index, data)
        progress = self._progress.get(frame.transfer_id)

        if not assembly.complete:
            if progress:
                progress.bytes_delivered = min(assembly.bytes_received, progress.total_bytes)
                self._report(progress, assembly.notify)
            return

        del self._assemblies[frame.transfer_id]
        meta = assembly.meta
        payload = b"".join(assembly.chunks[i] for i in range(total))
        if len(payload) != meta.size:
            self._fail(
                meta.transfer_id,
                meta.original_name,
                TransferDirection.RECEIVED,
                f"size mismatch: expected {meta.size}, got {len(payload)}",
                assembly.notify,
            )
            return

        if progress:
            progress.bytes_delivered = progress.total_bytes
            self._report(progress, assembly.notify)
        logger.info(f"Reassembled {meta.original_name} ({total} chunks) from {origin}")
        await self._deliver(meta, payload, origin)

    async def _deliver(self, meta: FileMeta, payload: bytes, origin: str) -> None:
        for cb in self._received_callbacks:
            try:
                await cb(meta, payload, origin)
            except Exception as e:
                logger.error(f"Receive callback error: {e}", exc_info=True)

    def discard_from(self, origin: str, reason: str = "channel lost") -> list[str]:
        """Drop partial assemblies arriving from `origin`."""
        dropped = [tid for tid, a in self._assemblies.items() if a.origin == origin]
        for transfer_id in dropped:
            assembly = self._assemblies.pop(transfer_id)
            self._fail(
                transfer_id,
                assembly.meta.original_name,
                TransferDirection.RECEIVED,
                reason,
                assembly.notify,
            )
        return dropped

    def expire_stale(self, now: float | None = None) -> list[str]:
        """Give up on assemblies that stopped receiving chunks."""
        now = time.monotonic() if now is None else now
        expired = [tid for tid, a in self._assemblies.items() if a.deadline <= now]
        for transfer_id in expired:
            assembly = self._assemblies.pop(transfer_id)
            error = ChunkAssemblyTimeout(
                transfer_id, len(assembly.chunks), assembly.meta.total_chunks
            )
            self._fail(
                transfer_id,
                assembly.meta.original_name,
                TransferDirection.RECEIVED,
                str(error),
                assembly.notify,
            )
        return expired

    def pending_assemblies(self) -> list[str]:
        return list(self._assemblies)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(ASSEMBLY_SWEEP_INTERVAL)
            self.expire_stale()
