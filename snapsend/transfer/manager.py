"""
Transfer Manager: orchestrates outgoing and incoming transfers.

Runs each outgoing transfer through the resolver, hands deliverable ones to
the chunked engine, records every transfer with the persistence collaborator
and publishes the user-facing notifications. Queued transfers are released
as soon as a pairing makes their target reachable again.
"""

import asyncio
import logging

from snapsend.discovery.registry import DeviceRegistry
from snapsend.events import EventBus
from snapsend.pairing.coordinator import PairingCoordinator
from snapsend.pairing.models import Pairing, PairingStatus
from snapsend.storage import FileStore, TransferStore
from snapsend.transfer.engine import ChunkedTransferEngine
from snapsend.transfer.models import (
    FileMeta,
    Outcome,
    PendingTransfer,
    Resolution,
    Route,
    TargetDescriptor,
    Transfer,
    TransferDirection,
)
from snapsend.transfer.payload import (
    ENCODING_TEXT,
    FileSource,
    PayloadSource,
    encode_content,
    is_text_payload,
)
from snapsend.transfer.resolver import TargetResolver

logger = logging.getLogger(__name__)


class TransferManager:
    """Sends, queues, saves and records transfers for one process."""

    def __init__(
        self,
        registry: DeviceRegistry,
        coordinator: PairingCoordinator,
        resolver: TargetResolver,
        engine: ChunkedTransferEngine,
        events: EventBus,
        store: TransferStore,
        files: FileStore,
        channel_for,
        message_type: str = "file-transfer",
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._engine = engine
        self._events = events
        self._store = store
        self._files = files
        self._channel_for = channel_for  # fn(Route) -> Channel | None
        self._message_type = message_type
        self._tasks: set[asyncio.Task] = set()

        coordinator.on_change(self._on_pairing_change)

    def _display_name(self, handle: str) -> str:
        device = self._registry.get_by_handle(handle)
        return device.display_name if device else handle

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join(self) -> None:
        """Wait until every delivery started so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # --- Outgoing ---

    async def send(
        self,
        transfer: Transfer,
        source: PayloadSource,
        target: TargetDescriptor,
        sender_handle: str,
    ) -> Resolution:
        """Resolve `target` and save, queue or start delivering the transfer."""
        transfer = transfer.model_copy(update={
            "target": str(target),
            "size_bytes": source.size,
            "total_chunks": (
                self._engine.total_chunks(source.size)
                if self._engine.is_chunked(source.size) else 0
            ),
        })
        resolution = self._resolver.resolve(transfer, target, sender_handle, source)

        if resolution.outcome == Outcome.SAVE_LOCAL:
            await self._save_local(transfer, source, sender_handle)
        elif resolution.outcome == Outcome.QUEUE:
            record = transfer.model_copy(update={"direction": TransferDirection.QUEUED})
            record = self._store.record_sent(await self._attach_payload(record, source))
            self._events.publish(
                "file-queued",
                {"transfer": record.to_wire(), "targetDeviceHandle": str(target)},
                targets=[sender_handle],
            )
        else:
            await self._deliver(transfer, source, resolution.routes, sender_handle)
        return resolution

    async def _attach_payload(
        self, transfer: Transfer, source: PayloadSource, persist: bool = False
    ) -> Transfer:
        """Record-side copy of the payload: inline when small, a file reference otherwise."""
        if isinstance(source, FileSource):
            return transfer.model_copy(update={"content_ref": source.path})
        if not self._engine.is_chunked(source.size):
            content, encoding = encode_content(
                await source.read_all(),
                is_text_payload(transfer.mime_type, transfer.is_clipboard),
            )
            return transfer.model_copy(update={"content": content, "encoding": encoding})
        if persist:
            path = await self._files.write_bytes(transfer.filename, await source.read_all())
            return transfer.model_copy(update={"content_ref": path})
        return transfer

    async def _save_local(self, transfer: Transfer, source: PayloadSource, sender: str) -> Transfer:
        record = transfer.model_copy(update={"direction": TransferDirection.SAVED_LOCAL})
        record = self._store.record_sent(await self._attach_payload(record, source, persist=True))
        logger.info(f"Saved {transfer.original_name} locally")
        self._events.publish("file-saved", {"transfer": record.to_wire()}, targets=[sender])
        return record

    async def _deliver(
        self,
        transfer: Transfer,
        source: PayloadSource,
        routes: list[Route],
        sender: str,
    ) -> list[asyncio.Task]:
        from_device = self._display_name(sender)
        recipients = []
        tasks = []
        for route in routes:
            channel = self._channel_for(route)
            if channel is None:
                logger.warning(f"No channel to {route.handle}; skipping")
                continue
            target_handle = route.relay_to or route.handle
            recipients.append(target_handle)
            tasks.append(self._engine.submit(
                transfer,
                source,
                channel,
                origin=sender,
                message_type=self._message_type,
                from_device=from_device,
                target_handle=target_handle,
                notify=[sender],
            ))

        record = transfer.model_copy(update={
            "direction": TransferDirection.SENT,
            "recipients": recipients,
        })
        self._store.record_sent(await self._attach_payload(record, source))
        self._spawn(self._confirm(record, tasks, sender))
        return tasks

    async def _confirm(self, record: Transfer, tasks: list[asyncio.Task], sender: str) -> None:
        results = await asyncio.gather(*tasks, return_exceptions=True)
        delivered = sum(1 for r in results if r is True)
        logger.info(
            f"{record.original_name} delivered to {delivered}/{len(tasks)} recipient(s)"
        )
        self._events.publish(
            "file-sent-confirmation",
            {
                "filename": record.filename,
                "recipientCount": delivered,
                "isClipboard": record.is_clipboard,
            },
            targets=[sender],
        )

    # --- Queue flushing / cancellation ---

    def flush_ready(self) -> int:
        """Start delivering every queued transfer whose target is reachable now."""
        ready = self._resolver.take_ready()
        for pending, route in ready:
            self._spawn(self._flush(pending, route))
        return len(ready)

    async def _flush(self, pending: PendingTransfer, route: Route) -> None:
        logger.info(f"Flushing queued {pending.transfer.original_name} to {route.handle}")
        await self._deliver(pending.transfer, pending.source, [route], pending.sender_handle)

    def _on_pairing_change(self, pairing: Pairing) -> None:
        if pairing.status == PairingStatus.ACTIVE:
            self.flush_ready()
        elif pairing.status == PairingStatus.TERMINATED:
            self._engine.cancel(pairing.device_a, pairing.device_b)

    # --- History ---

    def list_transfers(self) -> list[Transfer]:
        return self._store.list_transfers()

    def list_pending(self) -> list[PendingTransfer]:
        return self._resolver.list_pending()

    def delete_transfer(self, transfer_id: str) -> bool:
        discarded = self._resolver.discard(transfer_id)
        return self._store.delete_transfer(transfer_id) or discarded


async def store_received(
    meta: FileMeta,
    payload: bytes,
    from_device: str,
    store: TransferStore,
    files: FileStore,
    events: EventBus,
) -> Transfer:
    """Persist a completed incoming payload and announce it."""
    transfer = Transfer(
        id=meta.transfer_id,
        filename=meta.filename,
        original_name=meta.original_name,
        mime_type=meta.mime_type,
        size_bytes=len(payload),
        is_clipboard=meta.is_clipboard,
        direction=TransferDirection.RECEIVED,
        total_chunks=meta.total_chunks,
        from_device=from_device,
    )
    if meta.is_clipboard:
        transfer = transfer.model_copy(update={
            "content": payload.decode("utf-8", errors="replace"),
            "encoding": ENCODING_TEXT,
        })
    else:
        path = await files.write_bytes(meta.original_name or meta.filename, payload)
        transfer = transfer.model_copy(update={"content_ref": path})

    record = store.record_received(transfer)
    logger.info(f"Received {meta.original_name} ({len(payload)} bytes) from {from_device}")
    events.publish("file-received", {"file": record.to_wire(), "fromDevice": from_device})
    if record.is_clipboard:
        events.publish("clipboard-sync", {"content": record.content, "fromDevice": from_device})
    return record
