"""Shared plumbing for the device-side orchestrators."""

import asyncio
import logging
import mimetypes
import os
from abc import ABC, abstractmethod
from pathlib import Path

from snapsend.config import (
    CHUNK_ASSEMBLY_TIMEOUT,
    CHUNK_SIZE,
    CHUNK_THRESHOLD,
    DEFAULT_SAVE_DIR,
)
from snapsend.discovery.identity import IdentityService
from snapsend.discovery.models import DeviceEvent
from snapsend.discovery.registry import DeviceRegistry, RegistryChange
from snapsend.errors import SnapSendError
from snapsend.events import EventBus
from snapsend.storage import FileStore, TransferStore, safe_filename
from snapsend.transfer.engine import ChunkedTransferEngine
from snapsend.transfer.models import FileMeta, TargetDescriptor, Transfer
from snapsend.transfer.payload import BytesSource, FileSource, PayloadSource

logger = logging.getLogger(__name__)

# this device's own handle in its registry
LOCAL_HANDLE = "local"


class Node(ABC):
    """A device: discovery, pairing and transfers behind one UI-facing surface."""

    mode = ""

    def __init__(
        self,
        identity: IdentityService,
        save_dir: str = DEFAULT_SAVE_DIR,
        store: TransferStore | None = None,
        chunk_size: int = CHUNK_SIZE,
        threshold: int = CHUNK_THRESHOLD,
        assembly_timeout: float = CHUNK_ASSEMBLY_TIMEOUT,
    ) -> None:
        self.identity = identity
        self.events = EventBus()
        self.files = FileStore(save_dir)
        self.store = store or TransferStore(threshold=threshold)
        self.engine_options = {
            "chunk_size": chunk_size,
            "threshold": threshold,
            "assembly_timeout": assembly_timeout,
        }
        self.engine = ChunkedTransferEngine(self.events, **self.engine_options)
        self.engine.on_received(self._on_received)
        self.registry = DeviceRegistry()
        self.registry.on_change(self._on_registry_change)
        self.discovery = None
        self._discovery_task: asyncio.Task | None = None

    @property
    def save_dir(self) -> str:
        return str(self.files.root)

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self.files.root = Path(path)

    def status(self) -> dict:
        return {
            "mode": self.mode,
            "stableId": self.identity.stable_id,
            "name": self.identity.display_name,
            "saveDir": self.save_dir,
        }

    # --- Discovery ---

    async def _consume_discovery(self) -> None:
        async for event in self.discovery.discover():
            try:
                await self._on_device_event(event)
            except SnapSendError as e:
                logger.warning(f"Could not apply {event.kind.value} for {event.handle}: {e}")

    def _start_consuming(self) -> None:
        self._discovery_task = asyncio.create_task(self._consume_discovery())

    def _stop_consuming(self) -> None:
        if self._discovery_task:
            self._discovery_task.cancel()

    def _on_registry_change(self, change: RegistryChange) -> None:
        self.events.publish(
            "devices-updated",
            {
                "change": change.kind.value,
                "device": change.device.to_wire(),
                "devices": [d.to_wire() for d in self.registry.list_known()],
            },
        )

    # --- Sending ---

    @staticmethod
    def describe(path: str) -> tuple[Transfer, PayloadSource]:
        """Transfer record and payload source for a file on disk."""
        if not os.path.isfile(path):
            raise FileNotFoundError(path)
        name = os.path.basename(path)
        mime_type, _ = mimetypes.guess_type(name)
        source = FileSource(path)
        transfer = Transfer(
            filename=safe_filename(name),
            original_name=name,
            mime_type=mime_type or "application/octet-stream",
            size_bytes=source.size,
        )
        return transfer, source

    async def send_files(self, paths: list[str], target: str | None = None) -> list[Transfer]:
        descriptor = TargetDescriptor.parse(target)
        sent = []
        for path in paths:
            transfer, source = self.describe(path)
            sent.append(await self._send(transfer, source, descriptor))
        return sent

    async def send_clipboard(self, text: str, target: str | None = None) -> Transfer:
        data = text.encode("utf-8")
        transfer = Transfer(
            filename="clipboard-content",
            original_name="Clipboard",
            mime_type="text/plain",
            size_bytes=len(data),
            is_clipboard=True,
        )
        return await self._send(transfer, BytesSource(data), TargetDescriptor.parse(target))

    # --- History ---

    def list_transfers(self) -> list[Transfer]:
        return self.store.list_transfers()

    def delete_transfer(self, transfer_id: str) -> bool:
        return self.store.delete_transfer(transfer_id)

    def list_pending(self) -> list:
        return []

    def relayed_clients(self) -> dict:
        return {}

    def list_devices(self):
        return self.registry.list_known()

    # --- Mode specific ---

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def _on_device_event(self, event: DeviceEvent) -> None:
        ...

    @abstractmethod
    async def _on_received(self, meta: FileMeta, payload: bytes, origin: str) -> None:
        ...

    @abstractmethod
    async def _send(self, transfer: Transfer, source: PayloadSource, target: TargetDescriptor) -> Transfer:
        ...

    @abstractmethod
    def list_pairings(self):
        ...

    @abstractmethod
    async def pair(self, handle: str):
        ...

    @abstractmethod
    async def terminate(self, pairing_id: str) -> bool:
        ...

    @abstractmethod
    async def rename(self, name: str) -> None:
        ...
