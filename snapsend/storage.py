"""
Persistence and filesystem collaborators.

TransferStore keeps the transfer history (optionally mirrored to a JSON file);
FileStore reads and writes payload bytes under a save directory.
"""

import asyncio
import json
import logging
import os
import re
from pathlib import Path

from snapsend.config import CHUNK_THRESHOLD
from snapsend.transfer.models import Transfer, TransferDirection
from snapsend.transfer.payload import FileSource

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def safe_filename(name: str) -> str:
    """Strip path components and characters most filesystems reject."""
    name = os.path.basename(name.replace("\\", "/"))
    name = _UNSAFE_CHARS.sub("_", name).strip(". ")
    return name or "unnamed"


class TransferStore:
    """Transfer history, newest last."""

    def __init__(self, path: Path | None = None, threshold: int = CHUNK_THRESHOLD) -> None:
        self._path = path
        self._threshold = threshold
        self._transfers: dict[str, Transfer] = {}
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text())
            for item in data:
                transfer = Transfer.model_validate(item)
                self._transfers[transfer.id] = transfer
            logger.info(f"Loaded {len(self._transfers)} transfer records.")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load transfer history: {e}")

    def _save(self) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            data = [t.to_wire() for t in self._transfers.values()]
            self._path.write_text(json.dumps(data, indent=2))
        except OSError as e:
            logger.error(f"Failed to save transfer history: {e}")

    def _put(self, transfer: Transfer) -> Transfer:
        if transfer.size_bytes > self._threshold and transfer.content is not None:
            # large payloads are only ever referenced, never embedded
            transfer = transfer.model_copy(update={"content": None})
        self._transfers[transfer.id] = transfer
        self._save()
        return transfer

    def record_sent(self, transfer: Transfer) -> Transfer:
        return self._put(transfer)

    def record_received(self, transfer: Transfer) -> Transfer:
        return self._put(transfer.model_copy(update={"direction": TransferDirection.RECEIVED}))

    def get(self, transfer_id: str) -> Transfer | None:
        return self._transfers.get(transfer_id)

    def list_transfers(self) -> list[Transfer]:
        return list(self._transfers.values())

    def delete_transfer(self, transfer_id: str) -> bool:
        if self._transfers.pop(transfer_id, None) is None:
            return False
        self._save()
        return True


class FileStore:
    """Payload bytes on disk. Never overwrites an existing file."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def unique_path(self, filename: str) -> Path:
        name = safe_filename(filename)
        path = self.root / name
        stem, suffix = path.stem, path.suffix
        counter = 1
        while path.exists():
            path = self.root / f"{stem} ({counter}){suffix}"
            counter += 1
        return path

    def _write(self, filename: str, data: bytes) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.unique_path(filename)
        with open(path, "wb") as f:
            f.write(data)
        return str(path)

    async def write_bytes(self, filename: str, data: bytes) -> str:
        """Write a payload under the save directory. Returns the final path."""
        path = await asyncio.to_thread(self._write, filename, data)
        logger.info(f"Saved {len(data)} bytes to {path}")
        return path

    async def read_bytes(self, path: str) -> bytes:
        return await asyncio.to_thread(Path(path).read_bytes)

    def open(self, path: str) -> FileSource:
        """Random-access source for streaming a stored file back out."""
        return FileSource(path)

    def delete(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
