"""Pydantic models for file transfer."""

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from snapsend.discovery.models import WireModel


class TransferDirection(str, Enum):
    SENT = "sent"
    RECEIVED = "received"
    QUEUED = "queued"
    SAVED_LOCAL = "saved-local"


class TargetKind(str, Enum):
    LOCAL = "local"
    DEVICE = "device"
    RELAYED_CLIENT = "relayed-client"
    BROADCAST = "broadcast"


RELAY_PREFIX = "relay:"


class TargetDescriptor(BaseModel):
    """Where a transfer should go."""
    kind: TargetKind
    handle: str | None = None

    @classmethod
    def local(cls) -> "TargetDescriptor":
        return cls(kind=TargetKind.LOCAL)

    @classmethod
    def broadcast(cls) -> "TargetDescriptor":
        return cls(kind=TargetKind.BROADCAST)

    @classmethod
    def device(cls, handle: str) -> "TargetDescriptor":
        return cls(kind=TargetKind.DEVICE, handle=handle)

    @classmethod
    def relayed(cls, handle: str) -> "TargetDescriptor":
        return cls(kind=TargetKind.RELAYED_CLIENT, handle=handle)

    @classmethod
    def parse(cls, value: str | None) -> "TargetDescriptor":
        """Parse the UI/wire form: None or "all", "local", "relay:<h>", "<h>"."""
        if value is None or value in ("", "all"):
            return cls.broadcast()
        if value == "local":
            return cls.local()
        if value.startswith(RELAY_PREFIX):
            return cls.relayed(value[len(RELAY_PREFIX):])
        return cls.device(value)

    def __str__(self) -> str:
        if self.kind == TargetKind.LOCAL:
            return "local"
        if self.kind == TargetKind.BROADCAST:
            return "all"
        if self.kind == TargetKind.RELAYED_CLIENT:
            return f"{RELAY_PREFIX}{self.handle}"
        return self.handle or ""


class Transfer(WireModel):
    """A transfer record as persisted and shown to the user."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    filename: str
    original_name: str
    mime_type: str = "application/octet-stream"
    size_bytes: int = Field(alias="size")
    is_clipboard: bool = False
    direction: TransferDirection = TransferDirection.SENT
    target: str = "all"
    # inline payload, only for transfers at or below the chunk threshold
    content: str | None = None
    encoding: str = "base64"
    # where the full payload lives on disk
    content_ref: str | None = None
    total_chunks: int = 0
    from_device: str | None = None
    recipients: list[str] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)


class FileMeta(WireModel):
    """File description carried by the transfer-request message."""
    transfer_id: str
    filename: str
    original_name: str
    mime_type: str = "application/octet-stream"
    size: int
    content: str | None = None
    encoding: str = "base64"
    is_clipboard: bool = False
    chunked: bool = False
    total_chunks: int = 0
    target_device_handle: str | None = None
    save_local: bool = False


class ChunkFrame(WireModel):
    """One slice of a chunked payload. `data` is base64."""
    transfer_id: str
    index: int
    total_chunks: int
    data: str


class ChunkProgress(BaseModel):
    """Ephemeral progress of one chunked transfer."""
    transfer_id: str
    total_bytes: int
    bytes_delivered: int = 0
    direction: TransferDirection

    @property
    def progress(self) -> float:
        if self.total_bytes <= 0:
            return 100.0
        return min(100.0, max(0.0, self.bytes_delivered / self.total_bytes * 100))


class Outcome(str, Enum):
    DELIVER_NOW = "deliver-now"
    QUEUE = "queue"
    SAVE_LOCAL = "save-local"


class Route(BaseModel):
    """A channel to deliver over, optionally forwarded to a relayed client."""
    handle: str
    relay_to: str | None = None


class Resolution(BaseModel):
    outcome: Outcome
    routes: list[Route] = Field(default_factory=list)


class PendingTransfer(BaseModel):
    """A transfer held until its target gets an active pairing."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    transfer: Transfer
    source: Any  # PayloadSource
    target: TargetDescriptor
    target_key: str
    sender_handle: str
    sender_key: str
    queued_at: float = Field(default_factory=time.monotonic)
