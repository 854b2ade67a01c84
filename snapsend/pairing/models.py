"""Pydantic models for pairings."""

import time
import uuid
from enum import Enum

from pydantic import Field

from snapsend.discovery.models import WireModel


class PairingStatus(str, Enum):
    REQUESTED = "requested"
    ACTIVE = "active"
    TERMINATED = "terminated"


class Pairing(WireModel):
    """An active logical connection between two device handles."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    device_a: str = Field(alias="deviceAHandle")
    device_b: str = Field(alias="deviceBHandle")
    status: PairingStatus = PairingStatus.ACTIVE
    auto: bool = False
    created_at: float = Field(default_factory=time.time)
    terminated_at: float | None = None
    terminated_by: str | None = None

    def involves(self, handle: str) -> bool:
        return handle in (self.device_a, self.device_b)

    def partner_of(self, handle: str) -> str:
        return self.device_b if handle == self.device_a else self.device_a

    @property
    def key(self) -> frozenset:
        return frozenset((self.device_a, self.device_b))
