"""Pydantic models for devices and discovery."""

import time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for models that travel over the wire with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Device(WireModel):
    """A known device. `handle` changes on every reconnect, `stable_id` never."""
    handle: str = Field(alias="id")
    stable_id: str
    display_name: str
    online: bool = True
    last_seen: float = Field(default_factory=time.time)


class PeerInfo(BaseModel):
    """A device resolved from a local-network advertisement."""
    stable_id: str
    device_name: str
    host: str
    port: int  # TCP port of the peer's link server
    platform: str = ""
    last_seen: float = Field(default_factory=time.time)

    @property
    def handle(self) -> str:
        return f"{self.host}:{self.port}"


class DiscoveryBeacon(BaseModel):
    """The JSON payload broadcast over UDP."""
    app_id: str
    stable_id: str
    device_name: str
    link_port: int
    api_port: int = 0
    platform: str = ""


class DeviceEventKind(str, Enum):
    APPEARED = "device-appeared"
    LOST = "device-lost"


class DeviceEvent(BaseModel):
    """Emitted by a discovery provider when a device comes or goes."""
    kind: DeviceEventKind
    handle: str
    stable_id: str = ""
    display_name: str = ""
