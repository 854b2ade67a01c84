"""
Device Registry.

Owns every Device record. A record is keyed by the device's stable identity;
the transient handle it is reachable under is replaced on reconnect. Several
live handles may briefly map to one stable identity (an old socket that has
not closed yet); only one of them is the record's canonical handle.
"""

import logging
import time
from enum import Enum

from pydantic import BaseModel

from snapsend.discovery.models import Device

logger = logging.getLogger(__name__)


class RegistryChangeKind(str, Enum):
    REGISTERED = "registered"
    OFFLINE = "offline"
    # a handle went away but the device is still online under another one
    RELEASED = "released"
    RENAMED = "renamed"


class RegistryChange(BaseModel):
    kind: RegistryChangeKind
    device: Device
    handle: str
    previous_online: int
    online_count: int


class DeviceRegistry:
    """Tracks known and currently-online devices."""

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self._handles: dict[str, str] = {}  # live handle -> stable id
        self._listeners: list = []  # fn(RegistryChange)
        self._is_preferred = lambda handle: False

    def on_change(self, callback) -> None:
        """Register a synchronous callback: fn(change: RegistryChange)."""
        self._listeners.append(callback)

    def prefer_handles(self, predicate) -> None:
        """Handles for which predicate(handle) is true win dedup on reconnect."""
        self._is_preferred = predicate

    def _notify(self, kind, device: Device, handle: str, previous_online: int) -> None:
        change = RegistryChange(
            kind=kind,
            device=device,
            handle=handle,
            previous_online=previous_online,
            online_count=self.online_count(),
        )
        for cb in self._listeners:
            try:
                cb(change)
            except Exception as e:
                logger.error(f"Registry listener error: {e}", exc_info=True)

    # --- Mutations ---

    def register(self, stable_id: str, display_name: str, handle: str) -> Device:
        """Add a device or refresh the existing record for its stable id."""
        owner = self._handles.get(handle)
        if owner is not None and owner != stable_id:
            self.mark_offline(handle)

        before = self.online_count()
        # re-insert so iteration order reflects recency
        self._handles.pop(handle, None)
        self._handles[handle] = stable_id

        existing = self._devices.get(stable_id)
        if existing is None:
            device = Device(
                handle=handle,
                stable_id=stable_id,
                display_name=display_name,
            )
            logger.info(f"Registered device {display_name} ({stable_id}) as {handle}")
        else:
            keep_current = (
                existing.online
                and existing.handle != handle
                and existing.handle in self._handles
                and self._is_preferred(existing.handle)
                and not self._is_preferred(handle)
            )
            device = existing.model_copy(update={
                "handle": existing.handle if keep_current else handle,
                "display_name": display_name,
                "online": True,
                "last_seen": time.time(),
            })
            if keep_current:
                logger.info(
                    f"Device {display_name} reconnected as {handle}; "
                    f"keeping paired handle {existing.handle}"
                )
            elif existing.handle != handle:
                logger.info(f"Device {display_name} moved {existing.handle} -> {handle}")

        self._devices[stable_id] = device
        self._notify(RegistryChangeKind.REGISTERED, device, handle, before)
        return device

    def mark_offline(self, handle: str) -> Device | None:
        """Drop a live handle. Returns the affected record, if any."""
        stable_id = self._handles.pop(handle, None)
        if stable_id is None:
            return None

        before = self.online_count()
        device = self._devices[stable_id]
        remaining = [h for h, sid in self._handles.items() if sid == stable_id]

        if remaining:
            if device.handle == handle:
                device = device.model_copy(update={"handle": remaining[-1]})
                self._devices[stable_id] = device
            self._notify(RegistryChangeKind.RELEASED, device, handle, before)
            return device

        device = device.model_copy(update={"online": False, "last_seen": time.time()})
        self._devices[stable_id] = device
        logger.info(f"Device offline: {device.display_name} ({handle})")
        self._notify(RegistryChangeKind.OFFLINE, device, handle, before)
        return device

    def rename(self, stable_id: str, new_name: str) -> Device | None:
        existing = self._devices.get(stable_id)
        if existing is None:
            return None
        device = existing.model_copy(update={"display_name": new_name})
        self._devices[stable_id] = device
        count = self.online_count()
        self._notify(RegistryChangeKind.RENAMED, device, device.handle, count)
        return device

    # --- Queries ---

    def list_online(self) -> list[Device]:
        return [d for d in self._devices.values() if d.online]

    def list_known(self) -> list[Device]:
        return list(self._devices.values())

    def online_count(self) -> int:
        return sum(1 for d in self._devices.values() if d.online)

    def get(self, stable_id: str) -> Device | None:
        return self._devices.get(stable_id)

    def get_by_handle(self, handle: str) -> Device | None:
        stable_id = self._handles.get(handle)
        if stable_id is None:
            return None
        return self._devices.get(stable_id)

    def find_known_by_handle(self, handle: str) -> Device | None:
        """The record for a live handle, or the most recent one last seen under it."""
        device = self.get_by_handle(handle)
        if device is not None:
            return device
        matches = [d for d in self._devices.values() if d.handle == handle]
        return max(matches, key=lambda d: d.last_seen, default=None)

    def stable_id_for(self, handle: str) -> str | None:
        return self._handles.get(handle)

    def is_online(self, handle: str) -> bool:
        return handle in self._handles
