"""
Pairing Coordinator.

Creates, tracks and terminates pairings between device handles. There is no
approval handshake: a pair request from a device on the same network becomes
an active pairing immediately. The coordinator also runs the auto-pair rule
and tears pairings down when the registry reports a device gone.
"""

import logging
import time

from snapsend.discovery.registry import DeviceRegistry, RegistryChange, RegistryChangeKind
from snapsend.errors import ProtocolError, UnreachableTarget
from snapsend.events import EventBus
from snapsend.pairing.models import Pairing, PairingStatus

logger = logging.getLogger(__name__)


class PairingCoordinator:
    """Owns every Pairing record."""

    def __init__(self, registry: DeviceRegistry, events: EventBus, auto_pair: bool = True) -> None:
        self._registry = registry
        self._events = events
        self._auto_pair = auto_pair
        self._pairings: dict[str, Pairing] = {}
        self._active: dict[frozenset, str] = {}
        self._listeners: list = []  # fn(pairing: Pairing)

        registry.on_change(self._on_registry_change)
        registry.prefer_handles(self.has_active)

    def on_change(self, callback) -> None:
        """Register a synchronous callback fired on activation and termination."""
        self._listeners.append(callback)

    def _notify(self, pairing: Pairing) -> None:
        for cb in self._listeners:
            try:
                cb(pairing)
            except Exception as e:
                logger.error(f"Pairing listener error: {e}", exc_info=True)

    # --- Transitions ---

    def pair(self, initiator: str, target: str, auto: bool = False) -> Pairing:
        """Activate a pairing. Idempotent for an already-active pair."""
        if initiator == target:
            raise ProtocolError("A device cannot pair with itself")

        existing = self.find_active(initiator, target)
        if existing:
            logger.debug(f"Pairing {initiator} <-> {target} already active")
            return existing

        for handle in (initiator, target):
            if not self._registry.is_online(handle):
                raise UnreachableTarget(handle)

        pairing = Pairing(device_a=initiator, device_b=target, auto=auto)
        self._pairings[pairing.id] = pairing
        self._active[pairing.key] = pairing.id
        logger.info(
            f"{'Auto-paired' if auto else 'Paired'} {initiator} <-> {target} ({pairing.id})"
        )

        event_type = "auto-paired" if auto else "pair-accepted"
        for handle in (initiator, target):
            partner = self._registry.get_by_handle(pairing.partner_of(handle))
            self._events.publish(
                event_type,
                {
                    "pairing": pairing.to_wire(),
                    "partnerDevice": partner.to_wire() if partner else None,
                },
                targets=[handle],
            )

        self._notify(pairing)
        return pairing

    def terminate(self, pairing_id: str, terminated_by: str, reason: str = "requested") -> Pairing | None:
        """Terminate an active pairing. Returns None if it was not active."""
        pairing = self._pairings.get(pairing_id)
        if pairing is None or pairing.status != PairingStatus.ACTIVE:
            return None
        if not pairing.involves(terminated_by):
            raise ProtocolError(f"{terminated_by} is not part of pairing {pairing_id}")

        pairing = pairing.model_copy(update={
            "status": PairingStatus.TERMINATED,
            "terminated_at": time.time(),
            "terminated_by": terminated_by,
        })
        self._pairings[pairing_id] = pairing
        self._active.pop(pairing.key, None)
        logger.info(f"Pairing {pairing_id} terminated by {terminated_by} ({reason})")

        self._events.publish(
            "connection-terminated",
            {"pairingId": pairing_id, "terminatedBy": terminated_by, "reason": reason},
            targets=[pairing.device_a, pairing.device_b],
        )
        self._notify(pairing)
        return pairing

    def terminate_all_for(self, handle: str, reason: str) -> list[Pairing]:
        return [
            p for p in (self.terminate(p.id, handle, reason) for p in self.active_for(handle))
            if p is not None
        ]

    def _on_registry_change(self, change: RegistryChange) -> None:
        if change.kind in (RegistryChangeKind.OFFLINE, RegistryChangeKind.RELEASED):
            self.terminate_all_for(change.handle, reason="device-lost")

        if not self._auto_pair or change.kind == RegistryChangeKind.RENAMED:
            return
        if change.online_count != 2:
            return
        if change.previous_online == 2 and change.kind != RegistryChangeKind.RELEASED:
            return

        first, second = self._registry.list_online()
        if self.find_active(first.handle, second.handle) is None:
            self.pair(first.handle, second.handle, auto=True)

    # --- Queries ---

    def get(self, pairing_id: str) -> Pairing | None:
        return self._pairings.get(pairing_id)

    def find_active(self, a: str, b: str) -> Pairing | None:
        pairing_id = self._active.get(frozenset((a, b)))
        return self._pairings.get(pairing_id) if pairing_id else None

    def active_for(self, handle: str) -> list[Pairing]:
        return [p for p in self.list_active() if p.involves(handle)]

    def partners_of(self, handle: str) -> list[str]:
        return [p.partner_of(handle) for p in self.active_for(handle)]

    def has_active(self, handle: str) -> bool:
        return any(p.involves(handle) for p in self.list_active())

    def list_active(self) -> list[Pairing]:
        return [self._pairings[pid] for pid in self._active.values()]

    def list_all(self) -> list[Pairing]:
        return list(self._pairings.values())
