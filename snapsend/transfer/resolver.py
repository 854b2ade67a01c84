"""
Target Resolver & Queue.

Decides where a transfer goes: saved locally, delivered now over one or more
routes, or queued until its target is paired again. Queued entries are keyed
by stable identity so they survive the target reconnecting under a new
handle, and they are only ever released to that exact target.
"""

import logging

from snapsend.discovery.registry import DeviceRegistry
from snapsend.pairing.coordinator import PairingCoordinator
from snapsend.transfer.models import (
    Outcome,
    PendingTransfer,
    Resolution,
    Route,
    TargetDescriptor,
    TargetKind,
    Transfer,
)

logger = logging.getLogger(__name__)


class TargetResolver:
    """Owns every PendingTransfer."""

    def __init__(self, registry: DeviceRegistry, coordinator: PairingCoordinator) -> None:
        self._registry = registry
        self._coordinator = coordinator
        self._queue: list[PendingTransfer] = []
        # relayed client handle -> (host handle, client stable id)
        self._relay_routes: dict[str, tuple[str, str]] = {}

    # --- Relay attachments ---

    def set_relay_routes(self, host: str, clients: dict[str, str]) -> None:
        """Replace the clients reachable through `host` ({handle: stable_id})."""
        self.drop_host(host)
        for handle, stable_id in clients.items():
            self._relay_routes[handle] = (host, stable_id)

    def drop_host(self, host: str) -> None:
        for handle in [h for h, (hh, _) in self._relay_routes.items() if hh == host]:
            del self._relay_routes[handle]

    def relayed_clients(self) -> dict[str, str]:
        """Relayed client handle -> host handle."""
        return {h: host for h, (host, _) in self._relay_routes.items()}

    # --- Resolution ---

    def _key_for(self, target: TargetDescriptor) -> str:
        if target.kind == TargetKind.RELAYED_CLIENT:
            route = self._relay_routes.get(target.handle)
            return route[1] if route else target.handle
        # an offline target still resolves through its last known handle
        device = self._registry.find_known_by_handle(target.handle)
        return device.stable_id if device is not None else target.handle

    def _route_for(self, target: TargetDescriptor, sender: str) -> Route | None:
        if target.kind == TargetKind.RELAYED_CLIENT:
            route = self._relay_routes.get(target.handle)
            if route is None:
                return None
            host = route[0]
            # the sender's own attachments need no pairing
            if host != sender and self._coordinator.find_active(sender, host) is None:
                return None
            return Route(handle=host, relay_to=target.handle)

        if self._coordinator.find_active(sender, target.handle) is None:
            return None
        return Route(handle=target.handle)

    def resolve(
        self,
        transfer: Transfer,
        target: TargetDescriptor,
        sender_handle: str,
        source=None,
    ) -> Resolution:
        if target.kind == TargetKind.LOCAL:
            return Resolution(outcome=Outcome.SAVE_LOCAL)

        if target.kind == TargetKind.BROADCAST:
            partners = self._coordinator.partners_of(sender_handle)
            if not partners:
                logger.info(f"No active pairings for {transfer.original_name}; saving locally")
                return Resolution(outcome=Outcome.SAVE_LOCAL)
            return Resolution(
                outcome=Outcome.DELIVER_NOW,
                routes=[Route(handle=h) for h in partners],
            )

        route = self._route_for(target, sender_handle)
        if route is not None:
            return Resolution(outcome=Outcome.DELIVER_NOW, routes=[route])

        pending = PendingTransfer(
            transfer=transfer,
            source=source,
            target=target,
            target_key=self._key_for(target),
            sender_handle=sender_handle,
            sender_key=self._registry.stable_id_for(sender_handle) or sender_handle,
        )
        self._queue.append(pending)
        logger.info(
            f"Queued {transfer.original_name} for {target} "
            f"({len(self._queue)} pending)"
        )
        return Resolution(outcome=Outcome.QUEUE)

    # --- Queue ---

    def _current_target(self, pending: PendingTransfer) -> TargetDescriptor:
        """The pending target re-addressed to its current handle."""
        if pending.target.kind == TargetKind.RELAYED_CLIENT:
            for handle, (_, stable_id) in self._relay_routes.items():
                if stable_id == pending.target_key:
                    return TargetDescriptor.relayed(handle)
            return pending.target
        device = self._registry.get(pending.target_key)
        if device is not None and device.online:
            return TargetDescriptor.device(device.handle)
        return pending.target

    def _current_sender(self, pending: PendingTransfer) -> str:
        device = self._registry.get(pending.sender_key)
        if device is not None and device.online:
            return device.handle
        return pending.sender_handle

    def take_ready(self) -> list[tuple[PendingTransfer, Route]]:
        """Remove and return, in enqueue order, entries whose target is reachable now."""
        ready = []
        remaining = []
        for pending in self._queue:
            sender = self._current_sender(pending)
            route = self._route_for(self._current_target(pending), sender)
            if route is None:
                remaining.append(pending)
                continue
            ready.append((pending.model_copy(update={"sender_handle": sender}), route))
        self._queue = remaining
        if ready:
            logger.info(f"Releasing {len(ready)} queued transfer(s)")
        return ready

    def list_pending(self) -> list[PendingTransfer]:
        return list(self._queue)

    def discard(self, transfer_id: str) -> bool:
        before = len(self._queue)
        self._queue = [p for p in self._queue if p.transfer.id != transfer_id]
        return len(self._queue) != before
