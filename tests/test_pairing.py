import pytest

from conftest import drain_events
from snapsend.errors import ProtocolError, UnreachableTarget
from snapsend.pairing.coordinator import PairingCoordinator
from snapsend.pairing.models import PairingStatus


def test_two_devices_auto_pair_once(registry, events, coordinator):
    queue = events.subscribe()
    registry.register("u1", "Alice", "a")
    registry.register("u2", "Bob", "b")

    active = coordinator.list_active()
    assert len(active) == 1
    assert active[0].auto is True

    auto = [e for e in drain_events(queue) if e.type == "auto-paired"]
    assert len(auto) == 2
    by_target = {e.targets[0]: e.data for e in auto}
    assert by_target["a"]["partnerDevice"]["displayName"] == "Bob"
    assert by_target["b"]["partnerDevice"]["displayName"] == "Alice"


def test_third_device_is_not_auto_paired(registry, coordinator):
    registry.register("u1", "Alice", "a")
    registry.register("u2", "Bob", "b")
    registry.register("u3", "Carol", "c")

    assert len(coordinator.list_all()) == 1
    assert coordinator.partners_of("c") == []


def test_pair_twice_is_idempotent(registry, events):
    coordinator = PairingCoordinator(registry, events, auto_pair=False)
    queue = events.subscribe()
    registry.register("u1", "Alice", "a")
    registry.register("u2", "Bob", "b")

    first = coordinator.pair("a", "b")
    second = coordinator.pair("b", "a")

    assert first.id == second.id
    assert len(coordinator.list_all()) == 1
    accepted = [e for e in drain_events(queue) if e.type == "pair-accepted"]
    assert len(accepted) == 2


def test_pair_rejects_self_and_offline(registry, events):
    coordinator = PairingCoordinator(registry, events, auto_pair=False)
    registry.register("u1", "Alice", "a")

    with pytest.raises(ProtocolError):
        coordinator.pair("a", "a")
    with pytest.raises(UnreachableTarget):
        coordinator.pair("a", "ghost")


def test_terminate_notifies_both_sides(registry, events, coordinator):
    registry.register("u1", "Alice", "a")
    registry.register("u2", "Bob", "b")
    pairing = coordinator.list_active()[0]
    queue = events.subscribe()

    ended = coordinator.terminate(pairing.id, "a")

    assert ended.status == PairingStatus.TERMINATED
    assert ended.terminated_by == "a"
    assert coordinator.find_active("a", "b") is None
    (event,) = drain_events(queue)
    assert event.type == "connection-terminated"
    assert set(event.targets) == {"a", "b"}
    assert event.data["terminatedBy"] == "a"
    # second terminate is a no-op
    assert coordinator.terminate(pairing.id, "a") is None


def test_terminate_by_outsider_is_rejected(registry, events, coordinator):
    registry.register("u1", "Alice", "a")
    registry.register("u2", "Bob", "b")
    registry.register("u3", "Carol", "c")
    pairing = coordinator.list_active()[0]

    with pytest.raises(ProtocolError):
        coordinator.terminate(pairing.id, "c")


def test_device_lost_terminates_its_pairings(registry, events):
    coordinator = PairingCoordinator(registry, events, auto_pair=False)
    for stable_id, handle in (("u1", "a"), ("u2", "b"), ("u3", "c")):
        registry.register(stable_id, handle.upper(), handle)
    ab = coordinator.pair("a", "b")
    bc = coordinator.pair("b", "c")
    ac = coordinator.pair("a", "c")

    registry.mark_offline("b")

    assert coordinator.get(ab.id).status == PairingStatus.TERMINATED
    assert coordinator.get(bc.id).status == PairingStatus.TERMINATED
    assert coordinator.get(ac.id).status == PairingStatus.ACTIVE


def test_listeners_see_activation_and_termination(registry, events, coordinator):
    seen = []
    coordinator.on_change(lambda p: seen.append(p.status))
    registry.register("u1", "Alice", "a")
    registry.register("u2", "Bob", "b")
    registry.mark_offline("a")

    assert seen == [PairingStatus.ACTIVE, PairingStatus.TERMINATED]


def test_reconnect_back_to_two_pairs_again(registry, coordinator):
    registry.register("u1", "Alice", "a")
    registry.register("u2", "Bob", "b")
    registry.mark_offline("b")
    registry.register("u2", "Bob", "b2")

    active = coordinator.list_active()
    assert len(active) == 1
    assert active[0].key == frozenset(("a", "b2"))
