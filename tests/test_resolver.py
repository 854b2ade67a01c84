import pytest

from snapsend.pairing.coordinator import PairingCoordinator
from snapsend.transfer.models import Outcome, Route, TargetDescriptor, Transfer
from snapsend.transfer.resolver import TargetResolver


def make_transfer(name="notes.txt", size=5) -> Transfer:
    return Transfer(filename=name, original_name=name, size_bytes=size)


@pytest.fixture
def manual(registry, events):
    """Coordinator without the auto-pair rule, with three devices online."""
    coordinator = PairingCoordinator(registry, events, auto_pair=False)
    registry.register("u1", "Alice", "a")
    registry.register("u2", "Bob", "b")
    registry.register("u3", "Carol", "c")
    return coordinator


@pytest.fixture
def resolver(registry, manual):
    return TargetResolver(registry, manual)


def test_local_is_always_saved(resolver, manual):
    manual.pair("a", "b")
    resolution = resolver.resolve(make_transfer(), TargetDescriptor.local(), "a")
    assert resolution.outcome == Outcome.SAVE_LOCAL
    assert resolver.list_pending() == []


def test_broadcast_without_pairings_saves_locally(resolver):
    resolution = resolver.resolve(make_transfer(), TargetDescriptor.broadcast(), "a")
    assert resolution.outcome == Outcome.SAVE_LOCAL
    assert resolver.list_pending() == []


def test_broadcast_goes_to_every_partner(resolver, manual):
    manual.pair("a", "b")
    manual.pair("c", "a")
    resolution = resolver.resolve(make_transfer(), TargetDescriptor.broadcast(), "a")
    assert resolution.outcome == Outcome.DELIVER_NOW
    assert {r.handle for r in resolution.routes} == {"b", "c"}


def test_paired_device_is_delivered_now(resolver, manual):
    manual.pair("a", "b")
    resolution = resolver.resolve(make_transfer(), TargetDescriptor.device("b"), "a")
    assert resolution.outcome == Outcome.DELIVER_NOW
    assert resolution.routes == [Route(handle="b")]


def test_queue_flushes_exactly_once(resolver, manual):
    transfer = make_transfer()
    resolution = resolver.resolve(transfer, TargetDescriptor.device("b"), "a")
    assert resolution.outcome == Outcome.QUEUE
    assert resolver.take_ready() == []

    manual.pair("a", "b")
    ready = resolver.take_ready()
    assert len(ready) == 1
    pending, route = ready[0]
    assert pending.transfer.id == transfer.id
    assert route == Route(handle="b")

    assert resolver.take_ready() == []
    assert resolver.list_pending() == []


def test_queue_releases_in_enqueue_order(resolver, manual):
    first, second = make_transfer("1.txt"), make_transfer("2.txt")
    resolver.resolve(first, TargetDescriptor.device("b"), "a")
    resolver.resolve(second, TargetDescriptor.device("b"), "a")
    manual.pair("a", "b")

    assert [p.transfer.id for p, _ in resolver.take_ready()] == [first.id, second.id]


def test_queue_only_releases_to_its_own_target(resolver, manual):
    resolver.resolve(make_transfer(), TargetDescriptor.device("b"), "a")
    manual.pair("a", "c")

    assert resolver.take_ready() == []
    assert len(resolver.list_pending()) == 1


def test_queue_follows_target_to_new_handle(registry, resolver, manual):
    resolver.resolve(make_transfer(), TargetDescriptor.device("b"), "a")
    registry.mark_offline("b")
    registry.register("u2", "Bob", "b2")
    manual.pair("a", "b2")

    (pending, route), = resolver.take_ready()
    assert route.handle == "b2"


def test_termination_keeps_queued_entries(resolver, manual):
    pairing = manual.pair("a", "b")
    manual.terminate(pairing.id, "a")

    resolution = resolver.resolve(make_transfer(), TargetDescriptor.device("b"), "a")
    assert resolution.outcome == Outcome.QUEUE
    manual.terminate(pairing.id, "b")
    assert len(resolver.list_pending()) == 1


def test_relayed_client_needs_pairing_with_host(resolver, manual):
    resolver.set_relay_routes("c", {"browser-1": "u9"})
    target = TargetDescriptor.relayed("browser-1")

    assert resolver.resolve(make_transfer(), target, "a").outcome == Outcome.QUEUE

    manual.pair("a", "c")
    (pending, route), = resolver.take_ready()
    assert route == Route(handle="c", relay_to="browser-1")


def test_own_relayed_client_needs_no_pairing(resolver):
    resolver.set_relay_routes("a", {"browser-1": "u9"})
    resolution = resolver.resolve(make_transfer(), TargetDescriptor.relayed("browser-1"), "a")
    assert resolution.outcome == Outcome.DELIVER_NOW
    assert resolution.routes == [Route(handle="a", relay_to="browser-1")]


def test_drop_host_forgets_its_clients(resolver):
    resolver.set_relay_routes("c", {"browser-1": "u9"})
    assert resolver.relayed_clients() == {"browser-1": "c"}
    resolver.drop_host("c")
    assert resolver.relayed_clients() == {}


def test_discard(resolver):
    transfer = make_transfer()
    resolver.resolve(transfer, TargetDescriptor.device("b"), "a")
    assert resolver.discard(transfer.id) is True
    assert resolver.discard(transfer.id) is False


def test_queue_for_offline_target_follows_it_after_reconnect(registry, resolver, manual):
    registry.mark_offline("b")
    transfer = make_transfer()
    resolution = resolver.resolve(transfer, TargetDescriptor.device("b"), "a")
    assert resolution.outcome == Outcome.QUEUE
    assert resolver.list_pending()[0].target_key == "u2"

    registry.register("u2", "Bob", "b2")
    manual.pair("a", "b2")

    ((pending, route),) = resolver.take_ready()
    assert pending.transfer.id == transfer.id
    assert route == Route(handle="b2")
