import asyncio
import json
import time

import pytest

from snapsend.config import APP_ID, PEER_TIMEOUT
from snapsend.discovery.identity import IdentityService
from snapsend.discovery.lan import LocalNetworkDiscovery
from snapsend.discovery.models import DeviceEventKind
from snapsend.discovery.service import BeaconService, DiscoveryProtocol


def beacon_bytes(stable_id="peer-1", app_id=APP_ID, link_port=50001) -> bytes:
    return json.dumps({
        "app_id": app_id,
        "stable_id": stable_id,
        "device_name": "Peer",
        "link_port": link_port,
    }).encode("utf-8")


@pytest.fixture
def identity(tmp_path):
    return IdentityService(config_dir=tmp_path / "me", default_name="Me")


@pytest.fixture
def beacon(identity):
    service = BeaconService(identity)
    service.changes = []
    service.on_peer_change(lambda kind, peer: service.changes.append((kind, peer.handle)))
    return service


def test_identity_is_stable_across_restarts(tmp_path):
    first = IdentityService(config_dir=tmp_path, default_name="Desk")
    second = IdentityService(config_dir=tmp_path, default_name="Other")
    assert first.stable_id == second.stable_id
    assert second.display_name == "Other"

    second.rename("  Studio  ")
    assert IdentityService(config_dir=tmp_path).display_name == "Studio"
    with pytest.raises(ValueError):
        second.rename("   ")


def test_beacon_resolves_peer(beacon):
    protocol = DiscoveryProtocol(beacon)
    protocol.datagram_received(beacon_bytes(), ("10.0.0.5", 41235))
    protocol.datagram_received(beacon_bytes(), ("10.0.0.5", 41235))

    assert beacon.changes == [(DeviceEventKind.APPEARED, "10.0.0.5:50001")]
    assert [p.stable_id for p in beacon.get_peers()] == ["peer-1"]


def test_beacon_ignores_noise(beacon, identity):
    protocol = DiscoveryProtocol(beacon)
    protocol.datagram_received(b"\xff\xfe", ("10.0.0.5", 41235))
    protocol.datagram_received(b'{"app_id": "x"}', ("10.0.0.5", 41235))
    protocol.datagram_received(beacon_bytes(app_id="other-app"), ("10.0.0.5", 41235))
    protocol.datagram_received(beacon_bytes(stable_id=identity.stable_id), ("10.0.0.9", 41235))

    assert beacon.changes == []


def test_moved_peer_counts_as_new(beacon):
    protocol = DiscoveryProtocol(beacon)
    protocol.datagram_received(beacon_bytes(link_port=50001), ("10.0.0.5", 41235))
    protocol.datagram_received(beacon_bytes(link_port=50002), ("10.0.0.5", 41235))

    assert [handle for _, handle in beacon.changes] == ["10.0.0.5:50001", "10.0.0.5:50002"]


def test_expired_peer_is_lost(beacon):
    DiscoveryProtocol(beacon).datagram_received(beacon_bytes(), ("10.0.0.5", 41235))

    assert beacon.expire_stale(now=time.time()) == []
    lost = beacon.expire_stale(now=time.time() + PEER_TIMEOUT + 1)

    assert [p.stable_id for p in lost] == ["peer-1"]
    assert beacon.changes[-1] == (DeviceEventKind.LOST, "10.0.0.5:50001")
    assert beacon.get_peers() == []


def test_forgotten_peer_reappears(beacon):
    protocol = DiscoveryProtocol(beacon)
    protocol.datagram_received(beacon_bytes(), ("10.0.0.5", 41235))
    beacon.forget("peer-1")
    protocol.datagram_received(beacon_bytes(), ("10.0.0.5", 41235))

    assert len(beacon.changes) == 2


async def next_event(stream):
    return await asyncio.wait_for(anext(stream), timeout=5)


def test_direct_link_between_two_devices(tmp_path):
    alice_id = IdentityService(config_dir=tmp_path / "a", default_name="Alice")
    bob_id = IdentityService(config_dir=tmp_path / "b", default_name="Bob")

    async def scenario():
        alice = LocalNetworkDiscovery(alice_id, host="127.0.0.1")
        bob = LocalNetworkDiscovery(bob_id, host="127.0.0.1")
        received = []

        async def on_message(channel, message):
            received.append((channel.handle, message))

        bob.on_message(on_message)
        alice_events, bob_events = alice.discover(), bob.discover()
        await alice.start()
        await bob.start()
        try:
            await alice.connect(f"127.0.0.1:{bob.link_port}")
            appeared_at_alice = await next_event(alice_events)
            appeared_at_bob = await next_event(bob_events)

            await alice.channel(appeared_at_alice.handle).send({"type": "ping", "data": {}})
            for _ in range(50):
                if received:
                    break
                await asyncio.sleep(0.01)

            await alice.disconnect(appeared_at_alice.handle)
            lost_at_alice = await next_event(alice_events)
            lost_at_bob = await next_event(bob_events)
        finally:
            await alice.stop()
            await bob.stop()
        return alice, bob, appeared_at_alice, appeared_at_bob, received, lost_at_alice, lost_at_bob

    alice, bob, appeared_at_alice, appeared_at_bob, received, lost_at_alice, lost_at_bob = asyncio.run(scenario())

    assert appeared_at_alice.kind == DeviceEventKind.APPEARED
    assert appeared_at_alice.stable_id == bob_id.stable_id
    assert appeared_at_alice.display_name == "Bob"
    assert appeared_at_alice.handle == f"127.0.0.1:{bob.link_port}"
    assert appeared_at_bob.stable_id == alice_id.stable_id
    assert appeared_at_bob.handle == f"127.0.0.1:{alice.link_port}"
    assert received == [(appeared_at_bob.handle, {"type": "ping", "data": {}})]
    assert lost_at_alice.kind == DeviceEventKind.LOST
    assert lost_at_bob.kind == DeviceEventKind.LOST
    assert alice.handles() == [] and bob.handles() == []
