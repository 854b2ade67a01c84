import asyncio
import json
import time

from conftest import FakeWebSocket
from snapsend.config import APP_ID, PEER_TIMEOUT
from snapsend.discovery.identity import IdentityService
from snapsend.discovery.lan import LocalNetworkDiscovery
from snapsend.discovery.service import BeaconService, DiscoveryProtocol
from snapsend.node.base import LOCAL_HANDLE
from snapsend.node.lan import LanNode
from snapsend.transfer.models import TargetDescriptor, Transfer
from snapsend.transfer.payload import PayloadSource


async def until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def make_node(tmp_path, name) -> LanNode:
    identity = IdentityService(config_dir=tmp_path / name / "config", default_name=name)
    return LanNode(
        identity,
        discovery=LocalNetworkDiscovery(identity, host="127.0.0.1"),
        save_dir=str(tmp_path / name / "inbox"),
    )


def test_linked_nodes_pair_and_exchange(tmp_path):
    alice = make_node(tmp_path, "Alice")
    bob = make_node(tmp_path, "Bob")
    browser = FakeWebSocket()

    def received_by_browser():
        return [json.loads(text) for text in browser.sent if '"file-received"' in text]

    async def scenario():
        await alice.start()
        await bob.start()
        try:
            await alice.discovery.connect(f"127.0.0.1:{bob.discovery.link_port}")
            await until(lambda: alice.list_pairings() and bob.list_pairings())

            await alice.send_clipboard("hello bob")
            await until(lambda: bob.list_transfers())

            # a browser attaches to Bob's relay endpoint and becomes reachable from Alice
            channel = await bob.hub.attach(browser)
            await bob.hub.dispatch(
                channel.handle,
                json.dumps({"type": "device-setup", "data": {"name": "Browser", "stableId": "web-1"}}),
            )
            await until(lambda: any(alice.relayed_clients().get(h) for h in alice.discovery.handles()))

            await alice.send_clipboard("hello browser", f"relay:{channel.handle}")
            await until(received_by_browser)
        finally:
            await alice.stop()
            await bob.stop()

    asyncio.run(scenario())

    pairing = alice.list_pairings()[0]
    assert pairing.auto is True

    (record,) = bob.list_transfers()
    assert record.content == "hello bob"
    assert record.from_device == "Alice"
    assert record.is_clipboard is True

    sent = alice.list_transfers()[0]
    assert sent.direction.value == "sent"

    (delivered,) = received_by_browser()
    assert delivered["data"]["fromDevice"] == "Alice"
    assert delivered["data"]["file"]["content"] == "hello browser"


def test_broadcast_without_peers_is_saved_locally(tmp_path):
    node = make_node(tmp_path, "Solo")
    queue = node.events.subscribe()

    async def scenario():
        await node.start()
        try:
            return await node.send_clipboard("note to self")
        finally:
            await node.stop()

    record = asyncio.run(scenario())

    assert record.direction.value == "saved-local"
    assert node.list_pending() == []
    types = []
    while not queue.empty():
        types.append(queue.get_nowait().type)
    assert "file-saved" in types


def test_settings_rename(tmp_path):
    node = make_node(tmp_path, "Desk")
    node.registry.register(node.identity.stable_id, node.identity.display_name, "local")

    asyncio.run(node.rename("Studio"))

    assert node.status()["name"] == "Studio"
    assert node.registry.get(node.identity.stable_id).display_name == "Studio"


class StallingSource(PayloadSource):
    """Serves the first chunk, then blocks until cancelled."""

    def __init__(self, size: int, chunk_size: int) -> None:
        self.size = size
        self._chunk_size = chunk_size
        self.first_read = asyncio.Event()

    async def read(self, offset: int, length: int) -> bytes:
        if offset >= self._chunk_size:
            self.first_read.set()
            await asyncio.Event().wait()
        return b"x" * length


def test_expired_beacon_tears_down_link_pairing_and_transfer(tmp_path):
    identity = IdentityService(config_dir=tmp_path / "Alice" / "config", default_name="Alice")
    alice = LanNode(
        identity,
        discovery=LocalNetworkDiscovery(identity, host="127.0.0.1", connect_grace=0),
        save_dir=str(tmp_path / "Alice" / "inbox"),
        chunk_size=4,
        threshold=10,
    )
    bob = make_node(tmp_path, "Bob")
    beacon = BeaconService(identity)
    queue = alice.events.subscribe()

    async def scenario():
        await alice.start()
        await bob.start()
        try:
            # route alice's beacon sightings into her link layer without opening UDP sockets
            alice.discovery.beacon = beacon
            beacon.on_peer_change(alice.discovery._on_peer_change)
            DiscoveryProtocol(beacon).datagram_received(
                json.dumps({
                    "app_id": APP_ID,
                    "stable_id": bob.identity.stable_id,
                    "device_name": "Bob",
                    "link_port": bob.discovery.link_port,
                }).encode("utf-8"),
                ("127.0.0.1", 41235),
            )
            await until(lambda: alice.coordinator.list_active() and bob.discovery.handles())
            (handle,) = alice.discovery.handles()

            source = StallingSource(size=20, chunk_size=4)
            transfer = Transfer(filename="big.bin", original_name="big.bin", size_bytes=20)
            await alice.transfers.send(transfer, source, TargetDescriptor.device(handle), LOCAL_HANDLE)
            await asyncio.wait_for(source.first_read.wait(), timeout=5)

            beacon.expire_stale(now=time.time() + PEER_TIMEOUT + 1)
            await until(lambda: not alice.discovery.handles() and not bob.discovery.handles())
            await until(lambda: not alice.coordinator.list_active())
            await alice.transfers.join()
            return transfer
        finally:
            await alice.stop()
            await bob.stop()

    transfer = asyncio.run(scenario())

    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    (failed,) = [e for e in events if e.type == "transfer-failed"]
    assert failed.data["transferId"] == transfer.id
    assert "connection-terminated" in [e.type for e in events]
    assert bob.list_transfers() == []
    assert [d.online for d in alice.registry.list_known() if d.display_name == "Bob"] == [False]
