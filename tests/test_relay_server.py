from fastapi.testclient import TestClient

from snapsend.relay.hub import RelayHub
from snapsend.relay.server import create_relay_app
from snapsend.storage import FileStore


def setup(ws, name, stable_id):
    ws.send_json({"type": "device-setup", "data": {"name": name, "stableId": stable_id}})


def test_relay_end_to_end(tmp_path):
    hub = RelayHub(FileStore(str(tmp_path)))
    app = create_relay_app(hub)

    with TestClient(app) as client:
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            setup(alice, "Alice", "u1")
            assert alice.receive_json()["type"] == "setup-complete"

            setup(bob, "Bob", "u2")
            bob_setup = bob.receive_json()
            assert bob_setup["type"] == "setup-complete"
            bob_handle = bob_setup["data"]["device"]["id"]
            paired = bob.receive_json()
            assert paired["type"] == "auto-paired"
            assert paired["data"]["partnerDevice"]["displayName"] == "Alice"

            assert alice.receive_json()["type"] == "device-connected"
            assert alice.receive_json()["type"] == "auto-paired"

            alice.send_json({
                "type": "file-transfer",
                "data": {
                    "transferId": "t1",
                    "filename": "note.txt",
                    "originalName": "note.txt",
                    "mimeType": "text/plain",
                    "size": 2,
                    "content": "aGk=",
                    "targetDeviceHandle": bob_handle,
                },
            })
            received = bob.receive_json()
            assert received["type"] == "file-received"
            assert received["data"]["file"]["content"] == "hi"
            assert alice.receive_json()["type"] == "file-sent-confirmation"

            alice.send_text("not json")
            assert alice.receive_json()["type"] == "error"

            devices = client.get("/api/devices").json()["devices"]
            assert {d["displayName"] for d in devices} == {"Alice", "Bob"}
            assert len(client.get("/api/pairings").json()["pairings"]) == 1
            transfers = client.get("/api/transfers").json()["transfers"]
            assert [t["id"] for t in transfers] == ["t1"]

            assert client.delete("/api/transfers/t1").status_code == 200
            assert client.delete("/api/transfers/t1").status_code == 404
