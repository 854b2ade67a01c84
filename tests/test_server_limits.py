import asyncio
import base64
import json
import socket

import uvicorn
import websockets

from snapsend.main import server_config
from snapsend.relay.hub import RelayHub
from snapsend.relay.server import create_relay_app
from snapsend.storage import FileStore


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def wait_for_type(ws, message_type: str) -> dict:
    while True:
        message = json.loads(await asyncio.wait_for(ws.recv(), timeout=30))
        if message["type"] == message_type:
            return message


async def setup(ws, name: str, stable_id: str) -> dict:
    await ws.send(json.dumps({"type": "device-setup", "data": {"name": name, "stableId": stable_id}}))
    return await wait_for_type(ws, "setup-complete")


def test_inline_payload_above_16_mib_crosses_the_relay(tmp_path):
    payload = bytes(range(256)) * (20 * 1024 * 4)  # 20 MiB of binary
    port = free_port()
    app = create_relay_app(RelayHub(FileStore(str(tmp_path))))
    server = uvicorn.Server(server_config(app, "127.0.0.1", port, "warning"))

    async def scenario():
        serving = asyncio.create_task(server.serve())
        while not server.started:
            await asyncio.sleep(0.05)
        url = f"ws://127.0.0.1:{port}/ws"
        try:
            async with websockets.connect(url, max_size=None) as alice, \
                    websockets.connect(url, max_size=None) as bob:
                await setup(alice, "Alice", "u1")
                bob_handle = (await setup(bob, "Bob", "u2"))["data"]["device"]["id"]
                await wait_for_type(alice, "auto-paired")

                await alice.send(json.dumps({
                    "type": "file-transfer",
                    "data": {
                        "transferId": "t-big",
                        "filename": "big.bin",
                        "originalName": "big.bin",
                        "mimeType": "application/octet-stream",
                        "size": len(payload),
                        "content": base64.b64encode(payload).decode("ascii"),
                        "targetDeviceHandle": bob_handle,
                    },
                }))
                received = await wait_for_type(bob, "file-received")
                confirmation = await wait_for_type(alice, "file-sent-confirmation")
        finally:
            server.should_exit = True
            await serving
        return received, confirmation

    received, confirmation = asyncio.run(scenario())

    assert received["data"]["file"].get("chunked") in (None, False)
    assert base64.b64decode(received["data"]["file"]["content"]) == payload
    assert confirmation["data"]["recipientCount"] == 1


def test_server_config_raises_websocket_message_cap(tmp_path):
    config = server_config(create_relay_app(RelayHub(FileStore(str(tmp_path)))), "127.0.0.1", 0)
    assert config.ws_max_size > 70 * 1024 * 1024 * 4 // 3
