"""
SnapSend: FastAPI application factories and command-line entry point.

`relay` runs the shared signaling endpoint; `node` runs a device, either
linking with peers over the LAN or attached to a relay.
"""

import argparse
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from snapsend import __version__
from snapsend.api.routes import init_routes, router
from snapsend.api.websocket import ConnectionManager
from snapsend.config import (
    API_HOST,
    API_PORT,
    CONFIG_DIR,
    DEFAULT_SAVE_DIR,
    LOG_LEVEL,
    RELAY_PORT,
    RELAY_URL,
)
from snapsend.discovery.identity import IdentityService
from snapsend.node.base import Node
from snapsend.node.lan import LanNode
from snapsend.node.relay import RelayNode
from snapsend.relay.hub import RelayHub
from snapsend.relay.server import create_relay_app
from snapsend.storage import FileStore, TransferStore
from snapsend.transfer.channel import MAX_FRAME_SIZE

logger = logging.getLogger(__name__)


def create_node_app(node: Node) -> FastAPI:
    """UI-facing app for one device: `/api`, the `/ws` event socket and, in LAN mode, `/relay`."""
    ws_manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting SnapSend node ({node.mode})...")
        try:
            ws_manager.start(node.events)
            await node.start()
            logger.info(f"SnapSend ready: {node.identity.display_name} ({node.identity.stable_id})")
            yield
        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down SnapSend node...")
            await node.stop()
            await ws_manager.stop()

    app = FastAPI(title="SnapSend", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    init_routes(node)
    app.include_router(router)

    @app.websocket("/ws")
    async def ui_socket(websocket: WebSocket):
        await ws_manager.connect(websocket)
        try:
            while True:
                # Keep the connection alive; UI clients do not send messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await ws_manager.disconnect(websocket)

    if isinstance(node, LanNode):
        @app.websocket("/relay")
        async def relay_socket(websocket: WebSocket):
            await websocket.accept()
            await node.hub.serve(websocket)

    return app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="snapsend", description="Move files between devices.")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="logging level (default: %(default)s)")
    sub = parser.add_subparsers(dest="command", required=True)

    relay = sub.add_parser("relay", help="run the shared relay endpoint")
    relay.add_argument("--host", default=API_HOST)
    relay.add_argument("--port", type=int, default=RELAY_PORT)
    relay.add_argument("--save-dir", default=DEFAULT_SAVE_DIR)

    node = sub.add_parser("node", help="run a device")
    node.add_argument("--mode", choices=("lan", "relay"), default="lan")
    node.add_argument("--relay-url", default=RELAY_URL)
    node.add_argument("--name", help="display name for this device")
    node.add_argument("--host", default=API_HOST)
    node.add_argument("--port", type=int, default=API_PORT)
    node.add_argument("--save-dir", default=DEFAULT_SAVE_DIR)
    return parser


def build_app(args: argparse.Namespace) -> FastAPI:
    if args.command == "relay":
        return create_relay_app(RelayHub(FileStore(args.save_dir)))

    identity = IdentityService()
    if args.name:
        identity.rename(args.name)
    store = TransferStore(CONFIG_DIR / f"transfers-{args.mode}.json")
    if args.mode == "relay":
        node = RelayNode(identity, relay_url=args.relay_url, save_dir=args.save_dir, store=store)
    else:
        node = LanNode(identity, save_dir=args.save_dir, store=store)
    return create_node_app(node)


def server_config(app: FastAPI, host: str, port: int, log_level: str = "info") -> uvicorn.Config:
    """uvicorn settings for both apps. Inline transfers up to the chunking
    threshold arrive as a single WebSocket message, so the message cap is
    raised from uvicorn's 16 MiB default to the frame limit."""
    return uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level=log_level,
        ws_max_size=MAX_FRAME_SIZE,
    )


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app = build_app(args)
    uvicorn.Server(server_config(app, args.host, args.port, args.log_level.lower())).run()


if __name__ == "__main__":
    main()
