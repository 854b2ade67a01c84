"""FastAPI application for the relay signaling endpoint."""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from snapsend.relay.hub import RelayHub

logger = logging.getLogger(__name__)


def create_relay_app(hub: RelayHub) -> FastAPI:
    """Build the relay app: `/ws` for devices, read-only `/api` for inspection."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting relay hub...")
        await hub.start()
        try:
            yield
        finally:
            logger.info("Shutting down relay hub...")
            await hub.stop()

    app = FastAPI(title="SnapSend Relay", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "DELETE"],
        allow_headers=["*"],
    )

    router = APIRouter(prefix="/api")

    @router.get("/devices")
    async def list_devices():
        """Known devices, online or not."""
        return {"devices": [d.to_wire() for d in hub.list_devices()]}

    @router.get("/pairings")
    async def list_pairings():
        return {"pairings": [p.to_wire() for p in hub.list_pairings()]}

    @router.get("/transfers")
    async def list_transfers():
        return {"transfers": [t.to_wire() for t in hub.list_transfers()]}

    @router.delete("/transfers/{transfer_id}")
    async def delete_transfer(transfer_id: str):
        if not hub.transfers.delete_transfer(transfer_id):
            raise HTTPException(status_code=404, detail="Transfer not found")
        return {"status": "deleted"}

    app.include_router(router)

    @app.websocket("/ws")
    async def device_socket(websocket: WebSocket):
        await websocket.accept()
        await hub.serve(websocket)

    return app
