"""REST API routes for a SnapSend device."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from snapsend.errors import ChannelLost, ProtocolError, UnreachableTarget

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_node = None


def init_routes(node) -> None:
    """Inject the running node into the routes module."""
    global _node
    _node = node


# --- Devices & pairings ---

@router.get("/devices")
async def list_devices():
    """Known devices (online or not) plus clients reachable through relay hosts."""
    return {
        "devices": [d.to_wire() for d in _node.list_devices()],
        "relayedClients": _node.relayed_clients(),
    }


@router.get("/pairings")
async def list_pairings():
    return {"pairings": [p.to_wire() for p in _node.list_pairings()]}


class PairRequestBody(BaseModel):
    handle: str


@router.post("/pair")
async def pair(body: PairRequestBody):
    try:
        pairing = await _node.pair(body.handle)
    except (ProtocolError, UnreachableTarget, ChannelLost) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (OSError, ValueError) as e:
        raise HTTPException(status_code=502, detail=f"Could not reach {body.handle}: {e}")
    if pairing is None:
        return {"status": "requested"}
    return {"status": "paired", "pairing": pairing.to_wire()}


@router.post("/pairings/{pairing_id}/terminate")
async def terminate(pairing_id: str):
    try:
        accepted = await _node.terminate(pairing_id)
    except ChannelLost as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ProtocolError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not accepted:
        raise HTTPException(status_code=404, detail="Pairing not active")
    return {"status": "terminated"}


# --- Transfers ---

class TransferRequestBody(BaseModel):
    file_paths: list[str]
    target: str | None = None


class ClipboardBody(BaseModel):
    content: str
    target: str | None = None


@router.get("/transfers")
async def list_transfers():
    return {"transfers": [t.to_wire() for t in _node.list_transfers()]}


@router.post("/transfers")
async def send_files(body: TransferRequestBody):
    """Send files from the local filesystem to a target (`all`, `local`, a handle or `relay:<handle>`)."""
    if not body.file_paths:
        raise HTTPException(status_code=400, detail="No files given")
    try:
        transfers = await _node.send_files(body.file_paths, body.target)
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=f"File not found: {e}")
    return {"transfers": [t.to_wire() for t in transfers]}


@router.post("/clipboard")
async def send_clipboard(body: ClipboardBody):
    transfer = await _node.send_clipboard(body.content, body.target)
    return {"transfer": transfer.to_wire()}


@router.delete("/transfers/{transfer_id}")
async def delete_transfer(transfer_id: str):
    if not _node.delete_transfer(transfer_id):
        raise HTTPException(status_code=404, detail="Transfer not found")
    return {"status": "deleted"}


@router.get("/queue")
async def list_queue():
    """Transfers waiting for their target to be paired again."""
    return {
        "pending": [
            {
                "transfer": p.transfer.to_wire(),
                "target": str(p.target),
                "queuedAt": p.queued_at,
            }
            for p in _node.list_pending()
        ]
    }


@router.get("/progress")
async def list_progress():
    return {
        "progress": [
            {"transferId": p.transfer_id, "progress": p.progress, "direction": p.direction.value}
            for p in _node.engine.get_progress()
        ]
    }


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return _node.status()


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.device_name is not None:
        try:
            await _node.rename(body.device_name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    if body.save_dir is not None:
        try:
            _node.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(status_code=400, detail=f"Unusable directory: {e}")
    return _node.status()
