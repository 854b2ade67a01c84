"""WebSocket handler for real-time UI events."""

import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from snapsend.events import EventBus

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages UI WebSocket connections and fans node events out to them."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._pump_task: asyncio.Task | None = None

    @property
    def count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"UI client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"UI client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, event: str, data: dict) -> None:
        """Send an event to every connected UI client, dropping dead sockets."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except (WebSocketDisconnect, RuntimeError, OSError) as e:
                    logger.debug(f"Dropping UI client: {e}")
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    def start(self, events: EventBus) -> None:
        queue = events.subscribe()
        self._pump_task = asyncio.create_task(self._pump(events, queue))

    async def stop(self) -> None:
        if self._pump_task:
            self._pump_task.cancel()

    async def _pump(self, events: EventBus, queue: asyncio.Queue) -> None:
        try:
            while True:
                event = await queue.get()
                await self.broadcast(event.type, event.data)
        finally:
            events.unsubscribe(queue)
