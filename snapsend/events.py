"""
Typed event channel.

Components publish events synchronously from inside state transitions;
transports (relay sockets, UI sockets) subscribe with a queue and drain it
on their own schedule.
"""

import asyncio
import logging

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Event(BaseModel):
    """A notification addressed to some (or all) device handles."""
    type: str
    data: dict
    # None means every connected socket
    targets: tuple[str, ...] | None = None
    exclude: tuple[str, ...] = ()

    def addressed_to(self, handle: str) -> bool:
        if handle in self.exclude:
            return False
        return self.targets is None or handle in self.targets

    def to_message(self) -> dict:
        return {"type": self.type, "data": self.data}


class EventBus:
    """Fan-out of published events to every subscribed queue."""

    def __init__(self) -> None:
        self._queues: list[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(
        self,
        event_type: str,
        data: dict,
        targets=None,
        exclude=(),
    ) -> Event:
        event = Event(
            type=event_type,
            data=data,
            targets=tuple(targets) if targets is not None else None,
            exclude=tuple(exclude),
        )
        for queue in self._queues:
            queue.put_nowait(event)
        logger.debug(f"Published {event_type} to {event.targets or 'all'}")
        return event
