import asyncio

import pytest

from snapsend.discovery.registry import DeviceRegistry
from snapsend.events import EventBus
from snapsend.pairing.coordinator import PairingCoordinator
from snapsend.transfer.channel import Channel
from snapsend.transfer.payload import PayloadSource


class RecordingChannel(Channel):
    """Keeps every message sent over it."""

    def __init__(self, handle: str, fail_after: int | None = None) -> None:
        super().__init__(handle)
        self.messages: list[dict] = []
        self._fail_after = fail_after

    async def _write(self, message: dict) -> None:
        if self._fail_after is not None and len(self.messages) >= self._fail_after:
            raise ConnectionResetError("peer went away")
        self.messages.append(message)
        # let other tasks run between frames
        await asyncio.sleep(0)

    def of_type(self, message_type: str) -> list[dict]:
        return [m for m in self.messages if m["type"] == message_type]


class ZeroSource(PayloadSource):
    """A large payload of zero bytes that is never held in memory at once."""

    def __init__(self, size: int) -> None:
        self.size = size

    async def read(self, offset: int, length: int) -> bytes:
        return bytes(max(0, min(length, self.size - offset)))


class FakeWebSocket:
    """Stands in for a FastAPI WebSocket accepted by a relay hub."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False

    async def send_text(self, text: str) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True


def drain_events(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def registry():
    return DeviceRegistry()


@pytest.fixture
def coordinator(registry, events):
    return PairingCoordinator(registry, events)
