"""Discovery provider capability shared by the relay and local-network strategies."""

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator

from snapsend.discovery.models import DeviceEvent


class DiscoveryProvider(ABC):
    """Produces DeviceAppeared/DeviceLost events and manages device links."""

    def __init__(self) -> None:
        self._device_events: asyncio.Queue[DeviceEvent] = asyncio.Queue()
        self._message_callbacks: list = []

    def _publish(self, event: DeviceEvent) -> None:
        self._device_events.put_nowait(event)

    async def discover(self) -> AsyncIterator[DeviceEvent]:
        """Stream of device events, in the order they were observed."""
        while True:
            yield await self._device_events.get()

    def on_message(self, callback) -> None:
        """Register a callback for non-discovery messages arriving over a link."""
        self._message_callbacks.append(callback)

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def connect(self, handle: str) -> None:
        ...

    @abstractmethod
    async def disconnect(self, handle: str) -> None:
        ...
