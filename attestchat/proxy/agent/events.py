"""Best-effort fan-out of orchestration events to live observers."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from .formatters import keepalive_event
from .models import AgentEvent

logger = logging.getLogger("attestchat.events")

DEFAULT_BUFFER_SIZE = 100
DEFAULT_KEEPALIVE_INTERVAL = 30.0


class Subscription:
    """One observer's bounded event stream. Registered on creation; no replay."""

    def __init__(self, bus: EventBus, buffer_size: int, keepalive_interval: float | None) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=buffer_size)
        self._keepalive_interval = keepalive_interval
        self.dropped = 0
        self.closed = False

    def offer(self, event: AgentEvent) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def get(self) -> AgentEvent:
        """Next event, or a keepalive once the stream has been idle for the interval."""
        if not self._keepalive_interval:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=self._keepalive_interval)
        except asyncio.TimeoutError:
            return keepalive_event()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[AgentEvent]:
        return self

    async def __anext__(self) -> AgentEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class EventBus:
    """Publishes to every current subscriber without ever blocking the publisher.

    A subscriber whose buffer is full misses the event; the drop is logged.
    """

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        keepalive_interval: float | None = DEFAULT_KEEPALIVE_INTERVAL,
    ) -> None:
        self.buffer_size = buffer_size
        self.keepalive_interval = keepalive_interval
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.buffer_size, self.keepalive_interval)
        self._subscribers.append(sub)
        logger.info(f"Observer subscribed ({len(self._subscribers)} active)")
        return sub

    def publish(self, event: AgentEvent) -> None:
        for sub in list(self._subscribers):
            if not sub.offer(event):
                logger.warning(f"Observer buffer full, dropping event: {event.type}")
        logger.debug(f"Published {event.type} to {len(self._subscribers)} observer(s)")

    def _unsubscribe(self, sub: Subscription) -> None:
        try:
            self._subscribers.remove(sub)
        except ValueError:
            return
        logger.info(f"Observer unsubscribed ({len(self._subscribers)} active)")
