"""Async event bus bridging scheduler callbacks to a front end.

The scheduler fires plain dicts via EngineConfig.event_callback; the
EventBus turns them into typed HostEvents and queues them for the front
end's consumer loop.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from agentdesk.adapters.events import HostEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging scheduler callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[HostEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass to EngineConfig.event_callback."""
        await self.emit(dict_to_event(data))

    def make_callback(self):
        """Return the async callback for EngineConfig.event_callback."""
        return self._callback

    async def emit(self, event: HostEvent) -> None:
        """Queue an event, waiting for room rather than dropping it."""
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                self._queue.qsize(),
            )

    async def next_event(self, timeout: float) -> HostEvent | None:
        """Wait up to *timeout* seconds for one event."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list[HostEvent]:
        """Remove and return every queued event without waiting."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events
