"""Async event bus bridging task engine callbacks to UI consumers.

Tasks fire events via ``EngineConfig.event_callback``. The EventBus
queues them for a consumer loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from taskdesk.adapters.events import TaskEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging engine callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[TaskEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass to EngineConfig.event_callback."""
        if self._closed:
            return
        await self.emit(dict_to_event(data))

    def make_callback(self):
        """Return the async callback for EngineConfig.event_callback."""
        return self._callback

    async def emit(self, event: TaskEvent) -> None:
        if self._closed:
            return
        try:
            # Backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[TaskEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def drain(self) -> list[TaskEvent]:
        """Return and remove every queued event without blocking."""
        events: list[TaskEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        self.drain()
        self._closed = False
