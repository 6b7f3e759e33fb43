"""Async event bus bridging backend callbacks to the session engine.

The backend fires events via callbacks from its own tasks. The EventBus
queues them so the orchestrator handles exactly one at a time.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from tabloop.adapters.events import BackendEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging backend callbacks to the engine's consumer loop."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[BackendEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = False

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback handed to the backend's event subscriptions."""
        if self._closed:
            return
        await self._put(dict_to_event(data))

    def make_callback(self):
        """Return the async callback for backend event subscriptions."""
        return self._callback

    async def emit(self, event: BackendEvent) -> None:
        """Manually emit an already-typed event."""
        if self._closed:
            return
        await self._put(event)

    async def _put(self, event: BackendEvent) -> None:
        try:
            # Backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[BackendEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain any leftover events and re-open the bus."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = False
