"""Demultiplexes the backend's global event stream into per-session handlers.

Also absorbs duplicate ``idle`` notifications: re-entrant delivery can
report the same turn ending twice with nothing to tell the copies apart,
so a second idle for a session inside the dedup window is dropped.
"""
from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from tabloop.adapters.events import BackendEvent
from tabloop.shared.models.session import Session

logger = logging.getLogger(__name__)

EventHandler = Callable[[Session, Any], Awaitable[None] | None]
SessionLookup = Callable[[str], Session | None]


class EventRouter:
    """Routes each event to the handler registered for its type."""

    def __init__(
        self,
        lookup: SessionLookup,
        *,
        idle_window_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lookup = lookup
        self._handlers: dict[str, EventHandler] = {}
        self._idle_window = idle_window_seconds
        self._clock = clock
        self._last_idle_at: dict[str, float] = {}

    def register(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type] = handler

    def forget(self, session_id: str) -> None:
        """Drop dedup bookkeeping for a closed session."""
        self._last_idle_at.pop(session_id, None)

    def _is_duplicate_idle(self, session_id: str) -> bool:
        now = self._clock()
        last = self._last_idle_at.get(session_id)
        if last is not None and now - last < self._idle_window:
            return True
        self._last_idle_at[session_id] = now
        return False

    async def dispatch(self, event: BackendEvent) -> bool:
        """Process one event. Returns True if a handler ran."""
        session = self._lookup(event.session_id)
        if session is None:
            # The tab may have closed while the backend was still talking.
            logger.debug(
                "Ignoring %s for unknown session %s", event.event_type, event.session_id,
            )
            return False

        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.debug("No handler for event type %r", event.event_type)
            return False

        if event.event_type == "idle" and self._is_duplicate_idle(event.session_id):
            logger.debug("Dropping duplicate idle for session %s", event.session_id)
            return False

        result = handler(session, event)
        if inspect.isawaitable(result):
            await result
        return True
