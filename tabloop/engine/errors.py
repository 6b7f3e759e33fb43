"""Exception hierarchy for the session engine.

Operations addressed to a missing session raise; backend events for a
missing session are ignored instead (the tab may have closed mid-flight).
"""
from __future__ import annotations


class TabloopError(Exception):
    """Base exception for all engine errors."""


class SessionNotFoundError(TabloopError):
    """An operation named a session id that is not open."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class NoPendingConfirmationError(TabloopError):
    """A confirmation response arrived for a session with an empty queue."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"No pending confirmation for session {session_id}")


class LoopConfigError(TabloopError):
    """Loop options are invalid (e.g. both Ralph and Lisa requested)."""


class BackendError(TabloopError):
    """A call into the agent backend failed."""
    def __init__(self, operation: str, session_id: str, reason: str):
        self.operation = operation
        self.session_id = session_id
        self.reason = reason
        super().__init__(
            f"Backend {operation} failed for session {session_id}: {reason}"
        )
