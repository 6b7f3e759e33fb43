"""tabloop - event-driven coordination of concurrent agent sessions.

Reduces a backend's per-session event stream (deltas, messages, idle,
tool calls, permission requests, errors) into session state and drives
optional autonomous continuation loops (Ralph and Lisa).
"""
from __future__ import annotations

__version__ = "0.1.0"
