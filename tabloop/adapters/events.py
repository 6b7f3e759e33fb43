"""Event types emitted by the agent backend.

Each event corresponds to one backend subscription payload
(``onDelta``, ``onMessage``, ``onIdle`` ...), parsed into a typed
dataclass for safe consumption by the engine.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tabloop.shared.models.permission import PermissionRequest, parse_permission_request


@dataclass
class BackendEvent:
    """Base event from the agent backend."""
    event_type: str = ""
    session_id: str = ""


@dataclass
class DeltaEvent(BackendEvent):
    event_type: str = "delta"
    content: str = ""


@dataclass
class MessageEvent(BackendEvent):
    """A complete, non-streamed assistant message."""
    event_type: str = "message"
    content: str = ""


@dataclass
class IdleEvent(BackendEvent):
    event_type: str = "idle"


@dataclass
class ToolStartEvent(BackendEvent):
    event_type: str = "tool_start"
    tool_call_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolEndEvent(BackendEvent):
    event_type: str = "tool_end"
    tool_call_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] | None = None
    output: Any = None


@dataclass
class PermissionEvent(BackendEvent):
    event_type: str = "permission"
    request: PermissionRequest | None = None


@dataclass
class ErrorEvent(BackendEvent):
    event_type: str = "error"
    message: str = ""


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[BackendEvent]] = {
    "delta": DeltaEvent,
    "message": MessageEvent,
    "idle": IdleEvent,
    "tool_start": ToolStartEvent,
    "tool_end": ToolEndEvent,
    "permission": PermissionEvent,
    "error": ErrorEvent,
}

_KEY_ALIASES: dict[str, str] = {
    "sessionId": "session_id",
    "toolCallId": "tool_call_id",
    "toolName": "tool_name",
    "arguments": "input",
    "result": "output",
}


def event_to_dict(event: BackendEvent) -> dict[str, Any]:
    """Convert a typed event to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None:
            continue
        if isinstance(val, PermissionRequest):
            d.update(_permission_to_dict(val))
            continue
        d[f] = val
    # Use "event" key instead of "event_type" for consistency with backend payloads
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def _permission_to_dict(request: PermissionRequest) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in request.__dataclass_fields__:
        val = getattr(request, f)
        # The event carries the session id.
        if f == "session_id" or val is None or val == [] or val == {}:
            continue
        out[f] = val.value if f == "kind" else val
    return out


def dict_to_event(data: dict[str, Any]) -> BackendEvent:
    """Convert a backend payload dict to a typed event dataclass."""
    event_type = data.get("event", data.get("event_type", ""))
    cls = _EVENT_MAP.get(event_type, BackendEvent)
    normalized = {_KEY_ALIASES.get(k, k): v for k, v in data.items()}

    if cls is PermissionEvent:
        return PermissionEvent(
            session_id=str(normalized.get("session_id", "")),
            request=parse_permission_request(data),
        )

    # Filter dict keys to only those the dataclass accepts
    valid_fields = set(cls.__dataclass_fields__)
    filtered = {k: v for k, v in normalized.items() if k in valid_fields}
    if cls is ToolStartEvent and filtered.get("input") is None:
        filtered.pop("input", None)
    filtered["event_type"] = event_type
    return cls(**filtered)
