"""Message, tool call and attachment models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ToolStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"


@dataclass
class ActiveTool:
    """One tool call observed on a session, from start to completion."""
    tool_call_id: str
    tool_name: str
    status: ToolStatus = ToolStatus.RUNNING
    input: dict[str, Any] = field(default_factory=dict)
    # Only set once the tool has finished.
    output: Any = None


@dataclass
class Attachment:
    """A file or image handed to the backend alongside a prompt."""
    path: str
    name: str = ""
    mime_type: str = ""
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "mime_type": self.mime_type,
            "size": self.size,
        }


@dataclass
class Message:
    id: str
    role: MessageRole
    content: str = ""
    is_streaming: bool = False
    # Tool activity captured when the turn that produced this message ended.
    tools: list[ActiveTool] | None = None
    # Sent while the agent was busy; cleared once a response arrives.
    is_pending_injection: bool = False
    attachments: list[Attachment] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_utcnow)
