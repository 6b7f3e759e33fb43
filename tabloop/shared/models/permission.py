"""Permission request variants.

The backend delivers permission requests as loosely-typed dicts whose
``kind`` decides which other fields are meaningful. Each kind is parsed
into its own dataclass so consumers never have to guess which optional
fields apply.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Any
from urllib.parse import urlparse

from tabloop.shared.services.executables import extract_executables, is_destructive_command


class PermissionKind(str, Enum):
    COMMAND = "command"
    WRITE = "write"
    READ = "read"
    URL = "url"
    MCP = "mcp"
    OTHER = "other"


class Decision(str, Enum):
    """User answer to a permission request.

    ALWAYS is remembered for the session, GLOBAL across all sessions.
    """
    APPROVED = "approved"
    ALWAYS = "always"
    GLOBAL = "global"
    DENIED = "denied"


# Separator the backend uses when one command needs several executables.
EXECUTABLE_SEPARATOR = ", "


def split_executables(executable: str | None) -> list[str]:
    if not executable:
        return []
    return [e.strip() for e in executable.split(EXECUTABLE_SEPARATOR) if e.strip()]


@dataclass
class PermissionRequest:
    """Base request. ``kind`` discriminates the concrete variant."""
    request_id: str = ""
    session_id: str = ""
    kind: PermissionKind = PermissionKind.OTHER
    executable: str | None = None
    tool_call_id: str | None = None
    intention: str | None = None

    @property
    def is_destructive(self) -> bool:
        return False

    def allow_list_keys(self) -> list[str]:
        """Identifiers this request is remembered under in allow-lists."""
        keys = split_executables(self.executable)
        return keys or [self.kind.value]

    def describe_denial(self) -> str:
        return f"Denied {self.kind.value} permission request"


@dataclass
class CommandPermission(PermissionRequest):
    kind: PermissionKind = PermissionKind.COMMAND
    full_command_text: str = ""
    destructive: bool = False
    files_to_delete: list[str] = field(default_factory=list)

    @property
    def is_destructive(self) -> bool:
        return self.destructive or is_destructive_command(self.full_command_text)

    def allow_list_keys(self) -> list[str]:
        return (
            split_executables(self.executable)
            or extract_executables(self.full_command_text)
            or ["shell"]
        )

    def describe_denial(self) -> str:
        command = self.full_command_text or self.executable or "command"
        return f"Denied command: `{command}`"


@dataclass
class WritePermission(PermissionRequest):
    kind: PermissionKind = PermissionKind.WRITE
    path: str = ""

    def allow_list_keys(self) -> list[str]:
        # File writes are approved as a whole class, never per file.
        return ["write"]

    def describe_denial(self) -> str:
        return f"Denied write to `{self.path or 'file'}`"


@dataclass
class ReadPermission(PermissionRequest):
    kind: PermissionKind = PermissionKind.READ
    path: str = ""
    is_out_of_scope: bool = False

    def allow_list_keys(self) -> list[str]:
        keys = split_executables(self.executable)
        if keys:
            return keys
        if self.path:
            return [f"read:{PurePath(self.path).name or self.path}"]
        return ["read"]

    def describe_denial(self) -> str:
        return f"Denied read of `{self.path or 'file'}`"


@dataclass
class UrlPermission(PermissionRequest):
    kind: PermissionKind = PermissionKind.URL
    url: str = ""

    @property
    def host(self) -> str:
        parsed = urlparse(self.url)
        return parsed.netloc or self.url

    def allow_list_keys(self) -> list[str]:
        keys = split_executables(self.executable)
        return keys or [f"url:{self.host}"]

    def describe_denial(self) -> str:
        return f"Denied fetch of {self.url or 'URL'}"


@dataclass
class McpPermission(PermissionRequest):
    kind: PermissionKind = PermissionKind.MCP
    server_name: str = ""
    tool_name: str = ""
    tool_title: str = ""

    def allow_list_keys(self) -> list[str]:
        keys = split_executables(self.executable)
        if keys:
            return keys
        tool = self.tool_name or self.tool_title or "tool"
        return [f"mcp:{self.server_name or 'server'}/{tool}"]

    def describe_denial(self) -> str:
        tool = self.tool_title or self.tool_name or "tool"
        return f"Denied MCP tool `{tool}` on server `{self.server_name or 'unknown'}`"


@dataclass
class GenericPermission(PermissionRequest):
    """Any kind this core does not know about. Keeps the raw payload."""
    raw_kind: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def allow_list_keys(self) -> list[str]:
        return split_executables(self.executable) or [self.raw_kind or self.kind.value]

    def describe_denial(self) -> str:
        return f"Denied {self.raw_kind or 'unknown'} permission request"


_KIND_ALIASES: dict[str, PermissionKind] = {
    "shell": PermissionKind.COMMAND,
    "command": PermissionKind.COMMAND,
    "write": PermissionKind.WRITE,
    "read": PermissionKind.READ,
    "url": PermissionKind.URL,
    "mcp": PermissionKind.MCP,
}

_KIND_MAP: dict[PermissionKind, type[PermissionRequest]] = {
    PermissionKind.COMMAND: CommandPermission,
    PermissionKind.WRITE: WritePermission,
    PermissionKind.READ: ReadPermission,
    PermissionKind.URL: UrlPermission,
    PermissionKind.MCP: McpPermission,
}

# Backend payloads use camelCase; map them onto dataclass field names.
_FIELD_ALIASES: dict[str, str] = {
    "requestId": "request_id",
    "sessionId": "session_id",
    "toolCallId": "tool_call_id",
    "fullCommandText": "full_command_text",
    "isDestructive": "destructive",
    "is_destructive": "destructive",
    "filesToDelete": "files_to_delete",
    "isOutOfScope": "is_out_of_scope",
    "serverName": "server_name",
    "toolName": "tool_name",
    "toolTitle": "tool_title",
}


def parse_permission_request(data: dict[str, Any]) -> PermissionRequest:
    """Build the typed variant for a backend permission payload."""
    raw_kind = str(data.get("kind", "") or "")
    kind = _KIND_ALIASES.get(raw_kind.lower())
    normalized = {_FIELD_ALIASES.get(k, k): v for k, v in data.items()}

    if kind is None:
        known = {f for f in GenericPermission.__dataclass_fields__} - {"kind", "extra", "raw_kind"}
        return GenericPermission(
            **{k: v for k, v in normalized.items() if k in known},
            raw_kind=raw_kind,
            extra={k: v for k, v in normalized.items() if k not in known and k != "kind"},
        )

    cls = _KIND_MAP[kind]
    valid_fields = set(cls.__dataclass_fields__) - {"kind"}
    filtered = {k: v for k, v in normalized.items() if k in valid_fields}
    if "files_to_delete" in filtered and filtered["files_to_delete"] is None:
        filtered["files_to_delete"] = []
    return cls(**filtered)
