"""Open-session list persistence.

Storage layout:
    {data_dir}/open_sessions.json                      open tabs, in order
    {data_dir}/attachments/{session_id}.json           attachments by message id

Only tab metadata is stored here (id, name, model, cwd, edited files,
session allow-list, review mark). Transcripts belong to the backend.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tabloop.shared.models.message import Attachment
from tabloop.shared.models.session import Session

logger = logging.getLogger(__name__)

OPEN_SESSIONS_FILENAME = "open_sessions.json"
ATTACHMENTS_DIRNAME = "attachments"


def atomic_write_text(path: Path, content: str) -> None:
    """Write via a temp file in the same directory and rename into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


@dataclass
class SessionRecord:
    """What is remembered about an open tab between runs."""
    session_id: str
    name: str = ""
    model: str | None = None
    cwd: str | None = None
    edited_files: list[str] = field(default_factory=list)
    always_allowed: list[str] = field(default_factory=list)
    marked_for_review: bool = False

    @classmethod
    def from_session(cls, session: Session) -> SessionRecord:
        return cls(
            session_id=session.session_id,
            name=session.name,
            model=session.model,
            cwd=session.cwd,
            edited_files=session.edited_file_list,
            always_allowed=sorted(session.always_allowed),
            marked_for_review=session.marked_for_review,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "name": self.name,
            "model": self.model,
            "cwd": self.cwd,
            "edited_files": list(self.edited_files),
            "always_allowed": list(self.always_allowed),
            "marked_for_review": self.marked_for_review,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        return cls(
            session_id=str(data["session_id"]),
            name=str(data.get("name") or ""),
            model=data.get("model"),
            cwd=data.get("cwd"),
            edited_files=[str(p) for p in data.get("edited_files") or []],
            always_allowed=[str(e) for e in data.get("always_allowed") or []],
            marked_for_review=bool(data.get("marked_for_review", False)),
        )


class SessionListStore:
    """Save and load the open-session list and per-message attachments."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = Path(data_dir)
        self._path = self._data_dir / OPEN_SESSIONS_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def save(self, sessions: list[Session]) -> None:
        records = [SessionRecord.from_session(s).to_dict() for s in sessions]
        atomic_write_text(self._path, json.dumps({"sessions": records}, indent=2) + "\n")
        logger.debug("Saved %d open sessions to %s", len(records), self._path)

    def load(self) -> list[SessionRecord]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", self._path, exc_info=True)
            return []
        records: list[SessionRecord] = []
        for raw in data.get("sessions", []):
            try:
                records.append(SessionRecord.from_dict(raw))
            except (KeyError, TypeError):
                logger.warning("Skipping malformed session record: %r", raw)
        return records

    def _attachments_path(self, session_id: str) -> Path:
        return self._data_dir / ATTACHMENTS_DIRNAME / f"{session_id}.json"

    def save_attachments(
        self,
        session_id: str,
        message_id: str,
        attachments: list[Attachment],
    ) -> None:
        """Record *attachments* under the id of the message that carried them."""
        path = self._attachments_path(session_id)
        existing = self._read_attachment_map(path)
        existing[message_id] = [a.to_dict() for a in attachments]
        atomic_write_text(path, json.dumps(existing, indent=2) + "\n")

    def delete_attachments(self, session_id: str) -> None:
        path = self._attachments_path(session_id)
        if path.exists():
            path.unlink()

    @staticmethod
    def _read_attachment_map(path: Path) -> dict[str, list[dict[str, Any]]]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", path)
            return {}
        return data if isinstance(data, dict) else {}
