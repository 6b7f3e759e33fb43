"""Persistent storage for globally allowed permissions.

Stores two lists under the data directory:
- global_safe_commands.json: executables auto-approved in every session
- allowed_urls.json: hosts auto-approved for URL fetches

Session-scoped ("always") decisions live on the Session itself and are
saved with the open-session list, not here.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

COMMANDS_FILENAME = "global_safe_commands.json"
URLS_FILENAME = "allowed_urls.json"


class PermissionStore:
    """Load and save global permission decisions.

    With no data directory the store keeps everything in memory.
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        self._data_dir = data_dir
        self._commands_path = data_dir / COMMANDS_FILENAME if data_dir else None
        self._urls_path = data_dir / URLS_FILENAME if data_dir else None
        self._memory_commands: set[str] = set()
        self._memory_urls: set[str] = set()

    def load_commands(self) -> set[str]:
        if self._commands_path is None:
            return set(self._memory_commands)
        return self._load_file(self._commands_path)

    def load_urls(self) -> set[str]:
        if self._urls_path is None:
            return set(self._memory_urls)
        return self._load_file(self._urls_path)

    def load(self) -> set[str]:
        """All global allow-list keys (commands plus ``url:<host>`` entries)."""
        return self.load_commands() | {f"url:{host}" for host in self.load_urls()}

    def add_commands(self, executables: list[str]) -> None:
        """Merge executables into the global safe-command list."""
        if not executables:
            return
        if self._commands_path is None:
            self._memory_commands.update(executables)
            return
        self._add_to_file(self._commands_path, executables)

    def add_url_host(self, host: str) -> None:
        if not host:
            return
        if self._urls_path is None:
            self._memory_urls.add(host)
            return
        self._add_to_file(self._urls_path, [host])

    @staticmethod
    def _load_file(path: Path) -> set[str]:
        """Load a set of entries from a JSON list file."""
        if not path.exists():
            return set()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, list):
                return {str(item) for item in data}
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", path)
        return set()

    @staticmethod
    def _add_to_file(path: Path, entries: list[str]) -> None:
        """Add entries to a JSON list file (create if needed)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        existing = PermissionStore._load_file(path)
        existing.update(entries)
        try:
            path.write_text(json.dumps(sorted(existing), indent=2) + "\n", encoding="utf-8")
        except OSError:
            logger.warning("Failed to write %s", path)
