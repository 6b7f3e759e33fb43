"""Core engine types shared by the reducer and the loop controllers."""
from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass
from enum import Enum


class SendMode(str, Enum):
    """How the backend should treat a prompt.

    ENQUEUE delivers it to a session that is already generating.
    """
    DEFAULT = "default"
    ENQUEUE = "enqueue"


class LoopOutcome(str, Enum):
    CONTINUE = "continue"
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class LoopStep:
    """Result of asking a loop controller what to do after an idle."""
    outcome: LoopOutcome
    next_prompt: str | None = None

    @property
    def should_continue(self) -> bool:
        return self.outcome == LoopOutcome.CONTINUE and self.next_prompt is not None


class SequenceGenerator:
    """Process-scoped id and tab-name counters.

    Injected into the orchestrator so tests can reset it between runs.
    """

    def __init__(self, prefix: str = "msg") -> None:
        self._prefix = prefix
        self._ids = itertools.count(1)
        self._tabs = itertools.count(1)
        self._run = uuid.uuid4().hex[:6]

    def next_id(self) -> str:
        return f"{self._prefix}-{self._run}-{next(self._ids)}"

    def next_tab_name(self) -> str:
        return f"Session {next(self._tabs)}"

    def skip_tabs(self, count: int) -> None:
        """Advance the tab counter past names already taken by restored tabs."""
        for _ in range(count):
            next(self._tabs)

    def reset(self) -> None:
        self._ids = itertools.count(1)
        self._tabs = itertools.count(1)
