"""Session state - one tab's conversation, tool activity and loop policy."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Union

from tabloop.shared.models.message import ActiveTool, Attachment, Message, MessageRole
from tabloop.shared.models.permission import PermissionRequest


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LisaPhase(str, Enum):
    PLAN = "plan"
    PLAN_REVIEW = "plan-review"
    EXECUTE = "execute"
    CODE_REVIEW = "code-review"
    VALIDATE = "validate"
    FINAL_REVIEW = "final-review"

    @property
    def is_review(self) -> bool:
        return self in _REVIEW_PHASES


_REVIEW_PHASES = frozenset({
    LisaPhase.PLAN_REVIEW,
    LisaPhase.CODE_REVIEW,
    LisaPhase.FINAL_REVIEW,
})


@dataclass
class RalphState:
    """Iteration-bounded continuation loop for a single prompt."""
    original_prompt: str
    max_iterations: int = 5
    current_iteration: int = 1
    active: bool = True
    clear_context_between_iterations: bool = True
    require_screenshot: bool = False


@dataclass
class PhaseVisit:
    phase: LisaPhase
    iteration: int
    timestamp: datetime = field(default_factory=_utcnow)


def _initial_phase_iterations() -> dict[LisaPhase, int]:
    counts = {phase: 0 for phase in LisaPhase}
    counts[LisaPhase.PLAN] = 1
    return counts


def _initial_phase_history() -> list[PhaseVisit]:
    return [PhaseVisit(phase=LisaPhase.PLAN, iteration=1)]


@dataclass
class LisaState:
    """Review-gated plan/execute/validate workflow.

    ``phase_history`` only grows, and its last entry always names
    ``current_phase``.
    """
    original_prompt: str
    current_phase: LisaPhase = LisaPhase.PLAN
    phase_iterations: dict[LisaPhase, int] = field(default_factory=_initial_phase_iterations)
    phase_history: list[PhaseVisit] = field(default_factory=_initial_phase_history)
    active: bool = True
    evidence_folder_path: str = "evidence"


# At most one loop policy per session; the slot holds either or neither.
ActiveLoop = Union[RalphState, LisaState, None]


@dataclass
class DraftInput:
    """Unsent composer contents kept for a tab while another tab is shown."""
    text: str = ""
    attachments: list[Attachment] = field(default_factory=list)


@dataclass
class PreviousSession:
    """Lightweight record left behind when a session is closed."""
    session_id: str
    name: str
    cwd: str | None = None
    closed_at: datetime = field(default_factory=_utcnow)


@dataclass
class Session:
    """Holds all conversation state for one tab."""

    session_id: str
    name: str = ""
    model: str | None = None
    cwd: str | None = None
    messages: list[Message] = field(default_factory=list)
    is_processing: bool = False
    active_tools: list[ActiveTool] = field(default_factory=list)
    pending_confirmations: list[PermissionRequest] = field(default_factory=list)
    loop: ActiveLoop = None
    draft: DraftInput | None = None
    # Insertion-ordered set of paths touched by edit/create tools.
    edited_files: dict[str, None] = field(default_factory=dict)
    has_unread_completion: bool = False
    current_intent: str | None = None
    current_intent_at: datetime | None = None
    always_allowed: set[str] = field(default_factory=set)
    needs_title: bool = True
    detected_choices: list[str] = field(default_factory=list)
    marked_for_review: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def ralph_loop(self) -> RalphState | None:
        return self.loop if isinstance(self.loop, RalphState) else None

    @property
    def lisa_loop(self) -> LisaState | None:
        return self.loop if isinstance(self.loop, LisaState) else None

    @property
    def has_active_loop(self) -> bool:
        return self.loop is not None and self.loop.active

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def last_assistant_message(self) -> Message | None:
        for msg in reversed(self.messages):
            if msg.role == MessageRole.ASSISTANT:
                return msg
        return None

    def first_user_message(self) -> Message | None:
        for msg in self.messages:
            if msg.role == MessageRole.USER:
                return msg
        return None

    def add_edited_file(self, path: str) -> bool:
        """Record an edited path. Returns False if it was already known."""
        if path in self.edited_files:
            return False
        self.edited_files[path] = None
        return True

    @property
    def edited_file_list(self) -> list[str]:
        return list(self.edited_files)
