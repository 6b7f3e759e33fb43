"""Lisa loop: review-gated plan → execute → validate workflow.

Phase graph (each work phase is followed by its review gate):

    plan ──> plan-review ──> execute ──> code-review ──> validate ──> final-review ──> done

Reject edges:

    plan-review  ──> plan
    code-review  ──> plan | execute
    final-review ──> plan | execute | validate

A review may only send work back to a phase at or before its own work
phase. Anything the agent says that carries no recognised signal keeps
the loop in the current phase and counts as another visit.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from tabloop.engine.config import EngineConfig
from tabloop.engine.lisa_prompts import (
    LISA_PHASE_COMPLETE_SIGNAL,
    LISA_REVIEW_APPROVE_SIGNAL,
    build_phase_prompt,
)
from tabloop.engine.models import LoopOutcome, LoopStep
from tabloop.shared.models.session import LisaPhase, LisaState, PhaseVisit

logger = logging.getLogger(__name__)

PHASE_ORDER: tuple[LisaPhase, ...] = (
    LisaPhase.PLAN,
    LisaPhase.PLAN_REVIEW,
    LisaPhase.EXECUTE,
    LisaPhase.CODE_REVIEW,
    LisaPhase.VALIDATE,
    LisaPhase.FINAL_REVIEW,
)

# Forward edge taken on approval / phase completion. None means done.
NEXT_PHASE: dict[LisaPhase, LisaPhase | None] = {
    LisaPhase.PLAN: LisaPhase.PLAN_REVIEW,
    LisaPhase.PLAN_REVIEW: LisaPhase.EXECUTE,
    LisaPhase.EXECUTE: LisaPhase.CODE_REVIEW,
    LisaPhase.CODE_REVIEW: LisaPhase.VALIDATE,
    LisaPhase.VALIDATE: LisaPhase.FINAL_REVIEW,
    LisaPhase.FINAL_REVIEW: None,
}

REJECT_TARGETS: dict[LisaPhase, frozenset[LisaPhase]] = {
    LisaPhase.PLAN_REVIEW: frozenset({LisaPhase.PLAN}),
    LisaPhase.CODE_REVIEW: frozenset({LisaPhase.PLAN, LisaPhase.EXECUTE}),
    LisaPhase.FINAL_REVIEW: frozenset({LisaPhase.PLAN, LisaPhase.EXECUTE, LisaPhase.VALIDATE}),
}

_REJECT_RE = re.compile(
    r"<lisa-review>\s*REJECT\s*:\s*(plan|execute|validate)\s*</lisa-review>",
    re.IGNORECASE,
)


def parse_reject(content: str) -> tuple[LisaPhase, str] | None:
    """Find a reject signal. Returns (target phase, reviewer feedback)."""
    match = _REJECT_RE.search(content or "")
    if match is None:
        return None
    target = LisaPhase(match.group(1).lower())
    feedback = (content[:match.start()] + content[match.end():]).strip()
    return target, feedback


class LisaLoopController:
    """Drives a LisaState through the phase graph on each idle."""

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()

    def start(self, prompt: str, evidence_folder: str | None = None) -> tuple[LisaState, str]:
        state = LisaState(
            original_prompt=prompt,
            evidence_folder_path=evidence_folder or self._config.lisa_evidence_folder,
        )
        logger.info("Lisa loop started (evidence folder %s)", state.evidence_folder_path)
        return state, self.render(state, LisaPhase.PLAN, "", None)

    def render(
        self,
        state: LisaState,
        phase: LisaPhase,
        last_response: str,
        reviewer_feedback: str | None,
    ) -> str:
        return build_phase_prompt(
            phase,
            state.phase_iterations[phase],
            state.original_prompt,
            last_response,
            reviewer_feedback,
            evidence_folder=state.evidence_folder_path,
            context_chars=self._config.lisa_response_context_chars,
        )

    def on_idle(self, state: LisaState, last_response: str) -> LoopStep:
        """Apply one transition after a finished turn. Mutates *state*."""
        if not state.active:
            return LoopStep(outcome=LoopOutcome.COMPLETED)

        content = last_response or ""
        current = state.current_phase
        feedback: str | None = None
        target = current

        if current.is_review and LISA_REVIEW_APPROVE_SIGNAL in content:
            following = NEXT_PHASE[current]
            if following is None:
                state.active = False
                logger.info(
                    "Lisa loop approved at final review after %d transitions",
                    len(state.phase_history),
                )
                return LoopStep(outcome=LoopOutcome.COMPLETED)
            target = following
        elif current.is_review and (rejected := parse_reject(content)) is not None:
            requested, feedback = rejected
            if requested in REJECT_TARGETS[current]:
                target = requested
            else:
                logger.warning(
                    "Ignoring reject from %s to later phase %s", current.value, requested.value,
                )
                feedback = None
        elif not current.is_review and LISA_PHASE_COMPLETE_SIGNAL in content:
            target = NEXT_PHASE[current]

        self._transition(state, target)
        return LoopStep(
            outcome=LoopOutcome.CONTINUE,
            next_prompt=self.render(state, target, content, feedback or None),
        )

    @staticmethod
    def _transition(state: LisaState, target: LisaPhase) -> None:
        if target == state.current_phase:
            state.phase_iterations[target] += 1
        else:
            logger.info("Lisa phase %s -> %s", state.current_phase.value, target.value)
            state.phase_iterations[target] = 1
            state.current_phase = target
        state.phase_history.append(PhaseVisit(
            phase=target,
            iteration=state.phase_iterations[target],
            timestamp=datetime.now(timezone.utc),
        ))
