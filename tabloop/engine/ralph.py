"""Ralph loop: re-invoke the agent until it says it is done.

State diagram (one loop instance):

    active ──(completion token seen)──> inactive
    active ──(iteration cap reached)──> inactive
    active ──(idle, neither)──────────> active, iteration + 1

Cancellation (ghost protection, explicit stop, abort) is applied by the
orchestrator and also lands in ``inactive``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from tabloop.engine.config import EngineConfig
from tabloop.engine.errors import LoopConfigError
from tabloop.engine.models import LoopOutcome, LoopStep
from tabloop.shared.models.session import RalphState

logger = logging.getLogger(__name__)

RALPH_COMPLETION_SIGNAL = "<promise>COMPLETE</promise>"

_TRAILING_PUNCTUATION = ".!?,;: "


@dataclass
class RalphOptions:
    """Loop settings chosen by the user when enabling Ralph for a send."""
    max_iterations: int | None = None
    clear_context_between_iterations: bool | None = None
    require_screenshot: bool = False


class RalphLoopController:
    """Builds Ralph prompts and decides whether to continue after each idle."""

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()

    # ── entry ────────────────────────────────────────────────────────

    def start(self, prompt: str, options: RalphOptions | None = None) -> tuple[RalphState, str]:
        """Create loop state for *prompt* and return it with the first payload."""
        options = options or RalphOptions()
        max_iterations = (
            options.max_iterations
            if options.max_iterations is not None
            else self._config.ralph_max_iterations
        )
        if max_iterations < 1:
            raise LoopConfigError(f"max_iterations must be at least 1, got {max_iterations}")
        clear_context = (
            options.clear_context_between_iterations
            if options.clear_context_between_iterations is not None
            else self._config.ralph_clear_context
        )
        state = RalphState(
            original_prompt=prompt,
            max_iterations=max_iterations,
            current_iteration=1,
            active=True,
            clear_context_between_iterations=clear_context,
            require_screenshot=options.require_screenshot,
        )
        logger.info(
            "Ralph loop started: max_iterations=%d clear_context=%s",
            max_iterations, clear_context,
        )
        return state, self.initial_prompt(state)

    def initial_prompt(self, state: RalphState) -> str:
        return (
            f"{state.original_prompt}\n\n"
            "---\n\n"
            f"## Ralph Loop (iteration 1 of {state.max_iterations})\n\n"
            "You are running in an autonomous loop. After each of your turns you "
            "will be asked to continue until the task is finished.\n\n"
            f"- Keep a running log of what is done and what remains in "
            f"`{self._config.ralph_progress_file}`.\n"
            "- Work in small, verifiable steps and re-check your work before "
            "moving on.\n"
            f"{self._screenshot_instruction(state)}"
            "- Only when ALL of the task is complete and verified, output exactly:\n\n"
            f"{RALPH_COMPLETION_SIGNAL}\n"
        )

    # ── idle ─────────────────────────────────────────────────────────

    def on_idle(self, state: RalphState, last_response: str) -> LoopStep:
        """Advance the loop after a finished turn. Mutates *state*."""
        if not state.active:
            return LoopStep(outcome=LoopOutcome.COMPLETED)

        if RALPH_COMPLETION_SIGNAL in (last_response or ""):
            state.active = False
            logger.info("Ralph loop completed at iteration %d", state.current_iteration)
            return LoopStep(outcome=LoopOutcome.COMPLETED)

        if state.current_iteration >= state.max_iterations:
            state.active = False
            logger.info("Ralph loop hit max iterations (%d)", state.max_iterations)
            return LoopStep(outcome=LoopOutcome.MAX_ITERATIONS)

        state.current_iteration += 1
        return LoopStep(
            outcome=LoopOutcome.CONTINUE,
            next_prompt=self.continuation_prompt(state, last_response),
        )

    def continuation_prompt(self, state: RalphState, last_response: str) -> str:
        header = (
            f"## Ralph Loop (iteration {state.current_iteration} of {state.max_iterations})\n\n"
        )
        footer = (
            f"{self._screenshot_instruction(state)}"
            "When ALL of the task is complete and verified, output exactly:\n\n"
            f"{RALPH_COMPLETION_SIGNAL}\n\n"
            "Otherwise keep working on the next step.\n"
        )
        if state.clear_context_between_iterations:
            progress = self._config.ralph_progress_file
            return (
                f"{header}"
                "Start fresh: ignore the earlier chat history and re-derive the "
                "current state from the workspace.\n\n"
                f"1. Read `{progress}` for what has been done and what remains.\n"
                "2. Run `git status` and `git diff` to see the actual changes.\n"
                f"3. Continue with the next unfinished item and update `{progress}`.\n\n"
                "## Original Task:\n\n"
                f"{state.original_prompt}\n\n"
                f"{footer}"
            )
        return (
            f"{header}"
            "Continue working on the task. Your previous response was:\n\n"
            "---\n\n"
            f"{last_response}\n\n"
            "---\n\n"
            "## Original Task:\n\n"
            f"{state.original_prompt}\n\n"
            f"{footer}"
        )

    @staticmethod
    def _screenshot_instruction(state: RalphState) -> str:
        if not state.require_screenshot:
            return ""
        return (
            "- Before signalling completion, take a screenshot of the delivered "
            "feature running and save it under `evidence/screenshots/`.\n"
        )

    # ── ghost protection ─────────────────────────────────────────────

    def is_continuation_phrase(self, text: str) -> bool:
        normalized = " ".join(text.lower().split()).rstrip(_TRAILING_PUNCTUATION)
        for phrase in self._config.continuation_phrases:
            if normalized == phrase or normalized.startswith(phrase + " "):
                return True
        return False

    def should_cancel_for(self, text: str) -> bool:
        """True if *text* looks like the user starting an unrelated task."""
        if not self._config.ghost_protection_enabled:
            return False
        stripped = text.strip()
        if RALPH_COMPLETION_SIGNAL in stripped:
            return False
        if len(stripped) <= self._config.ghost_protection_min_length:
            return False
        return not self.is_continuation_phrase(stripped)
