from __future__ import annotations

from dataclasses import replace

import pytest

from tabloop.engine.config import EngineConfig
from tabloop.engine.errors import LoopConfigError
from tabloop.engine.models import LoopOutcome
from tabloop.engine.ralph import RALPH_COMPLETION_SIGNAL, RalphLoopController, RalphOptions


def test_start_embeds_completion_token():
    controller = RalphLoopController()
    state, prompt = controller.start("Fix the login bug", RalphOptions(max_iterations=3))

    assert state.active is True
    assert state.current_iteration == 1
    assert state.max_iterations == 3
    assert prompt.startswith("Fix the login bug")
    assert RALPH_COMPLETION_SIGNAL in prompt
    assert "iteration 1 of 3" in prompt


def test_start_uses_config_defaults():
    config = replace(EngineConfig(), ralph_max_iterations=7, ralph_clear_context=False)
    state, _ = RalphLoopController(config).start("task")
    assert state.max_iterations == 7
    assert state.clear_context_between_iterations is False


def test_start_rejects_non_positive_cap():
    with pytest.raises(LoopConfigError):
        RalphLoopController().start("task", RalphOptions(max_iterations=0))


def test_runs_until_cap_without_token():
    controller = RalphLoopController()
    state, _ = controller.start("task", RalphOptions(max_iterations=3))

    steps = [controller.on_idle(state, "still working") for _ in range(3)]

    assert [s.outcome for s in steps] == [
        LoopOutcome.CONTINUE, LoopOutcome.CONTINUE, LoopOutcome.MAX_ITERATIONS,
    ]
    assert state.current_iteration == 3
    assert state.active is False


def test_completion_token_stops_loop():
    controller = RalphLoopController()
    state, _ = controller.start("task", RalphOptions(max_iterations=5))
    controller.on_idle(state, "step one")

    step = controller.on_idle(state, f"All done.\n{RALPH_COMPLETION_SIGNAL}")

    assert step.outcome == LoopOutcome.COMPLETED
    assert step.next_prompt is None
    assert state.current_iteration == 2
    assert state.active is False


def test_inactive_loop_does_not_continue():
    controller = RalphLoopController()
    state, _ = controller.start("task")
    state.active = False
    assert controller.on_idle(state, "x").should_continue is False


def test_clear_context_prompt_points_at_workspace():
    controller = RalphLoopController()
    state, _ = controller.start("Ship it", RalphOptions(clear_context_between_iterations=True))
    step = controller.on_idle(state, "SECRET PRIOR RESPONSE")

    assert "ralph-progress.md" in step.next_prompt
    assert "git status" in step.next_prompt
    assert "SECRET PRIOR RESPONSE" not in step.next_prompt
    assert "Ship it" in step.next_prompt


def test_carry_context_prompt_embeds_previous_response():
    controller = RalphLoopController()
    state, _ = controller.start("Ship it", RalphOptions(clear_context_between_iterations=False))
    step = controller.on_idle(state, "I refactored the parser")

    assert "I refactored the parser" in step.next_prompt
    assert "iteration 2 of 5" in step.next_prompt


def test_screenshot_instruction_only_when_requested():
    controller = RalphLoopController()
    _, plain = controller.start("task")
    _, with_shot = controller.start("task", RalphOptions(require_screenshot=True))
    assert "screenshot" not in plain
    assert "screenshot" in with_shot


@pytest.mark.parametrize("text", [
    "continue",
    "Keep going!",
    "ok",
    "proceed with the next step please, and make sure the tests pass too ok",
])
def test_continuation_phrases_do_not_cancel(text):
    assert RalphLoopController().should_cancel_for(text) is False


def test_short_messages_do_not_cancel():
    assert RalphLoopController().should_cancel_for("what about the readme?") is False


def test_long_unrelated_message_cancels():
    text = "Actually forget that, please update the deployment docs for staging"
    assert len(text) > 50
    assert RalphLoopController().should_cancel_for(text) is True


def test_message_with_completion_token_does_not_cancel():
    text = f"Please treat this as finished and stop working now {RALPH_COMPLETION_SIGNAL}"
    assert RalphLoopController().should_cancel_for(text) is False


def test_ghost_protection_can_be_disabled():
    config = replace(EngineConfig(), ghost_protection_enabled=False)
    text = "Actually forget that, please update the deployment docs for staging"
    assert RalphLoopController(config).should_cancel_for(text) is False
