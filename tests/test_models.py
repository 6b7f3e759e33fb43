from __future__ import annotations

from tabloop.engine.models import LoopOutcome, LoopStep, SequenceGenerator
from tabloop.shared.models.message import Message, MessageRole
from tabloop.shared.models.session import LisaPhase, LisaState, RalphState, Session


def test_sequence_generator_is_resettable():
    seq = SequenceGenerator(prefix="m")
    first = seq.next_id()
    second = seq.next_id()
    assert first != second
    assert first.startswith("m-") and first.endswith("-1")
    assert seq.next_tab_name() == "Session 1"

    seq.reset()
    assert seq.next_id() == first
    assert seq.next_tab_name() == "Session 1"


def test_sequence_generators_are_independent():
    a, b = SequenceGenerator(), SequenceGenerator()
    a.next_tab_name()
    assert b.next_tab_name() == "Session 1"


def test_skip_tabs():
    seq = SequenceGenerator()
    seq.skip_tabs(3)
    assert seq.next_tab_name() == "Session 4"


def test_loop_slot_holds_one_policy():
    session = Session(session_id="s")
    assert session.has_active_loop is False

    session.loop = RalphState(original_prompt="p")
    assert session.ralph_loop is session.loop
    assert session.lisa_loop is None

    session.loop = LisaState(original_prompt="p")
    assert session.ralph_loop is None
    assert session.lisa_loop.current_phase == LisaPhase.PLAN
    assert session.has_active_loop is True


def test_lisa_state_starts_with_plan_visit():
    state = LisaState(original_prompt="p")
    assert [v.phase for v in state.phase_history] == [LisaPhase.PLAN]
    assert state.phase_iterations[LisaPhase.PLAN] == 1
    assert state.phase_iterations[LisaPhase.FINAL_REVIEW] == 0


def test_review_phases():
    assert {p for p in LisaPhase if p.is_review} == {
        LisaPhase.PLAN_REVIEW, LisaPhase.CODE_REVIEW, LisaPhase.FINAL_REVIEW,
    }


def test_session_message_helpers():
    session = Session(session_id="s")
    session.messages = [
        Message(id="1", role=MessageRole.USER, content="q"),
        Message(id="2", role=MessageRole.ASSISTANT, content="a"),
        Message(id="3", role=MessageRole.SYSTEM, content="denied"),
    ]
    assert session.first_user_message().id == "1"
    assert session.last_assistant_message().id == "2"
    assert session.last_message.id == "3"


def test_loop_step_should_continue():
    assert LoopStep(LoopOutcome.CONTINUE, "next").should_continue
    assert not LoopStep(LoopOutcome.CONTINUE).should_continue
    assert not LoopStep(LoopOutcome.COMPLETED, "x").should_continue
