from __future__ import annotations

import asyncio
import json
from dataclasses import replace

import pytest

from tabloop.adapters.backend import ChoiceDetection
from tabloop.adapters.event_bus import EventBus
from tabloop.adapters.events import (
    DeltaEvent,
    ErrorEvent,
    IdleEvent,
    MessageEvent,
    PermissionEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from tabloop.engine.config import EngineConfig
from tabloop.engine.errors import NoPendingConfirmationError, SessionNotFoundError
from tabloop.engine.models import SendMode, SequenceGenerator
from tabloop.engine.orchestrator import SessionOrchestrator
from tabloop.shared.models.message import Attachment, MessageRole
from tabloop.shared.models.permission import CommandPermission, Decision
from tabloop.shared.models.session import DraftInput

from conftest import stepping_clock


def _command(request_id: str = "p1") -> CommandPermission:
    return CommandPermission(
        request_id=request_id, executable="make", full_command_text="make build",
    )


async def _reply(orch: SessionOrchestrator, session_id: str, text: str) -> None:
    await orch.dispatch(DeltaEvent(session_id=session_id, content=text))
    await orch.dispatch(IdleEvent(session_id=session_id))


# ── sessions ────────────────────────────────────────────────────────


def test_create_session_uses_sequence_names(orchestrator):
    first = orchestrator.create_session()
    second = orchestrator.create_session(model="gpt-5", cwd="/work")

    assert first.name == "Session 1"
    assert second.name == "Session 2"
    assert second.model == "gpt-5"
    assert second.cwd == "/work"
    assert orchestrator.active_session_id == first.session_id


def test_unknown_session_operations_raise(orchestrator):
    with pytest.raises(SessionNotFoundError):
        orchestrator.get_session("missing")
    with pytest.raises(SessionNotFoundError):
        orchestrator.stop_loop("missing")


@pytest.mark.asyncio
async def test_events_for_unknown_session_are_ignored(orchestrator):
    assert await orchestrator.dispatch(DeltaEvent(session_id="missing", content="x")) is False


def test_snapshot_is_a_copy(orchestrator):
    session = orchestrator.create_session()
    snap = orchestrator.snapshot(session.session_id)
    snap.name = "changed"
    snap.messages.append(None)
    assert session.name == "Session 1"
    assert session.messages == []


@pytest.mark.asyncio
async def test_close_session_archives_and_ignores_late_events(orchestrator):
    a = orchestrator.create_session()
    b = orchestrator.create_session()

    record = orchestrator.close_session(a.session_id)

    assert record.session_id == a.session_id
    assert orchestrator.previous_sessions[0] is record
    assert orchestrator.active_session_id == b.session_id
    assert [s.session_id for s in orchestrator.sessions()] == [b.session_id]
    assert await orchestrator.dispatch(IdleEvent(session_id=a.session_id)) is False


def test_switch_active_session_keeps_drafts(orchestrator):
    a = orchestrator.create_session()
    b = orchestrator.create_session()
    b.has_unread_completion = True

    restored = orchestrator.switch_active_session(b.session_id, DraftInput(text="half typed"))

    assert restored is None
    assert a.draft.text == "half typed"
    assert b.has_unread_completion is False
    assert orchestrator.active_session_id == b.session_id

    assert orchestrator.switch_active_session(a.session_id).text == "half typed"
    assert b.draft is None


def test_mark_for_review(orchestrator):
    session = orchestrator.create_session()
    orchestrator.mark_for_review(session.session_id)
    assert session.marked_for_review is True
    orchestrator.mark_for_review(session.session_id, marked=False)
    assert session.marked_for_review is False


# ── sending ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_normal_send_adds_placeholder(orchestrator, backend):
    session = orchestrator.create_session()
    await orchestrator.send_user_message(session.session_id, "hello")

    assert [m.role for m in session.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert session.messages[-1].is_streaming is True
    assert session.is_processing is True
    assert backend.sent == [(session.session_id, "hello", None, SendMode.DEFAULT)]


@pytest.mark.asyncio
async def test_empty_message_is_rejected(orchestrator):
    session = orchestrator.create_session()
    with pytest.raises(ValueError):
        await orchestrator.send_user_message(session.session_id, "   ")


@pytest.mark.asyncio
async def test_injection_while_processing(orchestrator, backend):
    session = orchestrator.create_session()
    await orchestrator.send_user_message(session.session_id, "first")

    injected = await orchestrator.send_user_message(session.session_id, "also handle errors")

    assert sum(1 for m in session.messages if m.is_streaming) == 1
    assert injected.is_pending_injection is True
    assert backend.sent[-1][3] == SendMode.ENQUEUE

    await orchestrator.dispatch(MessageEvent(session_id=session.session_id, content="Done"))
    assert injected.is_pending_injection is False


@pytest.mark.asyncio
async def test_first_send_failure_clears_processing(orchestrator, backend):
    backend.fail_send = True
    session = orchestrator.create_session()

    await orchestrator.send_user_message(session.session_id, "hello")

    assert session.is_processing is False
    assert not any(m.is_streaming for m in session.messages)
    assert session.messages[0].content == "hello"
    assert session.messages[-1].content.startswith("⚠️ Failed to send message")


@pytest.mark.asyncio
async def test_attachments_are_passed_through(orchestrator, backend):
    session = orchestrator.create_session()
    image = Attachment(path="/tmp/shot.png", name="shot.png", mime_type="image/png")

    message = await orchestrator.send_user_message(session.session_id, "see this", [image])

    assert message.attachments == [image]
    assert backend.sent[0][2] == [image]


# ── streaming, tools, idle ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_streaming_turn_end_to_end(orchestrator):
    session = orchestrator.create_session()
    sid = session.session_id
    await orchestrator.send_user_message(sid, "list files")

    await orchestrator.dispatch(ToolStartEvent(session_id=sid, tool_call_id="c1", tool_name="bash", input={"command": "ls"}))
    await orchestrator.dispatch(ToolEndEvent(session_id=sid, tool_call_id="c1", tool_name="bash", output="a.py"))
    for chunk in ["Found ", "a.py"]:
        await orchestrator.dispatch(DeltaEvent(session_id=sid, content=chunk))
    await orchestrator.dispatch(IdleEvent(session_id=sid))

    last = session.messages[-1]
    assert last.content == "Found a.py"
    assert last.is_streaming is False
    assert [t.tool_name for t in last.tools] == ["bash"]
    assert session.active_tools == []
    assert session.is_processing is False


@pytest.mark.asyncio
async def test_idle_marks_background_session_unread(orchestrator):
    active = orchestrator.create_session()
    background = orchestrator.create_session()
    await orchestrator.send_user_message(background.session_id, "work")
    await orchestrator.send_user_message(active.session_id, "work")

    await _reply(orchestrator, background.session_id, "done")
    await _reply(orchestrator, active.session_id, "done")

    assert background.has_unread_completion is True
    assert active.has_unread_completion is False


@pytest.mark.asyncio
async def test_duplicate_idle_is_absorbed(backend, config, sequence, store):
    orch = SessionOrchestrator(
        backend, config, sequence=sequence, permission_store=store, clock=lambda: 10.0,
    )
    session = orch.create_session()
    await orch.send_user_message(session.session_id, "hi")

    assert await orch.dispatch(IdleEvent(session_id=session.session_id)) is True
    assert await orch.dispatch(IdleEvent(session_id=session.session_id)) is False


@pytest.mark.asyncio
async def test_title_generated_on_idle(orchestrator):
    session = orchestrator.create_session()
    await orchestrator.send_user_message(session.session_id, "Fix the login page")
    await _reply(orchestrator, session.session_id, "Sure")
    await orchestrator.drain_enrichments()

    assert session.name == "Generated title"
    assert session.needs_title is False


@pytest.mark.asyncio
async def test_title_falls_back_to_first_user_message(orchestrator, backend):
    backend.title = None
    session = orchestrator.create_session()
    await orchestrator.send_user_message(
        session.session_id, "Please summarise the quarterly report for me",
    )
    await orchestrator.dispatch(IdleEvent(session_id=session.session_id))
    await orchestrator.drain_enrichments()

    assert session.name == "Please summarise the quarterly..."


@pytest.mark.asyncio
async def test_choices_detected_without_loop(orchestrator, backend):
    backend.choices = ChoiceDetection(is_choice=True, options=["Postgres", "SQLite"])
    session = orchestrator.create_session()
    await orchestrator.send_user_message(session.session_id, "Pick a database")
    await _reply(orchestrator, session.session_id, "Postgres or SQLite?")
    await orchestrator.drain_enrichments()

    assert session.detected_choices == ["Postgres", "SQLite"]


@pytest.mark.asyncio
async def test_slow_title_does_not_hold_up_other_sessions(orchestrator, backend):
    gate = asyncio.Event()

    async def slow_title(excerpt):
        await gate.wait()
        return "Slow title"

    backend.generate_title = slow_title
    first = orchestrator.create_session()
    second = orchestrator.create_session()
    await orchestrator.send_user_message(first.session_id, "Fix the login page")
    await orchestrator.send_user_message(second.session_id, "Write docs")

    await orchestrator.dispatch(IdleEvent(session_id=first.session_id))
    await orchestrator.dispatch(DeltaEvent(session_id=second.session_id, content="Drafting"))

    assert first.is_processing is False
    assert first.name == "Session 1"
    assert second.messages[-1].content == "Drafting"

    gate.set()
    await orchestrator.drain_enrichments()
    assert first.name == "Slow title"


@pytest.mark.asyncio
async def test_closing_session_cancels_enrichment(orchestrator, backend):
    never = asyncio.Event()

    async def stuck_title(excerpt):
        await never.wait()
        return "Never"

    backend.generate_title = stuck_title
    session = orchestrator.create_session()
    await orchestrator.send_user_message(session.session_id, "hello")
    await orchestrator.dispatch(IdleEvent(session_id=session.session_id))

    orchestrator.close_session(session.session_id)

    await asyncio.wait_for(orchestrator.drain_enrichments(), timeout=1)
    assert session.name == "Session 1"


@pytest.mark.asyncio
async def test_late_choices_dropped_after_new_turn(orchestrator, backend):
    gate = asyncio.Event()

    async def slow_choices(text):
        await gate.wait()
        return ChoiceDetection(is_choice=True, options=["Yes", "No"])

    backend.detect_choices = slow_choices
    session = orchestrator.create_session()
    await orchestrator.send_user_message(session.session_id, "Deploy?")
    await _reply(orchestrator, session.session_id, "Deploy now, yes or no?")
    await orchestrator.send_user_message(session.session_id, "Actually wait")

    gate.set()
    await orchestrator.drain_enrichments()

    assert session.detected_choices == []


# ── errors ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_transient_error_is_swallowed(orchestrator):
    session = orchestrator.create_session()
    await orchestrator.send_user_message(session.session_id, "hello")

    await orchestrator.dispatch(ErrorEvent(
        session_id=session.session_id, message="400 invalid_request_body: bad part",
    ))

    assert session.is_processing is False
    assert [m.content for m in session.messages] == ["hello"]


@pytest.mark.asyncio
async def test_surfaced_error_appends_warning(orchestrator):
    session = orchestrator.create_session()
    await orchestrator.send_user_message(session.session_id, "hello")

    await orchestrator.dispatch(ErrorEvent(session_id=session.session_id, message="Rate limited"))

    assert session.is_processing is False
    assert session.messages[-1].role == MessageRole.ASSISTANT
    assert session.messages[-1].content == "⚠️ Rate limited"


# ── confirmations ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_permission_is_queued_and_resolved(orchestrator, backend):
    session = orchestrator.create_session()
    await orchestrator.dispatch(PermissionEvent(session_id=session.session_id, request=_command()))
    assert len(session.pending_confirmations) == 1

    resolution = await orchestrator.respond_to_confirmation("always")

    assert resolution.effective == Decision.ALWAYS
    assert backend.permissions == [("p1", Decision.ALWAYS)]
    assert session.always_allowed == {"make"}
    assert session.pending_confirmations == []


@pytest.mark.asyncio
async def test_preapproved_permission_skips_queue(orchestrator, backend):
    session = orchestrator.create_session()
    session.always_allowed.add("make")

    await orchestrator.dispatch(PermissionEvent(session_id=session.session_id, request=_command()))

    assert session.pending_confirmations == []
    assert backend.permissions == [("p1", Decision.APPROVED)]


@pytest.mark.asyncio
async def test_new_message_auto_denies_pending_confirmation(orchestrator, backend):
    session = orchestrator.create_session()
    await orchestrator.dispatch(PermissionEvent(session_id=session.session_id, request=_command()))

    await orchestrator.send_user_message(session.session_id, "never mind, do this instead")

    assert backend.permissions == [("p1", Decision.DENIED)]
    assert session.pending_confirmations == []
    assert session.messages[0].role == MessageRole.SYSTEM
    assert session.messages[0].content == "Denied command: `make build`"
    assert session.messages[1].content == "never mind, do this instead"


@pytest.mark.asyncio
async def test_respond_without_pending_raises(orchestrator):
    orchestrator.create_session()
    with pytest.raises(NoPendingConfirmationError):
        await orchestrator.respond_to_confirmation(Decision.APPROVED)


# ── abort ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_abort_resets_state_even_if_backend_fails(orchestrator, backend):
    backend.fail_abort = True
    session = orchestrator.create_session()
    await orchestrator.send_user_message(session.session_id, "long task")
    await orchestrator.dispatch(DeltaEvent(session_id=session.session_id, content="partial"))

    await orchestrator.abort(session.session_id)

    assert session.is_processing is False
    assert not any(m.is_streaming for m in session.messages)
    assert session.messages[-1].content == "partial"

    # Trailing events from the backend are tolerated.
    await orchestrator.dispatch(DeltaEvent(session_id=session.session_id, content="late"))
    await orchestrator.dispatch(IdleEvent(session_id=session.session_id))
    assert session.messages[-1].content == "partial"
    assert session.is_processing is False


# ── event bus ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_run_consumes_bus_in_order(orchestrator):
    session = orchestrator.create_session()
    await orchestrator.send_user_message(session.session_id, "hi")
    bus = EventBus()
    callback = bus.make_callback()
    await callback({"event": "delta", "sessionId": session.session_id, "content": "Hel"})
    await callback({"event": "delta", "sessionId": session.session_id, "content": "lo"})
    await callback({"event": "idle", "sessionId": session.session_id})

    task = asyncio.create_task(orchestrator.run(bus))
    for _ in range(100):
        if bus.pending() == 0 and not session.is_processing:
            break
        await asyncio.sleep(0.01)
    bus.close()
    await asyncio.wait_for(task, timeout=2.0)

    assert session.messages[-1].content == "Hello"
    assert session.is_processing is False


# ── persistence ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_session_list_persisted_and_restored(tmp_path, backend):
    config = replace(EngineConfig(), data_dir=tmp_path)
    orch = SessionOrchestrator(backend, config, sequence=SequenceGenerator(), clock=stepping_clock())
    session = orch.create_session(cwd="/repo")
    await orch.send_user_message(session.session_id, "edit it")
    await orch.dispatch(ToolStartEvent(
        session_id=session.session_id, tool_call_id="c1", tool_name="edit", input={"path": "src/a.py"},
    ))
    orch.mark_for_review(session.session_id)

    saved = json.loads((tmp_path / "open_sessions.json").read_text(encoding="utf-8"))
    assert saved["sessions"][0]["edited_files"] == ["src/a.py"]
    assert saved["sessions"][0]["marked_for_review"] is True

    fresh = SessionOrchestrator(backend, config, sequence=SequenceGenerator(), clock=stepping_clock())
    restored = fresh.restore_sessions()

    assert [s.session_id for s in restored] == [session.session_id]
    assert restored[0].edited_file_list == ["src/a.py"]
    assert restored[0].cwd == "/repo"
    assert fresh.active_session_id == session.session_id
    assert fresh.create_session().name == "Session 2"


@pytest.mark.asyncio
async def test_attachments_keyed_by_message_and_removed_on_close(tmp_path, backend):
    config = replace(EngineConfig(), data_dir=tmp_path)
    orch = SessionOrchestrator(backend, config, sequence=SequenceGenerator())
    session = orch.create_session()
    image = Attachment(path="/tmp/a.png", name="a.png", mime_type="image/png", size=10)

    await orch.send_user_message(session.session_id, "first")
    await orch.dispatch(IdleEvent(session_id=session.session_id))
    message = await orch.send_user_message(session.session_id, "look", [image])

    path = tmp_path / "attachments" / f"{session.session_id}.json"
    stored = json.loads(path.read_text(encoding="utf-8"))
    assert list(stored) == [message.id]
    assert stored[message.id][0]["name"] == "a.png"

    orch.close_session(session.session_id)
    assert not path.exists()
