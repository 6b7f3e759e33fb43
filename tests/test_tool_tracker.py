from __future__ import annotations

from tabloop.engine.tool_tracker import ToolTracker
from tabloop.shared.models.message import ToolStatus
from tabloop.shared.models.session import Session


def test_report_intent_updates_intent_without_tool_entry():
    session = Session(session_id="s")
    tracker = ToolTracker()

    result = tracker.on_tool_start(session, "c1", "report_intent", {"intent": "Reading tests"})

    assert result is None
    assert session.active_tools == []
    assert session.current_intent == "Reading tests"
    assert session.current_intent_at is not None


def test_update_todo_is_ignored():
    session = Session(session_id="s")
    tracker = ToolTracker()
    tracker.on_tool_start(session, "c1", "update_todo", {"items": []})
    tracker.on_tool_end(session, "c1", "update_todo", output="ok")
    assert session.active_tools == []
    assert session.current_intent is None


def test_start_and_end_lifecycle():
    session = Session(session_id="s")
    tracker = ToolTracker()
    tracker.on_tool_start(session, "c1", "bash", {"command": "ls"})
    assert session.active_tools[0].status == ToolStatus.RUNNING

    tool = tracker.on_tool_end(session, "c1", "bash", None, "a.txt")

    assert tool is not None
    assert tool.status == ToolStatus.DONE
    assert tool.output == "a.txt"
    # The end event omitted input, so the start input is kept.
    assert tool.input == {"command": "ls"}


def test_end_for_unknown_call_is_ignored():
    session = Session(session_id="s")
    assert ToolTracker().on_tool_end(session, "nope", "bash", output="x") is None


def test_edited_files_have_set_semantics():
    session = Session(session_id="s")
    tracker = ToolTracker()
    tracker.on_tool_start(session, "c1", "edit", {"path": "src/app.py"})
    tracker.on_tool_start(session, "c2", "create", {"path": "src/new.py"})
    tracker.on_tool_start(session, "c3", "edit", {"path": "src/app.py"})
    tracker.on_tool_start(session, "c4", "view", {"path": "README.md"})

    assert session.edited_file_list == ["src/app.py", "src/new.py"]


def test_snapshot_clears_active_tools():
    session = Session(session_id="s")
    tracker = ToolTracker()
    tracker.on_tool_start(session, "c1", "grep", {"pattern": "x"})
    tools = tracker.take_snapshot(session)
    assert [t.tool_call_id for t in tools] == ["c1"]
    assert session.active_tools == []
