"""Tool-call lifecycle tracking per session."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from tabloop.shared.models.message import ActiveTool, ToolStatus
from tabloop.shared.models.session import Session

logger = logging.getLogger(__name__)

REPORT_INTENT = "report_intent"
UPDATE_TODO = "update_todo"
# Bookkeeping tools the agent uses to talk to the UI, not real activity.
CONTROL_TOOLS = frozenset({REPORT_INTENT, UPDATE_TODO})
FILE_MUTATING_TOOLS = frozenset({"edit", "create"})


class ToolTracker:
    """Records tool starts/ends and derives intent and edited-file side effects."""

    def on_tool_start(
        self,
        session: Session,
        tool_call_id: str,
        tool_name: str,
        tool_input: dict[str, Any] | None = None,
    ) -> ActiveTool | None:
        tool_input = tool_input or {}
        if tool_name == REPORT_INTENT:
            intent = tool_input.get("intent")
            if intent:
                session.current_intent = str(intent)
                session.current_intent_at = datetime.now(timezone.utc)
            return None
        if tool_name == UPDATE_TODO:
            return None

        tool = ActiveTool(
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            status=ToolStatus.RUNNING,
            input=dict(tool_input),
        )
        session.active_tools.append(tool)

        path = tool_input.get("path")
        if tool_name in FILE_MUTATING_TOOLS and path:
            if session.add_edited_file(str(path)):
                logger.debug("Session %s edited %s", session.session_id, path)
        return tool

    def on_tool_end(
        self,
        session: Session,
        tool_call_id: str,
        tool_name: str,
        tool_input: dict[str, Any] | None = None,
        output: Any = None,
    ) -> ActiveTool | None:
        if tool_name in CONTROL_TOOLS:
            return None
        for tool in session.active_tools:
            if tool.tool_call_id == tool_call_id:
                if tool_input:
                    tool.input = dict(tool_input)
                tool.status = ToolStatus.DONE
                tool.output = output
                return tool
        logger.debug(
            "tool_end for unknown call %s (%s) on %s", tool_call_id, tool_name, session.session_id,
        )
        return None

    def take_snapshot(self, session: Session) -> list[ActiveTool]:
        """Return the turn's tools and clear them from the session."""
        tools = list(session.active_tools)
        session.active_tools = []
        return tools
