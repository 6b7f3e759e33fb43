"""Folds streamed text into a session's message list.

At most one assistant message is ever streaming: the placeholder added
when a prompt is sent. Deltas only extend that placeholder.
"""
from __future__ import annotations

import logging

from tabloop.shared.models.message import ActiveTool, Message, MessageRole
from tabloop.shared.models.session import Session

logger = logging.getLogger(__name__)


def _streaming_tail(session: Session) -> Message | None:
    last = session.last_message
    if last is not None and last.role == MessageRole.ASSISTANT and last.is_streaming:
        return last
    return None


class StreamAssembler:
    """Applies delta / message / idle events to the message list."""

    def __init__(self, next_id) -> None:
        self._next_id = next_id

    def placeholder(self) -> Message:
        return Message(id=self._next_id(), role=MessageRole.ASSISTANT, is_streaming=True)

    def begin_turn(self, session: Session, user_message: Message) -> Message:
        """Append the user's message and a fresh streaming placeholder."""
        placeholder = self.placeholder()
        session.messages.append(user_message)
        session.messages.append(placeholder)
        return placeholder

    def inject(self, session: Session, user_message: Message) -> None:
        """Add a message sent while the agent is busy.

        Goes in front of the live placeholder so deltas keep landing in it.
        """
        user_message.is_pending_injection = True
        tail = _streaming_tail(session)
        if tail is None:
            session.messages.append(user_message)
        else:
            session.messages.insert(len(session.messages) - 1, user_message)

    def apply_delta(self, session: Session, text: str) -> bool:
        tail = _streaming_tail(session)
        if tail is None:
            logger.debug("Dropping delta for %s: no streaming placeholder", session.session_id)
            return False
        tail.content += text
        return True

    def apply_message(self, session: Session, content: str) -> Message:
        tail = _streaming_tail(session)
        if tail is not None:
            tail.content = content
            tail.is_streaming = False
            msg = tail
        else:
            msg = Message(id=self._next_id(), role=MessageRole.ASSISTANT, content=content)
            session.messages.append(msg)
        # A response means the agent has seen anything injected before it.
        for prior in session.messages:
            if prior.role == MessageRole.USER and prior.is_pending_injection:
                prior.is_pending_injection = False
        return msg

    def finalize(self, session: Session, tools: list[ActiveTool] | None = None) -> None:
        """Close out a turn: drop empty placeholders, stop streaming, attach tools."""
        session.messages = [
            m for m in session.messages
            if m.role == MessageRole.USER or m.content.strip()
        ]
        for m in session.messages:
            if m.is_streaming:
                m.is_streaming = False
        if tools:
            last = session.last_assistant_message()
            if last is not None:
                last.tools = list(tools)

    def discard_placeholder(self, session: Session) -> None:
        """Remove an empty streaming placeholder after a failed send."""
        tail = _streaming_tail(session)
        if tail is not None and not tail.content.strip():
            session.messages.pop()
        elif tail is not None:
            tail.is_streaming = False
