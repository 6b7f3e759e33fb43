"""Abstract interface to the agent runtime.

The runtime itself is a black box: it accepts prompts per session and
reports progress back through event subscriptions (see events.py and
EventBus.make_callback()). The orchestrator only ever talks to it
through this interface. Implementations raise BackendError when a
call into the runtime fails.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field

from tabloop.engine.models import SendMode
from tabloop.shared.models.message import Attachment
from tabloop.shared.models.permission import Decision

logger = logging.getLogger(__name__)


@dataclass
class ChoiceDetection:
    """Result of asking the backend whether a reply offers options."""
    is_choice: bool = False
    options: list[str] = field(default_factory=list)


class AgentBackend(abc.ABC):
    """Outward operations the engine consumes."""

    @abc.abstractmethod
    async def send(
        self,
        session_id: str,
        prompt: str,
        attachments: list[Attachment] | None = None,
        mode: SendMode = SendMode.DEFAULT,
    ) -> None:
        """Deliver a prompt. Progress arrives later as events."""

    @abc.abstractmethod
    async def abort(self, session_id: str) -> None:
        """Best-effort stop of the current generation."""

    @abc.abstractmethod
    async def respond_permission(self, request_id: str, decision: Decision) -> None:
        """Answer a pending permission request."""

    async def generate_title(self, conversation_excerpt: str) -> str:
        """Produce a short tab title.

        Returning an empty string makes the caller use its fallback title.
        """
        return ""

    async def detect_choices(self, text: str) -> ChoiceDetection:
        """Detect whether *text* asks the user to pick an option."""
        return ChoiceDetection()
