"""Tab titles generated from the first exchange of a session.

Asks the backend for a short title. Non-blocking for the caller's
purposes: on timeout or failure the title falls back to the truncated
first user message.
"""
from __future__ import annotations

import asyncio
import logging

from tabloop.shared.models.message import Message

logger = logging.getLogger(__name__)

EXCERPT_MESSAGES = 4
EXCERPT_CHARS_PER_MESSAGE = 200
MAX_TITLE_LENGTH = 60


def build_conversation_excerpt(messages: list[Message]) -> str:
    """First few non-empty messages, one ``role: text`` line each."""
    lines = [
        f"{m.role.value}: {m.content[:EXCERPT_CHARS_PER_MESSAGE]}"
        for m in messages
        if m.content.strip()
    ]
    return "\n".join(lines[:EXCERPT_MESSAGES])


def fallback_title(first_user_message: str | None, length: int = 30) -> str | None:
    if not first_user_message:
        return None
    text = " ".join(first_user_message.split())
    if len(text) <= length:
        return text
    return text[:length] + "..."


def clean_title(raw: str) -> str:
    name = raw.strip().splitlines()[0] if raw.strip() else ""
    name = name.strip().strip("\"'`").strip()
    if len(name) > MAX_TITLE_LENGTH:
        name = name[:MAX_TITLE_LENGTH - 3].rstrip() + "..."
    return name


async def generate_session_title(
    backend,
    messages: list[Message],
    first_user_message: str | None,
    *,
    timeout: float = 15.0,
    fallback_length: int = 30,
) -> str | None:
    """Return a generated title, or the fallback if generation fails."""
    fallback = fallback_title(first_user_message, fallback_length)
    excerpt = build_conversation_excerpt(messages)
    if not excerpt:
        return fallback
    try:
        raw = await asyncio.wait_for(backend.generate_title(excerpt), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("Title generation timed out")
        return fallback
    except Exception:
        logger.debug("Title generation failed", exc_info=True)
        return fallback
    title = clean_title(raw or "")
    return title or fallback
