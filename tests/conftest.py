from __future__ import annotations

import itertools

import pytest

from tabloop.adapters.backend import AgentBackend, ChoiceDetection
from tabloop.adapters.permission_store import PermissionStore
from tabloop.engine.config import EngineConfig
from tabloop.engine.errors import BackendError
from tabloop.engine.models import SendMode, SequenceGenerator
from tabloop.engine.orchestrator import SessionOrchestrator


class FakeBackend(AgentBackend):
    """Records every call; failures are switched on per test."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, list | None, SendMode]] = []
        self.aborted: list[str] = []
        self.permissions: list[tuple[str, object]] = []
        self.fail_send = False
        self.fail_abort = False
        self.fail_permission = False
        self.title: str | None = "Generated title"
        self.choices = ChoiceDetection()

    async def send(self, session_id, prompt, attachments=None, mode=SendMode.DEFAULT):
        if self.fail_send:
            raise BackendError("send", session_id, "connection reset")
        self.sent.append((session_id, prompt, attachments, mode))

    async def abort(self, session_id):
        if self.fail_abort:
            raise BackendError("abort", session_id, "gone")
        self.aborted.append(session_id)

    async def respond_permission(self, request_id, decision):
        if self.fail_permission:
            raise BackendError("respond_permission", "", "timeout")
        self.permissions.append((request_id, decision))

    async def generate_title(self, conversation_excerpt):
        if self.title is None:
            raise RuntimeError("title model unavailable")
        return self.title

    async def detect_choices(self, text):
        return self.choices

    def prompts(self, session_id: str | None = None) -> list[str]:
        return [p for sid, p, _, _ in self.sent if session_id is None or sid == session_id]


def stepping_clock(step: float = 1.0):
    """Clock that advances by *step* on every read."""
    ticks = itertools.count(0.0, step)
    return lambda: next(ticks)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def sequence() -> SequenceGenerator:
    return SequenceGenerator(prefix="t")


@pytest.fixture
def store() -> PermissionStore:
    return PermissionStore()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def orchestrator(backend, config, sequence, store) -> SessionOrchestrator:
    return SessionOrchestrator(
        backend,
        config,
        sequence=sequence,
        permission_store=store,
        clock=stepping_clock(),
    )
