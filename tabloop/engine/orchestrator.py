"""Top-level reducer that owns all open sessions.

Every backend event and user action is processed to completion before
the next one is handled. On ``idle`` the session's active loop
controller (if any) decides whether to continue; a continuation's state
update and its ``send`` happen in the same reducer step, so no fixed
scheduling delay is needed to let state settle first.

Title generation and choice detection run as background tasks; their
results land on the session when they arrive.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from tabloop.adapters.backend import AgentBackend
from tabloop.adapters.event_bus import EventBus
from tabloop.adapters.events import (
    BackendEvent,
    DeltaEvent,
    ErrorEvent,
    IdleEvent,
    MessageEvent,
    PermissionEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from tabloop.adapters.permission_store import PermissionStore
from tabloop.engine.config import EngineConfig
from tabloop.engine.confirmation_queue import ConfirmationQueue, Resolution
from tabloop.engine.errors import LoopConfigError, SessionNotFoundError
from tabloop.engine.event_router import EventRouter
from tabloop.engine.lisa import LisaLoopController
from tabloop.engine.models import LoopStep, SendMode, SequenceGenerator
from tabloop.engine.ralph import RalphLoopController, RalphOptions
from tabloop.engine.stream_assembler import StreamAssembler
from tabloop.engine.tool_tracker import ToolTracker
from tabloop.shared.models.message import Attachment, Message, MessageRole
from tabloop.shared.models.permission import Decision
from tabloop.shared.models.session import (
    DraftInput,
    LisaState,
    PreviousSession,
    RalphState,
    Session,
)
from tabloop.shared.services.persistence import SessionListStore
from tabloop.shared.services.session_naming import generate_session_title

logger = logging.getLogger(__name__)

WARNING_PREFIX = "⚠️"


@dataclass
class LisaOptions:
    """Loop settings chosen by the user when enabling Lisa for a send."""
    evidence_folder: str | None = None


class SessionOrchestrator:
    """Owns session state and wires backend events to the reducers.

    Outward operations: ``send_user_message``, ``respond_to_confirmation``,
    ``abort`` and ``switch_active_session``. Backend events enter through
    ``dispatch`` (or ``run`` with an EventBus).
    """

    def __init__(
        self,
        backend: AgentBackend,
        config: EngineConfig | None = None,
        *,
        sequence: SequenceGenerator | None = None,
        permission_store: PermissionStore | None = None,
        session_store: SessionListStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._config = config or EngineConfig()
        self._sequence = sequence or SequenceGenerator()
        if permission_store is None:
            permission_store = PermissionStore(self._config.data_dir)
        if session_store is None and self._config.data_dir is not None:
            session_store = SessionListStore(self._config.data_dir)
        self._session_store = session_store

        self._sessions: dict[str, Session] = {}
        self._active_session_id: str | None = None
        self._previous_sessions: list[PreviousSession] = []
        # session id -> kind ("title" | "choices") -> in-flight request
        self._enrichments: dict[str, dict[str, asyncio.Task]] = {}

        self._assembler = StreamAssembler(self._sequence.next_id)
        self._tools = ToolTracker()
        self._confirmations = ConfirmationQueue(
            backend, permission_store, self._sequence.next_id,
        )
        self._ralph = RalphLoopController(self._config)
        self._lisa = LisaLoopController(self._config)

        self._router = EventRouter(
            self._sessions.get,
            idle_window_seconds=self._config.idle_dedup_window_seconds,
            clock=clock,
        )
        self._router.register("delta", self._on_delta)
        self._router.register("message", self._on_message)
        self._router.register("idle", self._on_idle)
        self._router.register("tool_start", self._on_tool_start)
        self._router.register("tool_end", self._on_tool_end)
        self._router.register("permission", self._on_permission)
        self._router.register("error", self._on_error)

    # ── session lifecycle ───────────────────────────────────────────

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    @property
    def previous_sessions(self) -> list[PreviousSession]:
        return list(self._previous_sessions)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def snapshot(self, session_id: str) -> Session:
        """Read-only copy of a session for display."""
        return copy.deepcopy(self.get_session(session_id))

    def create_session(
        self,
        *,
        session_id: str | None = None,
        model: str | None = None,
        cwd: str | None = None,
        name: str | None = None,
    ) -> Session:
        session = Session(
            session_id=session_id or self._sequence.next_id(),
            name=name or self._sequence.next_tab_name(),
            model=model or self._config.default_model,
            cwd=cwd or self._config.default_cwd,
            needs_title=name is None,
        )
        self._sessions[session.session_id] = session
        if self._active_session_id is None:
            self._active_session_id = session.session_id
        logger.info("Session created: %s (%s)", session.session_id, session.name)
        self._persist()
        return session

    def restore_sessions(self) -> list[Session]:
        """Reopen the tabs saved by the session store."""
        if self._session_store is None:
            return []
        restored: list[Session] = []
        for record in self._session_store.load():
            if record.session_id in self._sessions:
                continue
            session = Session(
                session_id=record.session_id,
                name=record.name,
                model=record.model,
                cwd=record.cwd,
                always_allowed=set(record.always_allowed),
                marked_for_review=record.marked_for_review,
                needs_title=not record.name,
            )
            for path in record.edited_files:
                session.add_edited_file(path)
            self._sessions[session.session_id] = session
            restored.append(session)
        # Keep default names of new tabs from colliding with restored ones.
        self._sequence.skip_tabs(len(restored))
        if restored and self._active_session_id is None:
            self._active_session_id = restored[0].session_id
        logger.info("Restored %d sessions", len(restored))
        return restored

    def close_session(self, session_id: str) -> PreviousSession:
        session = self.get_session(session_id)
        del self._sessions[session_id]
        self._router.forget(session_id)
        self._cancel_enrichments(session_id)
        if self._session_store is not None:
            try:
                self._session_store.delete_attachments(session_id)
            except OSError:
                logger.warning("Failed to delete attachments for %s", session_id, exc_info=True)
        record = PreviousSession(
            session_id=session.session_id, name=session.name, cwd=session.cwd,
        )
        self._previous_sessions.insert(0, record)
        if self._active_session_id == session_id:
            self._active_session_id = next(iter(self._sessions), None)
        logger.info("Session closed: %s", session_id)
        self._persist()
        return record

    def switch_active_session(
        self,
        session_id: str,
        draft: DraftInput | None = None,
    ) -> DraftInput | None:
        """Make *session_id* the visible tab.

        *draft* is the outgoing tab's composer state; the incoming tab's
        saved draft is returned so the composer can be refilled.
        """
        incoming = self.get_session(session_id)
        outgoing = self._sessions.get(self._active_session_id or "")
        if outgoing is not None and outgoing is not incoming:
            has_content = draft is not None and (draft.text or draft.attachments)
            outgoing.draft = draft if has_content else None
        self._active_session_id = session_id
        incoming.has_unread_completion = False
        return incoming.draft

    def mark_for_review(self, session_id: str, marked: bool = True) -> None:
        self.get_session(session_id).marked_for_review = marked
        self._persist()

    # ── outward operations ──────────────────────────────────────────

    async def send_user_message(
        self,
        session_id: str,
        text: str,
        attachments: list[Attachment] | None = None,
        *,
        ralph: RalphOptions | None = None,
        lisa: LisaOptions | None = None,
    ) -> Message:
        """Send user input, optionally starting a Ralph or Lisa loop."""
        session = self.get_session(session_id)
        text = text.strip()
        attachments = list(attachments or [])
        if not text and not attachments:
            raise ValueError("Cannot send an empty message")
        if ralph is not None and lisa is not None:
            raise LoopConfigError("Ralph and Lisa loops cannot run on the same session")

        # Never carry an unanswered confirmation into a new turn.
        if session.pending_confirmations:
            logger.info(
                "Auto-denying pending confirmation %s on %s before new message",
                session.pending_confirmations[0].request_id, session_id,
            )
            await self._confirmations.resolve(session, Decision.DENIED)

        ralph_state = session.ralph_loop
        if (
            ralph_state is not None
            and ralph_state.active
            and ralph is None
            and self._ralph.should_cancel_for(text)
        ):
            ralph_state.active = False
            logger.info(
                "Ralph loop on %s cancelled by unrelated user message (iteration %d)",
                session_id, ralph_state.current_iteration,
            )

        payload = text
        if ralph is not None:
            state, payload = self._ralph.start(text, ralph)
            session.loop = state
        elif lisa is not None:
            state, payload = self._lisa.start(text, lisa.evidence_folder)
            session.loop = state

        message = Message(
            id=self._sequence.next_id(),
            role=MessageRole.USER,
            content=text,
            attachments=attachments,
        )
        if session.is_processing:
            mode = SendMode.ENQUEUE
            self._assembler.inject(session, message)
        else:
            mode = SendMode.DEFAULT
            self._assembler.begin_turn(session, message)
            session.is_processing = True
            session.active_tools = []

        if attachments and self._session_store is not None:
            try:
                self._session_store.save_attachments(session_id, message.id, attachments)
            except OSError:
                logger.warning("Failed to save attachments for %s", session_id, exc_info=True)

        try:
            await self._backend.send(session_id, payload, attachments or None, mode)
        except Exception as exc:
            logger.error("send failed for %s (%s mode)", session_id, mode.value, exc_info=True)
            if mode == SendMode.DEFAULT:
                self._assembler.discard_placeholder(session)
                session.is_processing = False
            else:
                message.is_pending_injection = False
            self._append_warning(session, f"Failed to send message: {exc}")
        return message

    async def respond_to_confirmation(
        self,
        decision: Decision | str,
        session_id: str | None = None,
    ) -> Resolution:
        """Resolve the head confirmation of *session_id* (default: active tab)."""
        session = self.get_session(session_id or self._active_session_id or "")
        resolution = await self._confirmations.resolve(session, Decision(decision))
        if resolution.effective == Decision.ALWAYS:
            self._persist()
        return resolution

    async def abort(self, session_id: str) -> None:
        """Stop generation and cancel any loop without completing it."""
        session = self.get_session(session_id)
        try:
            await self._backend.abort(session_id)
        except Exception:
            # Best effort; local state is reset regardless.
            logger.warning("Backend abort failed for %s", session_id, exc_info=True)
        session.is_processing = False
        self._deactivate_loop(session, "aborted")
        tools = self._tools.take_snapshot(session)
        self._assembler.finalize(session, tools)

    def stop_loop(self, session_id: str) -> bool:
        """Explicit user stop. Returns True if a loop was running."""
        return self._deactivate_loop(self.get_session(session_id), "stopped by user")

    # ── event intake ────────────────────────────────────────────────

    async def dispatch(self, event: BackendEvent) -> bool:
        return await self._router.dispatch(event)

    async def run(self, bus: EventBus) -> None:
        """Consume events until the bus is closed."""
        async for event in bus.consume():
            try:
                await self.dispatch(event)
            except Exception:
                logger.error(
                    "Unhandled error processing %s for %s",
                    event.event_type, event.session_id, exc_info=True,
                )
        await self.drain_enrichments()

    # ── handlers ────────────────────────────────────────────────────

    def _on_delta(self, session: Session, event: DeltaEvent) -> None:
        self._assembler.apply_delta(session, event.content)

    def _on_message(self, session: Session, event: MessageEvent) -> None:
        self._assembler.apply_message(session, event.content)

    def _on_tool_start(self, session: Session, event: ToolStartEvent) -> None:
        edited_before = len(session.edited_files)
        self._tools.on_tool_start(
            session,
            event.tool_call_id or self._sequence.next_id(),
            event.tool_name or "unknown",
            event.input,
        )
        if len(session.edited_files) != edited_before:
            self._persist()

    def _on_tool_end(self, session: Session, event: ToolEndEvent) -> None:
        self._tools.on_tool_end(
            session,
            event.tool_call_id,
            event.tool_name or "unknown",
            event.input,
            event.output,
        )

    async def _on_permission(self, session: Session, event: PermissionEvent) -> None:
        request = event.request
        if request is None:
            logger.warning("Permission event without a request for %s", session.session_id)
            return
        request.session_id = session.session_id
        if self._confirmations.is_preapproved(session, request):
            try:
                await self._backend.respond_permission(request.request_id, Decision.APPROVED)
                logger.debug("Auto-approved %s for %s", request.allow_list_keys(), session.session_id)
                return
            except Exception:
                logger.warning(
                    "Auto-approval of %s failed, asking the user", request.request_id,
                    exc_info=True,
                )
        self._confirmations.enqueue(session, request)

    def _on_error(self, session: Session, event: ErrorEvent) -> None:
        message = event.message or "Unknown error"
        transient = any(marker in message for marker in self._config.transient_error_markers)
        self._assembler.finalize(session)
        session.is_processing = False
        if transient:
            logger.debug("Transient backend error on %s: %s", session.session_id, message)
            return
        logger.warning("Backend error on %s: %s", session.session_id, message)
        self._append_warning(session, message)

    async def _on_idle(self, session: Session, event: IdleEvent) -> None:
        tools = self._tools.take_snapshot(session)
        self._assembler.finalize(session, tools)
        session.is_processing = False
        session.has_unread_completion = session.session_id != self._active_session_id

        last = session.last_message
        last_response = last.content if last is not None and last.role == MessageRole.ASSISTANT else ""
        await self._advance_loop(session, last_response)
        self._schedule_enrichment(session)
        self._persist()

    # ── loops ───────────────────────────────────────────────────────

    async def _advance_loop(self, session: Session, last_response: str) -> LoopStep | None:
        loop = session.loop
        if loop is None or not loop.active:
            return None
        if isinstance(loop, RalphState):
            step = self._ralph.on_idle(loop, last_response)
        else:
            step = self._lisa.on_idle(loop, last_response)
        if not step.should_continue:
            logger.info("Loop on %s finished: %s", session.session_id, step.outcome.value)
            return step

        prompt = step.next_prompt or ""
        self._assembler.begin_turn(session, Message(
            id=self._sequence.next_id(), role=MessageRole.USER, content=prompt,
        ))
        session.is_processing = True
        try:
            await self._backend.send(session.session_id, prompt, None, SendMode.DEFAULT)
        except Exception as exc:
            # No retry; the loop stays active until the user stops it.
            logger.error("Loop continuation send failed for %s", session.session_id, exc_info=True)
            self._assembler.discard_placeholder(session)
            self._append_warning(session, f"Loop continuation failed: {exc}")
        return step

    def _deactivate_loop(self, session: Session, reason: str) -> bool:
        loop = session.loop
        if loop is None or not loop.active:
            return False
        loop.active = False
        kind = "Lisa" if isinstance(loop, LisaState) else "Ralph"
        logger.info("%s loop on %s %s", kind, session.session_id, reason)
        return True

    # ── enrichments ─────────────────────────────────────────────────

    def _schedule_enrichment(self, session: Session) -> None:
        """Start title and choice detection without holding up the reducer.

        Results are applied when they arrive, and only if the session has
        not moved on in the meantime.
        """
        session.detected_choices = []
        tasks = self._enrichments.get(session.session_id, {})

        if session.needs_title and session.messages and "title" not in tasks:
            first = session.first_user_message()
            self._spawn(session, "title", self._apply_title(
                session, list(session.messages), first.content if first is not None else None,
            ))

        previous = tasks.pop("choices", None)
        if previous is not None:
            previous.cancel()
        if session.has_active_loop:
            return
        last = session.last_message
        if last is None or last.role != MessageRole.ASSISTANT or not last.content.strip():
            return
        self._spawn(session, "choices", self._apply_choices(session, last))

    def _spawn(self, session: Session, kind: str, coro) -> None:
        session_id = session.session_id
        task = asyncio.create_task(coro, name=f"{kind}:{session_id}")
        self._enrichments.setdefault(session_id, {})[kind] = task

        def _forget(done: asyncio.Task) -> None:
            tasks = self._enrichments.get(session_id)
            if tasks is not None and tasks.get(kind) is done:
                del tasks[kind]
                if not tasks:
                    del self._enrichments[session_id]

        task.add_done_callback(_forget)

    async def _apply_title(
        self,
        session: Session,
        messages: list[Message],
        first_user_text: str | None,
    ) -> None:
        title = await generate_session_title(
            self._backend,
            messages,
            first_user_text,
            timeout=self._config.enrichment_timeout_seconds,
            fallback_length=self._config.title_fallback_length,
        )
        if not title or not session.needs_title:
            return
        if self._sessions.get(session.session_id) is not session:
            return
        session.name = title
        session.needs_title = False
        logger.debug("Session %s titled %r", session.session_id, title)
        self._persist()

    async def _apply_choices(self, session: Session, message: Message) -> None:
        try:
            detection = await asyncio.wait_for(
                self._backend.detect_choices(message.content),
                timeout=self._config.enrichment_timeout_seconds,
            )
        except Exception:
            logger.debug("Choice detection failed for %s", session.session_id, exc_info=True)
            return
        if not detection.is_choice:
            return
        # Stale once the conversation has moved past the message.
        if session.last_message is not message or session.is_processing or session.has_active_loop:
            return
        session.detected_choices = list(detection.options)

    async def drain_enrichments(self) -> None:
        """Wait for every in-flight title and choice request to settle."""
        tasks = [t for group in self._enrichments.values() for t in group.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _cancel_enrichments(self, session_id: str) -> None:
        for task in self._enrichments.pop(session_id, {}).values():
            task.cancel()

    # ── helpers ─────────────────────────────────────────────────────

    def _append_warning(self, session: Session, text: str) -> None:
        session.messages.append(Message(
            id=self._sequence.next_id(),
            role=MessageRole.ASSISTANT,
            content=f"{WARNING_PREFIX} {text}",
        ))

    def _persist(self) -> None:
        if self._session_store is None:
            return
        try:
            self._session_store.save(list(self._sessions.values()))
        except OSError:
            logger.warning("Failed to persist open sessions", exc_info=True)
