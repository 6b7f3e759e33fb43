"""Per-session FIFO of permission requests.

Only the head of ``session.pending_confirmations`` is live. Resolving it
answers the backend, applies allow-list side effects and pops it,
revealing the next request.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from tabloop.adapters.backend import AgentBackend
from tabloop.adapters.permission_store import PermissionStore
from tabloop.engine.errors import NoPendingConfirmationError
from tabloop.shared.models.message import Message, MessageRole
from tabloop.shared.models.permission import (
    Decision,
    PermissionKind,
    PermissionRequest,
    UrlPermission,
)
from tabloop.shared.models.session import Session

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    request: PermissionRequest
    requested: Decision
    # What was actually sent to the backend after scope restrictions.
    effective: Decision
    delivered: bool = True


def effective_decision(request: PermissionRequest, decision: Decision) -> Decision:
    """Apply scope restrictions to a requested decision.

    Destructive requests are never remembered; write requests are never
    remembered globally.
    """
    if request.is_destructive and decision in (Decision.ALWAYS, Decision.GLOBAL):
        return Decision.APPROVED
    if request.kind == PermissionKind.WRITE and decision == Decision.GLOBAL:
        return Decision.ALWAYS
    return decision


class ConfirmationQueue:
    """Queues, auto-approves and resolves permission requests."""

    def __init__(
        self,
        backend: AgentBackend,
        store: PermissionStore,
        next_id: Callable[[], str],
    ) -> None:
        self._backend = backend
        self._store = store
        self._next_id = next_id

    def enqueue(self, session: Session, request: PermissionRequest) -> int:
        """Append a request. Returns the new queue length."""
        session.pending_confirmations.append(request)
        logger.debug(
            "Queued %s permission %s for %s (queue=%d)",
            request.kind.value, request.request_id, session.session_id,
            len(session.pending_confirmations),
        )
        return len(session.pending_confirmations)

    def is_preapproved(self, session: Session, request: PermissionRequest) -> bool:
        """True if every allow-list key of the request is already allowed."""
        if request.is_destructive:
            return False
        allowed = set(session.always_allowed)
        if request.kind != PermissionKind.WRITE:
            allowed |= self._store.load()
        keys = request.allow_list_keys()
        return bool(keys) and all(key in allowed for key in keys)

    async def resolve(self, session: Session, decision: Decision) -> Resolution:
        """Resolve the head request with *decision* and pop it."""
        if not session.pending_confirmations:
            raise NoPendingConfirmationError(session.session_id)

        request = session.pending_confirmations[0]
        effective = effective_decision(request, decision)
        if effective != decision:
            logger.info(
                "Narrowed %s decision to %s for %s request %s",
                decision.value, effective.value, request.kind.value, request.request_id,
            )

        delivered = True
        try:
            await self._backend.respond_permission(request.request_id, effective)
        except Exception:
            # Pop anyway so the queue never wedges on one request.
            delivered = False
            logger.error(
                "respond_permission failed for %s on %s",
                request.request_id, session.session_id, exc_info=True,
            )
        finally:
            session.pending_confirmations.pop(0)

        if delivered:
            self._apply_side_effects(session, request, effective)
        return Resolution(
            request=request, requested=decision, effective=effective, delivered=delivered,
        )

    def _apply_side_effects(
        self,
        session: Session,
        request: PermissionRequest,
        decision: Decision,
    ) -> None:
        if decision == Decision.DENIED:
            session.messages.append(Message(
                id=self._next_id(),
                role=MessageRole.SYSTEM,
                content=request.describe_denial(),
            ))
        elif decision == Decision.ALWAYS:
            keys = request.allow_list_keys()
            session.always_allowed.update(keys)
            logger.info("Session %s always allows: %s", session.session_id, ", ".join(keys))
        elif decision == Decision.GLOBAL:
            if isinstance(request, UrlPermission):
                self._store.add_url_host(request.host)
                logger.info("Globally allowed URL host: %s", request.host)
            else:
                keys = request.allow_list_keys()
                self._store.add_commands(keys)
                logger.info("Globally allowed: %s", ", ".join(keys))
