"""Adapters package - bridge between the agent backend and the engine.

Typed backend events, the async event bus, the backend interface and
the persisted global allow-list.
"""
from __future__ import annotations

__all__ = [
    "AgentBackend",
    "ChoiceDetection",
    "EventBus",
    "PermissionStore",
    "dict_to_event",
]

from tabloop.adapters.backend import AgentBackend, ChoiceDetection
from tabloop.adapters.event_bus import EventBus
from tabloop.adapters.events import dict_to_event
from tabloop.adapters.permission_store import PermissionStore
