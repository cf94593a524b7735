"""Adapters package - Bridge between the engine and front ends.

Host notification types, the event bus that queues them, and the
permission pattern storage backends.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "JsonPermissionStore",
    "MemoryPermissionStore",
]

from agentdesk.adapters.event_bus import EventBus
from agentdesk.adapters.permission_store import JsonPermissionStore, MemoryPermissionStore
