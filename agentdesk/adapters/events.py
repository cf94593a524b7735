"""Notifications emitted by the tab scheduler.

The scheduler reports through EngineConfig.event_callback with plain
dicts (``{"event": "turn_started", "conversation_id": ...}``); these
dataclasses are the typed form a front end consumes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class HostEvent:
    """Base notification for a host front end."""
    event_type: str = ""
    conversation_id: str | None = None


@dataclass
class TurnStarted(HostEvent):
    event_type: str = "turn_started"
    text: str = ""


@dataclass
class TurnFinished(HostEvent):
    event_type: str = "turn_finished"
    success: bool = True
    stopped: bool = False
    total_cost: float = 0.0
    request_count: int = 0


@dataclass
class TranscriptUpdated(HostEvent):
    """New log entries were appended to the conversation."""
    event_type: str = "transcript_updated"
    entries: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class SessionAssigned(HostEvent):
    event_type: str = "session_assigned"
    session_id: str = ""


@dataclass
class PermissionPrompt(HostEvent):
    event_type: str = "permission_prompt"
    request_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    pattern: str | None = None
    suggestions: list[Any] = field(default_factory=list)
    decision_reason: str | None = None
    blocked_path: str | None = None


@dataclass
class PermissionResolved(HostEvent):
    event_type: str = "permission_resolved"
    request_id: str = ""
    approved: bool = False
    always_allow: bool = False


@dataclass
class AgentFailed(HostEvent):
    event_type: str = "agent_failed"
    category: str = ""
    message: str = ""


@dataclass
class PermissionHint(HostEvent):
    event_type: str = "permission_hint"
    message: str = ""


@dataclass
class CompactionChanged(HostEvent):
    event_type: str = "compaction_changed"
    is_compacting: bool = False


_EVENT_MAP: dict[str, type[HostEvent]] = {
    "turn_started": TurnStarted,
    "turn_finished": TurnFinished,
    "transcript_updated": TranscriptUpdated,
    "session_assigned": SessionAssigned,
    "permission_prompt": PermissionPrompt,
    "permission_resolved": PermissionResolved,
    "agent_failed": AgentFailed,
    "permission_hint": PermissionHint,
    "compaction_changed": CompactionChanged,
}


def event_to_dict(event: HostEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> HostEvent:
    """Convert a scheduler callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, HostEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
