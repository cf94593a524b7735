"""Tool-use status state machine.

A tool use starts EXECUTING and settles exactly once, when its result
arrives. Settled statuses are terminal.

    EXECUTING ──┬──> COMPLETED
                └──> FAILED
"""
from __future__ import annotations

from agentdesk.shared.models.conversation import ToolStatus

VALID_TRANSITIONS: dict[ToolStatus, set[ToolStatus]] = {
    ToolStatus.EXECUTING: {
        ToolStatus.COMPLETED,
        ToolStatus.FAILED,
    },
    ToolStatus.COMPLETED: set(),
    ToolStatus.FAILED: set(),
}


def is_settled(status: ToolStatus) -> bool:
    return not VALID_TRANSITIONS.get(status)


def validate_transition(current: ToolStatus, target: ToolStatus) -> None:
    """Validate a status transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid tool status transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
