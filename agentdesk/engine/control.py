"""Control channel for tool-permission negotiation.

The agent asks before using a tool by writing a ``control_request`` line
and blocks until a matching ``control_response`` arrives on its stdin.
ControlChannel tracks the outstanding requests of the current process,
answers the ones that auto-approve or the permission cache cover, and
writes the user's decision for the rest.

Pending requests belong to one process: when it ends (or is stopped)
they are discarded unanswered, and a late respond() is a no-op.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .permissions import PermissionPatternCache, suggest_pattern
from .protocol import ControlRequest

logger = logging.getLogger(__name__)

DENY_MESSAGE = "User denied permission"
DEFAULT_EXEMPT_TOOLS = frozenset({"AskUserQuestion", "ExitPlanMode"})


@dataclass
class PendingControlRequest:
    request_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str = ""
    suggestions: list[Any] = field(default_factory=list)
    decision_reason: str | None = None
    blocked_path: str | None = None
    # Pattern stored if the user picks "always allow".
    pattern: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "tool_name": self.tool_name,
            "input": self.input,
            "tool_use_id": self.tool_use_id,
            "suggestions": self.suggestions,
            "decision_reason": self.decision_reason,
            "blocked_path": self.blocked_path,
            "pattern": self.pattern,
        }


def build_control_response(
    pending: PendingControlRequest,
    approved: bool,
    always_allow: bool = False,
    message: str | None = None,
) -> dict[str, Any]:
    """Build the stdin document answering *pending*."""
    if approved:
        decision: dict[str, Any] = {
            "behavior": "allow",
            "updatedInput": pending.input,
        }
        if always_allow and pending.suggestions:
            decision["updatedPermissions"] = pending.suggestions
        decision["toolUseID"] = pending.tool_use_id
    else:
        decision = {
            "behavior": "deny",
            "message": message or DENY_MESSAGE,
            "interrupt": True,
            "toolUseID": pending.tool_use_id,
        }
    return {
        "type": "control_response",
        "response": {
            "subtype": "success",
            "request_id": pending.request_id,
            "response": decision,
        },
    }


class ControlChannel:
    """Outstanding permission requests of the running agent process."""

    def __init__(
        self,
        permissions: PermissionPatternCache | None = None,
        auto_approve: bool = False,
        exempt_tools: Iterable[str] = DEFAULT_EXEMPT_TOOLS,
    ) -> None:
        self._permissions = permissions
        self.auto_approve = auto_approve
        self._exempt_tools = frozenset(exempt_tools)
        self._pending: dict[str, PendingControlRequest] = {}
        self._writer: Any = None

    @property
    def permissions(self) -> PermissionPatternCache | None:
        return self._permissions

    def attach(self, writer: Any) -> None:
        """Route responses to a new process's stdin."""
        self._writer = writer

    def detach(self, writer: Any = None) -> None:
        """Forget the writer and drop every pending request.

        With *writer* given, only a channel still attached to that writer
        is cleared; a newer process keeps its stdin and its requests.
        """
        if writer is not None and writer is not self._writer:
            return
        self._writer = None
        self.discard_all()

    def pending(self) -> list[PendingControlRequest]:
        return list(self._pending.values())

    def get(self, request_id: str) -> PendingControlRequest | None:
        return self._pending.get(request_id)

    def register(self, event: ControlRequest) -> PendingControlRequest | None:
        """Record a ``can_use_tool`` request. Other subtypes are ignored."""
        if event.subtype != "can_use_tool":
            logger.debug(
                "Ignoring control_request %s with subtype %r",
                event.request_id, event.subtype,
            )
            return None
        tool_name = event.tool_name or "Unknown Tool"
        pending = PendingControlRequest(
            request_id=event.request_id,
            tool_name=tool_name,
            input=event.input,
            tool_use_id=event.tool_use_id or event.request_id,
            suggestions=event.permission_suggestions,
            decision_reason=event.decision_reason,
            blocked_path=event.blocked_path,
            pattern=suggest_pattern(tool_name, event.input),
        )
        self._pending[pending.request_id] = pending
        return pending

    def should_auto_approve(self, pending: PendingControlRequest) -> bool:
        if pending.tool_name in self._exempt_tools:
            return False
        if self.auto_approve:
            return True
        return (
            self._permissions is not None
            and self._permissions.is_pre_approved(pending.tool_name, pending.input)
        )

    async def handle(self, event: ControlRequest) -> PendingControlRequest | None:
        """Register a request and answer it if no user decision is needed.

        Returns the pending request when the user must decide, else None.
        """
        pending = self.register(event)
        if pending is None:
            return None
        if self.should_auto_approve(pending):
            logger.info(
                "Auto-approving %s (request %s)",
                pending.tool_name, pending.request_id,
            )
            await self.respond(pending.request_id, True)
            return None
        return pending

    async def respond(
        self,
        request_id: str,
        approved: bool,
        always_allow: bool = False,
        message: str | None = None,
    ) -> bool:
        """Answer a pending request. Unknown ids are a no-op returning False."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.debug("No pending control request %s, ignoring response", request_id)
            return False

        if approved and always_allow and self._permissions is not None and pending.pattern:
            self._permissions.add(pending.tool_name, pending.pattern)

        logger.info(
            "Permission %s for %s (request %s)",
            "granted" if approved else "denied", pending.tool_name, request_id,
        )
        await self._write(build_control_response(pending, approved, always_allow, message))
        return True

    def discard_all(self) -> None:
        """Drop every pending request without answering it."""
        if self._pending:
            logger.debug("Discarding %d pending control requests", len(self._pending))
        self._pending.clear()

    async def _write(self, document: dict[str, Any]) -> None:
        writer = self._writer
        if writer is None or writer.is_closing():
            logger.debug("Agent stdin unavailable, control response dropped")
            return
        try:
            writer.write((json.dumps(document) + "\n").encode("utf-8"))
            await writer.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Failed to write control response: %s", exc)
