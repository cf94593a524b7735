"""Exception hierarchy for the agent session engine.

Process failures carry an ErrorCategory so hosts can tell a missing
binary or an expired login apart from an ordinary crash.
"""
from __future__ import annotations

import re
from enum import Enum


class ErrorCategory(str, Enum):
    PROCESS = "process_error"
    AGENT_MISSING = "agent_missing"
    LOGIN_REQUIRED = "login_required"


_MISSING_MARKERS = ("enoent", "command not found")
# Whole words only: "4012" or "~/.claude/login.json" are not auth failures.
_AUTH_RE = re.compile(
    r"(?<![\w.\\-])(?:authentication|login|api key|unauthorized|401)(?![\w/\\-]|\.\w)",
    re.IGNORECASE,
)
_PERMISSION_MARKERS = ("permission", "denied")


class AgentDeskError(Exception):
    """Base exception for all engine errors."""


class AgentProcessError(AgentDeskError):
    """The agent process failed to start or exited abnormally."""
    category = ErrorCategory.PROCESS

    def __init__(self, diagnostic: str = "", exit_code: int | None = None):
        self.diagnostic = diagnostic
        self.exit_code = exit_code
        if diagnostic:
            message = diagnostic.strip()
        elif exit_code is not None:
            message = f"Agent process exited with code {exit_code}"
        else:
            message = "Agent process closed unexpectedly"
        super().__init__(message)

    @property
    def mentions_permissions(self) -> bool:
        lowered = self.diagnostic.lower()
        return any(marker in lowered for marker in _PERMISSION_MARKERS)


class AgentNotInstalledError(AgentProcessError):
    """The agent executable could not be found."""
    category = ErrorCategory.AGENT_MISSING

    def __init__(
        self, command: str, diagnostic: str = "", exit_code: int | None = None,
    ):
        self.command = command
        super().__init__(
            diagnostic or f"Agent command '{command}' not found. "
            f"Install it or set DESK_AGENT_COMMAND.",
            exit_code,
        )


class LoginRequiredError(AgentProcessError):
    """The agent refused to run because it is not authenticated."""
    category = ErrorCategory.LOGIN_REQUIRED


class SupervisorBusyError(AgentDeskError):
    """A turn was started while another agent process is still running."""
    def __init__(self, pid: int | None):
        self.pid = pid
        super().__init__(f"Agent process already running (pid={pid})")


class ConversationNotFoundError(AgentDeskError):
    """No open conversation has the given id."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class ConversationLimitError(AgentDeskError):
    """Opening another conversation would exceed the configured maximum."""
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Cannot open more than {limit} conversations")


class ConversationBusyError(AgentDeskError):
    """The operation needs the agent, but the agent is busy."""
    def __init__(self, conversation_id: str, operation: str):
        self.conversation_id = conversation_id
        self.operation = operation
        super().__init__(
            f"Cannot {operation} conversation {conversation_id} "
            f"while the agent is busy"
        )


def classify_process_failure(
    diagnostic: str, exit_code: int | None = None,
) -> AgentProcessError:
    """Map an agent diagnostic to the most specific process error."""
    lowered = diagnostic.lower()
    if any(marker in lowered for marker in _MISSING_MARKERS):
        return AgentNotInstalledError("", diagnostic, exit_code)
    if _AUTH_RE.search(diagnostic):
        return LoginRequiredError(diagnostic, exit_code)
    return AgentProcessError(diagnostic, exit_code)
