"""Conversation log and transcript models.

Two representations of one conversation live here:

- the *log*: the append-only list of plain dict entries that is persisted
  (``{"type": "output", "data": "...", "timestamp": 1700000000000, ...}``)
- the *transcript*: typed ConversationEntry records rebuilt from the log
  by the reducer, which is what a front end renders.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar
import math
import time
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


def now_ms() -> int:
    return int(time.time() * 1000)


class LogType(str, Enum):
    USER_INPUT = "userInput"
    OUTPUT = "output"
    THINKING = "thinking"
    TOOL_USE = "toolUse"
    TOOL_RESULT = "toolResult"
    UPDATE_TOKENS = "updateTokens"
    ERROR = "error"
    SESSION_INFO = "sessionInfo"
    COMPACTING = "compacting"
    COMPACT_BOUNDARY = "compactBoundary"
    PERMISSION_REQUEST = "permissionRequest"
    RESULT = "result"


class EntryKind(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    THINKING = "thinking"
    TOOL_USE = "toolUse"
    TOOL_RESULT = "toolResult"
    ERROR = "error"


class ToolStatus(Enum):
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


def make_log_entry(
    log_type: LogType, timestamp: int | None = None, **fields: Any
) -> dict[str, Any]:
    """Build a persisted log entry with a millisecond timestamp."""
    entry: dict[str, Any] = {
        "type": log_type.value,
        "timestamp": now_ms() if timestamp is None else timestamp,
    }
    entry.update(fields)
    return entry


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> "TokenUsage | None":
        if not isinstance(data, dict):
            return None
        return cls(
            input_tokens=_as_int(data.get("input_tokens")),
            output_tokens=_as_int(data.get("output_tokens")),
            cache_read_input_tokens=_as_int(data.get("cache_read_input_tokens")),
            cache_creation_input_tokens=_as_int(
                data.get("cache_creation_input_tokens")
            ),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
        }


def _as_float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    try:
        number = float(value)
    except OverflowError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def _as_int(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return int(_as_float(value))


@dataclass
class ConversationEntry:
    id: str
    timestamp: int
    kind: ClassVar[EntryKind]


@dataclass
class UserEntry(ConversationEntry):
    kind: ClassVar[EntryKind] = EntryKind.USER
    content: str = ""
    images: list[str] = field(default_factory=list)


@dataclass
class AssistantEntry(ConversationEntry):
    kind: ClassVar[EntryKind] = EntryKind.ASSISTANT
    content: str = ""
    streaming: bool = False
    usage: TokenUsage | None = None


@dataclass
class ThinkingEntry(ConversationEntry):
    kind: ClassVar[EntryKind] = EntryKind.THINKING
    content: str = ""


@dataclass
class ToolUseEntry(ConversationEntry):
    kind: ClassVar[EntryKind] = EntryKind.TOOL_USE
    tool_use_id: str = ""
    tool_name: str = ""
    raw_input: dict[str, Any] = field(default_factory=dict)
    status: ToolStatus = ToolStatus.EXECUTING
    duration: float | None = None
    tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_creation_tokens: int | None = None


@dataclass
class ToolResultEntry(ConversationEntry):
    kind: ClassVar[EntryKind] = EntryKind.TOOL_RESULT
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False
    tool_name: str = ""
    duration: float | None = None
    tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_creation_tokens: int | None = None


@dataclass
class ErrorEntry(ConversationEntry):
    kind: ClassVar[EntryKind] = EntryKind.ERROR
    content: str = ""


@dataclass
class ConversationRecord:
    """A persisted conversation: its log plus the totals needed to resume."""
    conversation_id: str = field(default_factory=_gen_id)
    title: str = ""
    session_id: str | None = None
    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    start_time: datetime = field(default_factory=_utcnow)
    end_time: datetime = field(default_factory=_utcnow)
    messages: list[dict[str, Any]] = field(default_factory=list)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def first_user_message(self) -> str:
        for entry in self.messages:
            if entry.get("type") == LogType.USER_INPUT.value:
                return _log_text(entry)
        return ""

    def last_user_message(self) -> str:
        for entry in reversed(self.messages):
            if entry.get("type") == LogType.USER_INPUT.value:
                return _log_text(entry)
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "title": self.title,
            "sessionId": self.session_id,
            "totalCost": self.total_cost,
            "totalTokens": {
                "input": self.total_input_tokens,
                "output": self.total_output_tokens,
            },
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "messageCount": self.message_count,
            "messages": self.messages,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationRecord":
        tokens = data.get("totalTokens") or {}
        record = cls(
            conversation_id=str(data.get("conversationId") or _gen_id()),
            title=str(data.get("title") or ""),
            session_id=data.get("sessionId") or None,
            total_cost=_as_float(data.get("totalCost")),
            total_input_tokens=_as_int(tokens.get("input")),
            total_output_tokens=_as_int(tokens.get("output")),
            messages=[m for m in data.get("messages") or [] if isinstance(m, dict)],
        )
        for attr, key in (("start_time", "startTime"), ("end_time", "endTime")):
            raw = data.get(key)
            if isinstance(raw, str):
                try:
                    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
                except ValueError:
                    continue
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                setattr(record, attr, parsed)
        return record


def _log_text(entry: dict[str, Any]) -> str:
    value = entry.get("data")
    if value is None:
        value = entry.get("text", "")
    if isinstance(value, dict):
        value = value.get("text", "")
    return value if isinstance(value, str) else str(value)
