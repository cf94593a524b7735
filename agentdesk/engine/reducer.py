"""Fold a conversation log into a renderable transcript.

The same reducer serves live streaming (apply() as entries arrive) and
replay (rebuild_transcript() over a stored log), so a reloaded
conversation looks exactly like it did live. Output depends only on the
log: entry ids come from the entry kind, its timestamp and its position.

Rules, with the open assistant entry acting as a cursor:

- ``output`` extends the open assistant entry or opens a new one; a final
  output closes it. An empty final output with nothing open is dropped.
- any other content entry closes the open assistant entry first.
- ``toolResult`` settles the earlier ``toolUse`` with the same id exactly
  once and is shown unless marked hidden.
- ``updateTokens`` goes to the open assistant entry, else the most recent
  assistant entry without usage, else waits for the next assistant entry.
"""
from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from agentdesk.shared.models.conversation import (
    AssistantEntry,
    ConversationEntry,
    ErrorEntry,
    LogType,
    ThinkingEntry,
    TokenUsage,
    ToolResultEntry,
    ToolStatus,
    ToolUseEntry,
    UserEntry,
)

from .lifecycle import is_settled, validate_transition

logger = logging.getLogger(__name__)


def to_timestamp(value: Any) -> int:
    """Milliseconds since epoch from an int or ISO string; 0 if unknown."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        number = _finite(value)
        return 0 if number is None else int(number)
    if isinstance(value, str):
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            return 0
    return 0


def to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False)


def _finite(value: int | float) -> float | None:
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def _field(entry: dict[str, Any], name: str) -> Any:
    """Look a field up on the entry, then inside its ``data`` mapping."""
    if name in entry:
        return entry[name]
    data = entry.get("data")
    if isinstance(data, dict):
        return data.get(name)
    return None


def _number(entry: dict[str, Any], name: str) -> float | None:
    value = _field(entry, name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return _finite(value)


def _usage(entry: dict[str, Any]) -> TokenUsage | None:
    current = _field(entry, "current")
    if not isinstance(current, dict):
        return None
    if not isinstance(current.get("input_tokens"), (int, float)):
        return None
    if not isinstance(current.get("output_tokens"), (int, float)):
        return None
    return TokenUsage.from_dict(current)


class ConversationReducer:
    """Incrementally builds a transcript from log entries."""

    def __init__(self) -> None:
        self.transcript: list[ConversationEntry] = []
        self._position = 0
        self._open: AssistantEntry | None = None
        self._tool_uses: dict[str, ToolUseEntry] = {}
        self._pending_usage: TokenUsage | None = None

    @property
    def open_entry(self) -> AssistantEntry | None:
        return self._open

    def apply(self, entry: dict[str, Any]) -> None:
        index = self._position
        self._position += 1
        kind = entry.get("type")
        timestamp = to_timestamp(entry.get("timestamp"))

        if kind == LogType.USER_INPUT.value:
            self._close()
            data = entry.get("data", entry.get("text"))
            if isinstance(data, dict):
                content, images = to_text(data.get("text")), data.get("images")
            else:
                content, images = to_text(data), entry.get("images")
            self.transcript.append(UserEntry(
                id=f"user-{timestamp}-{index}",
                timestamp=timestamp,
                content=content,
                images=[i for i in images if isinstance(i, str)] if isinstance(images, list) else [],
            ))
        elif kind == LogType.OUTPUT.value:
            self._on_output(entry, timestamp, index)
        elif kind == LogType.UPDATE_TOKENS.value:
            self._on_usage(entry)
        elif kind == LogType.THINKING.value:
            self._close()
            thinking = entry.get("thinking")
            self.transcript.append(ThinkingEntry(
                id=f"thinking-{timestamp}-{index}",
                timestamp=timestamp,
                content=thinking if isinstance(thinking, str) else to_text(entry.get("data")),
            ))
        elif kind == LogType.TOOL_USE.value:
            self._on_tool_use(entry, timestamp, index)
        elif kind == LogType.TOOL_RESULT.value:
            self._on_tool_result(entry, timestamp, index)
        elif kind == LogType.ERROR.value:
            self._close()
            message = entry.get("message")
            self.transcript.append(ErrorEntry(
                id=f"error-{timestamp}-{index}",
                timestamp=timestamp,
                content=message if isinstance(message, str) else to_text(entry.get("data")),
            ))
        # sessionInfo, compacting, result, ... carry no transcript content.

    def apply_all(self, entries: Iterable[dict[str, Any]]) -> None:
        for entry in entries:
            self.apply(entry)

    def finish(self) -> list[ConversationEntry]:
        """End of stream: close the open assistant entry."""
        self._close()
        return self.transcript

    # ── Handlers ──

    def _close(self) -> None:
        if self._open is not None:
            self._open.streaming = False
            self._open = None

    def _on_output(self, entry: dict[str, Any], timestamp: int, index: int) -> None:
        text = entry.get("text")
        if not isinstance(text, str):
            data = entry.get("data")
            text = data if isinstance(data, str) else ""
        is_final = entry.get("isFinal") is True

        if self._open is None:
            if not text and is_final:
                return
            self._open = AssistantEntry(
                id=f"assistant-{timestamp}-{index}",
                timestamp=timestamp,
                content=text,
                streaming=not is_final,
                usage=self._pending_usage,
            )
            self._pending_usage = None
            self.transcript.append(self._open)
        else:
            self._open.content += text
            if self._open.usage is None and self._pending_usage is not None:
                self._open.usage = self._pending_usage
                self._pending_usage = None
        if is_final:
            self._close()

    def _on_usage(self, entry: dict[str, Any]) -> None:
        usage = _usage(entry)
        if usage is None:
            return
        if self._open is not None:
            if self._open.usage is None:
                self._open.usage = usage
            self._pending_usage = None
            return
        for item in reversed(self.transcript):
            if isinstance(item, AssistantEntry) and item.usage is None:
                item.usage = usage
                self._pending_usage = None
                return
        self._pending_usage = usage

    def _on_tool_use(self, entry: dict[str, Any], timestamp: int, index: int) -> None:
        self._close()
        tool_use_id = _field(entry, "toolUseId")
        tool_use_id = str(tool_use_id) if tool_use_id else f"tool-{timestamp}-{index}"
        tool_name = _field(entry, "toolName")
        raw_input = _field(entry, "rawInput")
        tool_use = ToolUseEntry(
            id=f"tool-use-{tool_use_id}-{index}",
            timestamp=timestamp,
            tool_use_id=tool_use_id,
            tool_name=tool_name if isinstance(tool_name, str) else "Tool",
            raw_input=raw_input if isinstance(raw_input, dict) else {},
            duration=_number(entry, "duration"),
            tokens=_int_or_none(_number(entry, "tokens")),
            cache_read_tokens=_int_or_none(_number(entry, "cacheReadTokens")),
            cache_creation_tokens=_int_or_none(_number(entry, "cacheCreationTokens")),
        )
        self.transcript.append(tool_use)
        self._tool_uses[tool_use_id] = tool_use

    def _on_tool_result(self, entry: dict[str, Any], timestamp: int, index: int) -> None:
        self._close()
        raw_id = _field(entry, "toolUseId")
        tool_use_id = str(raw_id) if raw_id else ""
        is_error = bool(_field(entry, "isError"))
        duration = _number(entry, "duration")
        tokens = _int_or_none(_number(entry, "tokens"))
        cache_read = _int_or_none(_number(entry, "cacheReadTokens"))
        cache_creation = _int_or_none(_number(entry, "cacheCreationTokens"))

        tool_use = self._tool_uses.get(tool_use_id)
        if tool_use is not None:
            if is_settled(tool_use.status):
                logger.debug("Ignoring repeated result for tool use %s", tool_use_id)
                return
            target = ToolStatus.FAILED if is_error else ToolStatus.COMPLETED
            validate_transition(tool_use.status, target)
            tool_use.status = target
            tool_use.duration = duration if duration is not None else tool_use.duration
            tool_use.tokens = tokens if tokens is not None else tool_use.tokens
            if cache_read is not None:
                tool_use.cache_read_tokens = cache_read
            if cache_creation is not None:
                tool_use.cache_creation_tokens = cache_creation
        elif tool_use_id:
            logger.debug("Result for unknown tool use %s", tool_use_id)

        if _field(entry, "hidden") is True:
            return
        tool_name = _field(entry, "toolName")
        if not isinstance(tool_name, str):
            tool_name = tool_use.tool_name if tool_use else ""
        self.transcript.append(ToolResultEntry(
            id=f"tool-result-{tool_use_id}-{index}",
            timestamp=timestamp,
            tool_use_id=tool_use_id,
            content=to_text(_field(entry, "content")),
            is_error=is_error,
            tool_name=tool_name,
            duration=duration,
            tokens=tokens,
            cache_read_tokens=cache_read,
            cache_creation_tokens=cache_creation,
        ))


def _int_or_none(value: float | None) -> int | None:
    return None if value is None else int(value)


def rebuild_transcript(entries: Iterable[dict[str, Any]]) -> list[ConversationEntry]:
    """Replay a stored log into a transcript."""
    reducer = ConversationReducer()
    reducer.apply_all(entries)
    return reducer.finish()
