"""Typed events decoded from the agent's stream-json output.

Each stdout line is a JSON object discriminated by ``type`` (and, for
``system`` lines, by ``subtype``). decode() turns a line into one of the
dataclasses below, or None for anything that is not a recognised event.
Malformed input is never fatal: missing fields take defaults and wrongly
typed fields are coerced.
"""
from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Union

from agentdesk.shared.models.conversation import TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class TextBlock:
    text: str = ""


@dataclass
class ThinkingBlock:
    thinking: str = ""


@dataclass
class ToolUseBlock:
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultBlock:
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False


AssistantBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock]


@dataclass
class ProtocolEvent:
    """Base for every decoded stdout event."""
    event_type: str = ""


@dataclass
class SystemInit(ProtocolEvent):
    event_type: str = "system_init"
    session_id: str = ""
    tools: list[str] = field(default_factory=list)
    mcp_servers: list[dict[str, Any]] = field(default_factory=list)
    model: str = ""
    cwd: str = ""


@dataclass
class SystemStatus(ProtocolEvent):
    event_type: str = "system_status"
    status: str | None = None

    @property
    def compacting(self) -> bool:
        return self.status == "compacting"


@dataclass
class CompactBoundary(ProtocolEvent):
    event_type: str = "compact_boundary"
    trigger: str = ""
    pre_tokens: int = 0


@dataclass
class AssistantMessage(ProtocolEvent):
    event_type: str = "assistant"
    content: list[AssistantBlock] = field(default_factory=list)
    usage: TokenUsage | None = None


@dataclass
class UserMessage(ProtocolEvent):
    event_type: str = "user"
    content: list[ToolResultBlock] = field(default_factory=list)


@dataclass
class ControlRequest(ProtocolEvent):
    event_type: str = "control_request"
    request_id: str = ""
    subtype: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str | None = None
    permission_suggestions: list[Any] = field(default_factory=list)
    decision_reason: str | None = None
    blocked_path: str | None = None


@dataclass
class ResultEvent(ProtocolEvent):
    event_type: str = "result"
    subtype: str = ""
    session_id: str = ""
    total_cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    is_error: bool = False
    result: str = ""
    errors: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.subtype == "success" and not self.is_error


# ── Field coercion ──


def _str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return value if isinstance(value, str) else str(value)


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    return _str(value)


def _num(value: Any, default: float = 0.0) -> float:
    """A finite number from *value*; NaN, infinities and junk give *default*."""
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return default
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return default
        return number if math.isfinite(number) else default
    return default


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def flatten_tool_content(content: Any) -> str:
    """Collapse a tool_result content payload to plain text.

    The agent sends either a string or a list of ``{"type": "text"}``
    blocks; anything else is serialized as JSON.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(_str(item.get("text")))
            elif isinstance(item, str):
                parts.append(item)
            else:
                parts.append(json.dumps(item, ensure_ascii=False))
        return "\n".join(parts)
    return json.dumps(content, ensure_ascii=False)


# ── Per-type decoders ──


def _decode_system(data: dict[str, Any]) -> ProtocolEvent | None:
    subtype = data.get("subtype")
    if subtype == "init":
        return SystemInit(
            session_id=_str(data.get("session_id")),
            tools=[_str(t) for t in _list(data.get("tools"))],
            mcp_servers=[s for s in _list(data.get("mcp_servers")) if isinstance(s, dict)],
            model=_str(data.get("model")),
            cwd=_str(data.get("cwd")),
        )
    if subtype == "status":
        return SystemStatus(status=_opt_str(data.get("status")))
    if subtype == "compact_boundary":
        meta = _dict(data.get("compact_metadata"))
        return CompactBoundary(
            trigger=_str(meta.get("trigger")),
            pre_tokens=int(_num(meta.get("pre_tokens"))),
        )
    logger.debug("Ignoring system event with subtype %r", subtype)
    return None


def _decode_assistant(data: dict[str, Any]) -> ProtocolEvent:
    message = _dict(data.get("message"))
    blocks: list[AssistantBlock] = []
    for block in _list(message.get("content")):
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind == "text":
            blocks.append(TextBlock(text=_str(block.get("text"))))
        elif kind == "thinking":
            blocks.append(ThinkingBlock(thinking=_str(block.get("thinking"))))
        elif kind == "tool_use":
            blocks.append(ToolUseBlock(
                id=_str(block.get("id")),
                name=_str(block.get("name")),
                input=_dict(block.get("input")),
            ))
    return AssistantMessage(
        content=blocks,
        usage=TokenUsage.from_dict(message.get("usage")),
    )


def _decode_user(data: dict[str, Any]) -> ProtocolEvent:
    message = _dict(data.get("message"))
    blocks = []
    for block in _list(message.get("content")):
        if isinstance(block, dict) and block.get("type") == "tool_result":
            blocks.append(ToolResultBlock(
                tool_use_id=_str(block.get("tool_use_id")),
                content=flatten_tool_content(block.get("content")),
                is_error=bool(block.get("is_error", False)),
            ))
    return UserMessage(content=blocks)


def _decode_control_request(data: dict[str, Any]) -> ProtocolEvent | None:
    request = _dict(data.get("request"))
    request_id = _str(data.get("request_id"))
    if not request_id:
        logger.debug("Ignoring control_request without request_id")
        return None
    return ControlRequest(
        request_id=request_id,
        subtype=_str(request.get("subtype")),
        tool_name=_str(request.get("tool_name")),
        input=_dict(request.get("input")),
        tool_use_id=_opt_str(request.get("tool_use_id")),
        permission_suggestions=_list(request.get("permission_suggestions")),
        decision_reason=_opt_str(request.get("decision_reason")),
        blocked_path=_opt_str(request.get("blocked_path")),
    )


def _decode_result(data: dict[str, Any]) -> ProtocolEvent:
    return ResultEvent(
        subtype=_str(data.get("subtype")),
        session_id=_str(data.get("session_id")),
        total_cost_usd=_num(data.get("total_cost_usd")),
        duration_ms=int(_num(data.get("duration_ms"))),
        num_turns=int(_num(data.get("num_turns"))),
        is_error=bool(data.get("is_error", False)),
        result=_str(data.get("result")),
        errors=[_str(e) for e in _list(data.get("errors"))],
    )


def _ignore(data: dict[str, Any]) -> None:
    return None


_DECODERS: dict[str, Callable[[dict[str, Any]], ProtocolEvent | None]] = {
    "system": _decode_system,
    "assistant": _decode_assistant,
    "user": _decode_user,
    "control_request": _decode_control_request,
    # Echoes of our own control responses carry nothing new.
    "control_response": _ignore,
    "result": _decode_result,
}


def decode(line: str) -> ProtocolEvent | None:
    """Decode one stdout line into a typed event, or None."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        logger.debug("Dropping non-JSON line: %.200s", stripped)
        return None
    if not isinstance(data, dict):
        logger.debug("Dropping non-object JSON line: %.200s", stripped)
        return None
    decoder = _DECODERS.get(_str(data.get("type")))
    if decoder is None:
        logger.debug("Dropping event with unknown type %r", data.get("type"))
        return None
    return decoder(data)
