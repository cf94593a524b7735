"""Live translation of agent events into conversation log entries.

StreamInterpreter is fed the decoded events of the owning conversation's
run, keeps its SessionState current, and returns the log entries to
append. The same entries, replayed through the reducer later, rebuild
the transcript the user saw live.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from agentdesk.shared.models.conversation import LogType, make_log_entry

from .errors import AgentProcessError, LoginRequiredError, classify_process_failure
from .protocol import (
    AssistantMessage,
    CompactBoundary,
    ProtocolEvent,
    ResultEvent,
    SystemInit,
    SystemStatus,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    UserMessage,
)
from .session_state import SessionState, ToolMetric

logger = logging.getLogger(__name__)

EMPTY_TOOL_RESULT = "Tool executed successfully"


class StreamInterpreter:
    """Turn one run's events into log entries and state updates."""

    def __init__(
        self,
        state: SessionState,
        hidden_result_tools: Iterable[str] = ("Read", "TodoWrite"),
    ) -> None:
        self._state = state
        self._hidden = frozenset(hidden_result_tools)
        self._tool_names: dict[str, str] = {}
        self._text_open = False
        self.result: ResultEvent | None = None
        self.failure: AgentProcessError | None = None

    def reset(self) -> None:
        """Prepare for a new run."""
        self._tool_names.clear()
        self._text_open = False
        self.result = None
        self.failure = None

    def interpret(self, event: ProtocolEvent) -> list[dict[str, Any]]:
        if isinstance(event, SystemInit):
            return self._on_init(event)
        if isinstance(event, SystemStatus):
            self._state.is_compacting = event.compacting
            return [make_log_entry(
                LogType.COMPACTING, data={"isCompacting": event.compacting},
            )]
        if isinstance(event, CompactBoundary):
            self._state.reset_token_counts()
            return [make_log_entry(
                LogType.COMPACT_BOUNDARY,
                data={"trigger": event.trigger, "preTokens": event.pre_tokens},
            )]
        if isinstance(event, AssistantMessage):
            return self._on_assistant(event)
        if isinstance(event, UserMessage):
            return self._on_user(event)
        if isinstance(event, ResultEvent):
            return self._on_result(event)
        logger.debug("No log entry for %s", event.event_type)
        return []

    # ── Handlers ──

    def _on_init(self, event: SystemInit) -> list[dict[str, Any]]:
        if event.session_id:
            self._state.session_id = event.session_id
        return [make_log_entry(
            LogType.SESSION_INFO,
            data={
                "sessionId": event.session_id,
                "tools": event.tools,
                "mcpServers": event.mcp_servers,
            },
        )]

    def _on_assistant(self, event: AssistantMessage) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        usage = event.usage
        if usage is not None:
            self._state.add_token_usage(usage)
            entries.append(make_log_entry(
                LogType.UPDATE_TOKENS,
                current=usage.to_dict(),
                totalTokensInput=self._state.total_input_tokens,
                totalTokensOutput=self._state.total_output_tokens,
            ))

        for block in event.content:
            if isinstance(block, TextBlock):
                text = block.text.strip()
                if not text:
                    continue
                if self._text_open:
                    text = "\n\n" + text
                entries.append(make_log_entry(LogType.OUTPUT, data=text, isFinal=False))
                self._text_open = True
            elif isinstance(block, ThinkingBlock):
                thinking = block.thinking.strip()
                if not thinking:
                    continue
                entries.append(make_log_entry(LogType.THINKING, data=thinking))
                self._text_open = False
            elif isinstance(block, ToolUseBlock):
                self._tool_names[block.id] = block.name
                self._state.tool_metrics[block.id] = ToolMetric(
                    tool_name=block.name,
                    raw_input=block.input,
                    tokens=usage.output_tokens if usage else None,
                    cache_read_tokens=usage.cache_read_input_tokens if usage else None,
                    cache_creation_tokens=(
                        usage.cache_creation_input_tokens if usage else None
                    ),
                )
                entries.append(make_log_entry(
                    LogType.TOOL_USE,
                    data=block.name,
                    toolUseId=block.id,
                    toolName=block.name,
                    rawInput=block.input,
                ))
                self._text_open = False
        return entries

    def _on_user(self, event: UserMessage) -> list[dict[str, Any]]:
        entries = []
        for block in event.content:
            metric = self._state.tool_metrics.pop(block.tool_use_id, None)
            tool_name = (
                metric.tool_name if metric
                else self._tool_names.get(block.tool_use_id, "")
            )
            entry = make_log_entry(
                LogType.TOOL_RESULT,
                toolUseId=block.tool_use_id,
                toolName=tool_name,
                content=block.content or EMPTY_TOOL_RESULT,
                isError=block.is_error,
                hidden=tool_name in self._hidden and not block.is_error,
            )
            if metric is not None:
                entry["duration"] = metric.elapsed_ms()
                if metric.tokens is not None:
                    entry["tokens"] = metric.tokens
                if metric.cache_read_tokens is not None:
                    entry["cacheReadTokens"] = metric.cache_read_tokens
                if metric.cache_creation_tokens is not None:
                    entry["cacheCreationTokens"] = metric.cache_creation_tokens
            entries.append(entry)
            self._text_open = False
        return entries

    def _on_result(self, event: ResultEvent) -> list[dict[str, Any]]:
        self.result = event
        self._text_open = False
        entries = [make_log_entry(LogType.OUTPUT, data="", isFinal=True)]

        if not event.succeeded:
            self.failure = result_failure(event)
            logger.warning(
                "Agent result %s reported an error: %s", event.subtype, self.failure,
            )
            return entries

        if event.session_id:
            self._state.session_id = event.session_id
        self._state.request_count += 1
        if event.total_cost_usd:
            self._state.add_cost(event.total_cost_usd)
        entries.append(make_log_entry(
            LogType.RESULT,
            data={
                "subtype": event.subtype,
                "sessionId": event.session_id,
                "totalCostUsd": event.total_cost_usd,
                "durationMs": event.duration_ms,
                "numTurns": event.num_turns,
            },
        ))
        return entries


def result_failure(event: ResultEvent) -> AgentProcessError:
    """The error reported by an unsuccessful ``result`` event."""
    text = event.result.strip() or "; ".join(e for e in event.errors if e)
    if not text:
        text = f"Agent run failed ({event.subtype or 'unknown'})"
    if "Invalid API key" in text:
        return LoginRequiredError(text)
    return classify_process_failure(text)
