"""Per-conversation counters and flags."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from agentdesk.shared.models.conversation import ConversationRecord, TokenUsage


@dataclass
class ToolMetric:
    """Bookkeeping for a tool use until its result arrives."""
    tool_name: str
    raw_input: dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)
    tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_creation_tokens: int | None = None

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


@dataclass
class SessionState:
    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cache_creation_tokens: int = 0
    request_count: int = 0
    is_processing: bool = False
    is_compacting: bool = False
    session_id: str | None = None
    selected_model: str = "default"
    tool_metrics: dict[str, ToolMetric] = field(default_factory=dict)

    def add_token_usage(self, usage: TokenUsage) -> None:
        self.total_input_tokens += usage.input_tokens
        self.total_output_tokens += usage.output_tokens
        self.total_cache_read_tokens += usage.cache_read_input_tokens
        self.total_cache_creation_tokens += usage.cache_creation_input_tokens

    def reset_token_counts(self) -> None:
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_cache_read_tokens = 0
        self.total_cache_creation_tokens = 0

    def add_cost(self, cost: float) -> None:
        self.total_cost += cost

    def reset_session(self) -> None:
        """Start over: forget totals, the agent session and tool metrics."""
        self.total_cost = 0.0
        self.reset_token_counts()
        self.request_count = 0
        self.is_processing = False
        self.is_compacting = False
        self.session_id = None
        self.tool_metrics.clear()

    def restore_from(self, record: ConversationRecord) -> None:
        """Adopt the totals and session id of a persisted conversation."""
        self.reset_session()
        self.total_cost = record.total_cost
        self.total_input_tokens = record.total_input_tokens
        self.total_output_tokens = record.total_output_tokens
        self.session_id = record.session_id
