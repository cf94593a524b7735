from __future__ import annotations

import pytest

from agentdesk.engine.errors import AgentProcessError, LoginRequiredError
from agentdesk.engine.interpreter import EMPTY_TOOL_RESULT, StreamInterpreter, result_failure
from agentdesk.engine.protocol import (
    AssistantMessage,
    CompactBoundary,
    ResultEvent,
    SystemInit,
    SystemStatus,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from agentdesk.engine.reducer import rebuild_transcript
from agentdesk.engine.session_state import SessionState
from agentdesk.shared.models.conversation import TokenUsage, ToolStatus


def _interpreter() -> tuple[StreamInterpreter, SessionState]:
    state = SessionState()
    return StreamInterpreter(state), state


def test_init_records_session_id() -> None:
    interp, state = _interpreter()

    [entry] = interp.interpret(SystemInit(session_id="sess-1", tools=["Bash"]))

    assert state.session_id == "sess-1"
    assert entry["type"] == "sessionInfo"
    assert entry["data"]["tools"] == ["Bash"]


def test_assistant_text_and_usage() -> None:
    interp, state = _interpreter()
    usage = TokenUsage(input_tokens=10, output_tokens=4, cache_read_input_tokens=2)

    entries = interp.interpret(AssistantMessage(
        content=[TextBlock("  Hello  "), TextBlock("Again")],
        usage=usage,
    ))

    assert [e["type"] for e in entries] == ["updateTokens", "output", "output"]
    assert entries[0]["current"]["input_tokens"] == 10
    assert entries[0]["totalTokensInput"] == 10
    assert entries[1]["data"] == "Hello"
    assert entries[2]["data"] == "\n\nAgain"
    assert state.total_input_tokens == 10
    assert state.total_cache_read_tokens == 2


def test_blank_blocks_are_skipped() -> None:
    interp, _ = _interpreter()
    entries = interp.interpret(AssistantMessage(content=[TextBlock("  "), ThinkingBlock("")]))
    assert entries == []


def test_tool_round_trip_carries_metrics() -> None:
    interp, state = _interpreter()
    interp.interpret(AssistantMessage(
        content=[ToolUseBlock(id="t1", name="Bash", input={"command": "ls"})],
        usage=TokenUsage(output_tokens=7),
    ))
    assert "t1" in state.tool_metrics

    [result] = interp.interpret(UserMessage(content=[ToolResultBlock("t1", "", False)]))

    assert result["toolName"] == "Bash"
    assert result["content"] == EMPTY_TOOL_RESULT
    assert result["tokens"] == 7
    assert result["duration"] >= 0
    assert result["hidden"] is False
    assert state.tool_metrics == {}


def test_results_of_quiet_tools_are_hidden_unless_failed() -> None:
    interp, _ = _interpreter()
    interp.interpret(AssistantMessage(content=[
        ToolUseBlock(id="r1", name="Read"), ToolUseBlock(id="r2", name="Read"),
    ]))

    ok, failed = interp.interpret(UserMessage(content=[
        ToolResultBlock("r1", "file body"), ToolResultBlock("r2", "EACCES", True),
    ]))

    assert ok["hidden"] is True
    assert failed["hidden"] is False


def test_compaction_events() -> None:
    interp, state = _interpreter()
    state.total_input_tokens = 500

    [compacting] = interp.interpret(SystemStatus(status="compacting"))
    assert state.is_compacting is True
    assert compacting["data"] == {"isCompacting": True}

    [boundary] = interp.interpret(CompactBoundary(trigger="auto", pre_tokens=500))
    assert state.total_input_tokens == 0
    assert boundary["type"] == "compactBoundary"


def test_successful_result_updates_totals() -> None:
    interp, state = _interpreter()

    entries = interp.interpret(ResultEvent(
        subtype="success", session_id="sess-2", total_cost_usd=0.5, num_turns=2,
    ))

    assert [e["type"] for e in entries] == ["output", "result"]
    assert entries[0]["isFinal"] is True
    assert state.session_id == "sess-2"
    assert state.request_count == 1
    assert state.total_cost == pytest.approx(0.5)
    assert interp.failure is None


def test_failed_result_sets_failure_without_cost() -> None:
    interp, state = _interpreter()

    entries = interp.interpret(ResultEvent(
        subtype="error_during_execution", is_error=True, total_cost_usd=0.5,
        errors=["tool crashed"],
    ))

    assert [e["type"] for e in entries] == ["output"]
    assert isinstance(interp.failure, AgentProcessError)
    assert str(interp.failure) == "tool crashed"
    assert state.total_cost == 0.0


def test_result_failure_messages() -> None:
    assert isinstance(
        result_failure(ResultEvent(subtype="success", is_error=True, result="Invalid API key")),
        LoginRequiredError,
    )
    assert str(result_failure(ResultEvent(subtype="error_max_turns"))) == (
        "Agent run failed (error_max_turns)"
    )


def test_reset_clears_run_state() -> None:
    interp, _ = _interpreter()
    interp.interpret(ResultEvent(subtype="error", is_error=True))
    interp.reset()
    assert interp.failure is None
    assert interp.result is None


def test_interpreted_run_replays_to_transcript() -> None:
    interp, _ = _interpreter()
    log = []
    log += interp.interpret(SystemInit(session_id="s"))
    log += interp.interpret(AssistantMessage(
        content=[TextBlock("Checking"), ToolUseBlock(id="t1", name="Bash", input={"command": "ls"})],
        usage=TokenUsage(input_tokens=3, output_tokens=1),
    ))
    log += interp.interpret(UserMessage(content=[ToolResultBlock("t1", "a.py")]))
    log += interp.interpret(AssistantMessage(content=[TextBlock("Done")]))
    log += interp.interpret(ResultEvent(subtype="success", session_id="s"))

    transcript = rebuild_transcript(log)

    assert [e.kind.value for e in transcript] == ["assistant", "toolUse", "toolResult", "assistant"]
    assert transcript[0].usage.input_tokens == 3
    assert transcript[1].status is ToolStatus.COMPLETED
    assert transcript[3].content == "Done"
    assert transcript[3].streaming is False
