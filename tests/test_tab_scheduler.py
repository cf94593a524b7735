from __future__ import annotations

import asyncio
from typing import Any

import pytest

from agentdesk.engine.config import EngineConfig
from agentdesk.engine.control import PendingControlRequest
from agentdesk.engine.errors import (
    AgentProcessError,
    ConversationBusyError,
    ConversationLimitError,
    ConversationNotFoundError,
)
from agentdesk.engine.protocol import (
    AssistantMessage,
    ResultEvent,
    SystemInit,
    SystemStatus,
    TextBlock,
)
from agentdesk.engine.scheduler import DEFAULT_TITLE, ExclusivityToken, TabScheduler
from agentdesk.engine.supervisor import ImageAttachment, TurnOptions
from agentdesk.shared.models.conversation import (
    AssistantEntry,
    ConversationRecord,
    UserEntry,
)
from agentdesk.shared.services.conversation_store import (
    JsonConversationStore,
    MemoryConversationStore,
)

WAIT = "wait"


class FakeSupervisor:
    """Plays back a scripted run and reports end/error like the real one."""

    def __init__(self) -> None:
        self.channels = None
        self.script: list[Any] = []
        self.error: AgentProcessError | None = None
        self.gate = asyncio.Event()
        self.sent: list[tuple] = []
        self.stop_calls = 0
        self.pending: dict[str, PendingControlRequest] = {}
        self.responses: list[tuple[str, bool, bool]] = []
        self._stopped = False

    def subscribe(self, channels) -> None:
        self.channels = channels

    async def send(self, payload, options, session_id=None):
        self.sent.append((payload, options, session_id))
        self._stopped = False
        for item in list(self.script):
            if self._stopped:
                return
            if item == WAIT:
                await self.gate.wait()
                continue
            if isinstance(item, PendingControlRequest):
                self.pending[item.request_id] = item
                await self.channels.on_control_request(item)
                continue
            yield item
        if self._stopped:
            return
        if self.error is not None:
            await self.channels.on_error(self.error)
        await self.channels.on_end()

    async def stop(self) -> None:
        self.stop_calls += 1
        self._stopped = True
        self.pending.clear()
        self.gate.set()

    async def respond_to_control(self, request_id, approved, always_allow=False) -> bool:
        if self.pending.pop(request_id, None) is None:
            return False
        self.responses.append((request_id, approved, always_allow))
        return True


class EventLog:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def __call__(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def names(self, conversation_id: str | None = None) -> list[str]:
        return [
            e["event"] for e in self.events
            if conversation_id is None or e["conversation_id"] == conversation_id
        ]

    def of(self, name: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["event"] == name]


def _ok_run(text: str = "Hi there", session_id: str = "sess-1") -> list[Any]:
    return [
        SystemInit(session_id=session_id),
        AssistantMessage(content=[TextBlock(text)]),
        ResultEvent(subtype="success", session_id=session_id, total_cost_usd=0.1),
    ]


def _request(request_id: str, tool: str = "Bash") -> PendingControlRequest:
    return PendingControlRequest(
        request_id=request_id, tool_name=tool,
        input={"command": "npm test"}, pattern="npm test *",
    )


@pytest.fixture
def fake() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def events() -> EventLog:
    return EventLog()


@pytest.fixture
def store() -> MemoryConversationStore:
    return MemoryConversationStore()


@pytest.fixture
def scheduler(fake, events, store) -> TabScheduler:
    config = EngineConfig(max_conversations=3, permission_hint_threshold=2)
    return TabScheduler(fake, storage=store, config=config, event_callback=events)


async def _until(predicate, timeout: float = 2.0) -> None:
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


def _record(*texts: str, conversation_id: str = "conv-1", title: str = "") -> ConversationRecord:
    messages = []
    ts = 1
    for text in texts:
        messages.append({"type": "userInput", "data": text, "timestamp": ts})
        messages.append({"type": "output", "data": f"re: {text}", "isFinal": True, "timestamp": ts + 1})
        ts += 2
    return ConversationRecord(
        conversation_id=conversation_id, title=title, session_id="sess-old",
        total_cost=1.5, total_input_tokens=10, total_output_tokens=20,
        messages=messages,
    )


# ── Turns ──


@pytest.mark.asyncio
async def test_turn_builds_transcript_and_saves(scheduler, fake, events, store) -> None:
    conv = scheduler.create_conversation()
    fake.script = _ok_run()

    assert await scheduler.send_message(conv.id, "hello") is True

    assert conv.title == "hello"
    assert conv.session_id == "sess-1"
    assert [type(e) for e in conv.transcript] == [UserEntry, AssistantEntry]
    assert conv.transcript[1].content == "Hi there"
    assert conv.transcript[1].streaming is False
    assert conv.state.request_count == 1
    assert conv.state.is_processing is False
    assert scheduler.processing_id is None

    names = events.names(conv.id)
    assert names[0] == "transcript_updated"
    assert names[1] == "turn_started"
    assert names.count("session_assigned") == 1
    assert names[-1] == "turn_finished"
    [finished] = events.of("turn_finished")
    assert finished["success"] is True
    assert finished["total_cost"] == pytest.approx(0.1)

    saved = store.load(conv.id)
    assert saved.session_id == "sess-1"
    assert saved.messages[0]["data"] == "hello"


@pytest.mark.asyncio
async def test_next_turn_resumes_session(scheduler, fake) -> None:
    conv = scheduler.create_conversation()
    fake.script = _ok_run()
    await scheduler.send_message(conv.id, "first")
    await scheduler.send_message(conv.id, "second")

    assert [session for _, _, session in fake.sent] == [None, "sess-1"]
    assert conv.title == "first"


@pytest.mark.asyncio
async def test_long_first_message_title_is_truncated(scheduler, fake) -> None:
    conv = scheduler.create_conversation()
    fake.script = _ok_run()
    await scheduler.send_message(conv.id, "x" * 40)
    assert conv.title == "x" * 30 + "..."


@pytest.mark.asyncio
async def test_images_are_sent_and_logged(scheduler, fake) -> None:
    conv = scheduler.create_conversation()
    fake.script = _ok_run()
    image = ImageAttachment(media_type="image/png", data="AAAA")

    await scheduler.send_message(conv.id, "look", images=[image])

    payload, _, _ = fake.sent[0]
    assert payload.images == [image]
    assert conv.transcript[0].images == ["data:image/png;base64,AAAA"]


@pytest.mark.asyncio
async def test_only_one_conversation_drives_the_agent(scheduler, fake, events) -> None:
    a = scheduler.create_conversation()
    b = scheduler.create_conversation()
    fake.script = [SystemInit(session_id="sess-a"), WAIT, *_ok_run("for a", "sess-a")[1:]]

    turn = asyncio.create_task(scheduler.send_message(a.id, "go"))
    await _until(lambda: a.session_id == "sess-a")

    assert scheduler.processing_id == a.id
    assert scheduler.try_send(b.id) is False
    assert await scheduler.send_message(b.id, "me too") is False
    with pytest.raises(ConversationBusyError):
        await scheduler.run_turn(b.id, "sneak")

    fake.gate.set()
    assert await asyncio.wait_for(turn, timeout=2) is True

    assert b.log == []
    assert "transcript_updated" not in events.names(b.id)
    assert a.transcript[-1].content == "for a"
    assert scheduler.processing_id is None
    assert scheduler.try_send(b.id) is True


@pytest.mark.asyncio
async def test_compaction_notifications(scheduler, fake, events) -> None:
    conv = scheduler.create_conversation()
    fake.script = [SystemStatus(status="compacting"), SystemStatus(status=None), *_ok_run()]

    await scheduler.send_message(conv.id, "hi")

    assert [e["is_compacting"] for e in events.of("compaction_changed")] == [True, False]


@pytest.mark.asyncio
async def test_stop_finishes_turn_and_ignores_late_events(scheduler, fake, events) -> None:
    conv = scheduler.create_conversation()
    fake.script = [SystemInit(session_id="s"), WAIT, AssistantMessage(content=[TextBlock("late")])]

    turn = asyncio.create_task(scheduler.send_message(conv.id, "go"))
    await _until(lambda: conv.session_id == "s")

    await scheduler.stop()
    await asyncio.wait_for(turn, timeout=2)

    assert fake.stop_calls == 1
    assert scheduler.processing_id is None
    assert conv.state.is_processing is False
    assert [type(e) for e in conv.transcript] == [UserEntry]
    [finished] = events.of("turn_finished")
    assert finished["stopped"] is True
    assert finished["success"] is False


@pytest.mark.asyncio
async def test_stop_without_turn_is_harmless(scheduler, fake, events) -> None:
    await scheduler.stop()
    assert fake.stop_calls == 1
    assert events.of("turn_finished") == []


# ── Failures ──


@pytest.mark.asyncio
async def test_failure_is_reported_once_per_turn(scheduler, fake, events) -> None:
    conv = scheduler.create_conversation()
    fake.script = [ResultEvent(subtype="error_during_execution", is_error=True, result="boom")]
    fake.error = AgentProcessError("Permission denied writing /etc/hosts", exit_code=1)

    await scheduler.send_message(conv.id, "go")

    [failed] = events.of("agent_failed")
    assert failed["category"] == "process_error"
    assert failed["message"] == "Permission denied writing /etc/hosts"
    errors = [e for e in conv.log if e["type"] == "error"]
    assert len(errors) == 1
    assert len(events.of("permission_hint")) == 1
    [finished] = events.of("turn_finished")
    assert finished["success"] is False
    assert scheduler.processing_id is None


@pytest.mark.asyncio
async def test_error_result_without_process_error(scheduler, fake, events) -> None:
    conv = scheduler.create_conversation()
    fake.script = [ResultEvent(subtype="error_max_turns", is_error=True)]

    await scheduler.send_message(conv.id, "go")

    [failed] = events.of("agent_failed")
    assert failed["message"] == "Agent run failed (error_max_turns)"
    assert events.of("permission_hint") == []
    assert conv.transcript[-1].content == "Agent run failed (error_max_turns)"


@pytest.mark.asyncio
async def test_failure_flag_resets_for_next_turn(scheduler, fake, events) -> None:
    conv = scheduler.create_conversation()
    fake.script = []
    fake.error = AgentProcessError("crashed", exit_code=2)
    await scheduler.send_message(conv.id, "one")
    await scheduler.send_message(conv.id, "two")

    assert len(events.of("agent_failed")) == 2


# ── Permissions ──


@pytest.mark.asyncio
async def test_permission_prompt_and_response(scheduler, fake, events) -> None:
    conv = scheduler.create_conversation()
    fake.script = [_request("req-1"), WAIT, *_ok_run()]

    turn = asyncio.create_task(scheduler.send_message(conv.id, "test it"))
    await _until(lambda: events.of("permission_prompt"))

    [prompt] = events.of("permission_prompt")
    assert prompt["conversation_id"] == conv.id
    assert prompt["tool_name"] == "Bash"
    assert prompt["pattern"] == "npm test *"
    assert any(e["type"] == "permissionRequest" for e in conv.log)

    assert await scheduler.respond("req-1", approved=True, always_allow=True) is True
    assert await scheduler.respond("req-1", approved=True) is False
    assert fake.responses == [("req-1", True, True)]
    [resolved] = events.of("permission_resolved")
    assert resolved["always_allow"] is True

    fake.gate.set()
    await asyncio.wait_for(turn, timeout=2)


@pytest.mark.asyncio
async def test_repeated_denials_suggest_auto_approve_once(scheduler, fake, events) -> None:
    conv = scheduler.create_conversation()
    fake.script = [_request("r1"), _request("r2"), _request("r3"), WAIT, *_ok_run()]

    turn = asyncio.create_task(scheduler.send_message(conv.id, "go"))
    await _until(lambda: len(events.of("permission_prompt")) == 3)
    for request_id in ("r1", "r2", "r3"):
        await scheduler.respond(request_id, approved=False)
    fake.gate.set()
    await asyncio.wait_for(turn, timeout=2)

    [hint] = events.of("permission_hint")
    assert hint["conversation_id"] == conv.id
    assert conv.denials == 3


@pytest.mark.asyncio
async def test_no_hint_when_auto_approve_is_on(scheduler, fake, events) -> None:
    conv = scheduler.create_conversation()
    fake.script = [_request("r1", "AskUserQuestion"), _request("r2", "AskUserQuestion"), WAIT, *_ok_run()]

    turn = asyncio.create_task(
        scheduler.send_message(conv.id, "go", options=TurnOptions(auto_approve=True))
    )
    await _until(lambda: len(events.of("permission_prompt")) == 2)
    await scheduler.respond("r1", approved=False)
    await scheduler.respond("r2", approved=False)
    fake.gate.set()
    await asyncio.wait_for(turn, timeout=2)

    assert events.of("permission_hint") == []


# ── Conversation management ──


def test_conversation_limit(scheduler) -> None:
    for _ in range(3):
        scheduler.create_conversation()
    with pytest.raises(ConversationLimitError):
        scheduler.create_conversation()


def test_unknown_conversation(scheduler) -> None:
    with pytest.raises(ConversationNotFoundError):
        scheduler.get("nope")
    with pytest.raises(ConversationNotFoundError):
        scheduler.try_send("nope")


def test_load_conversation_replays_log(scheduler) -> None:
    long_text = "please refactor the whole billing module"
    conv = scheduler.load_conversation(_record(long_text, "then test"))

    assert conv.id == "conv-1"
    assert conv.title == long_text[:30] + "..."
    assert conv.session_id == "sess-old"
    assert conv.state.total_cost == pytest.approx(1.5)
    assert [e.content for e in conv.transcript] == [
        long_text, f"re: {long_text}", "then test", "re: then test",
    ]


def test_load_conversation_keeps_stored_title(scheduler) -> None:
    conv = scheduler.load_conversation(_record("hi", title="Billing"))
    assert conv.title == "Billing"


def test_load_from_storage(scheduler, store) -> None:
    store.save(_record("hello", conversation_id="stored"))
    assert scheduler.load_from_storage("stored").transcript[0].content == "hello"
    with pytest.raises(ConversationNotFoundError):
        scheduler.load_from_storage("missing")


def test_loading_an_open_conversation_returns_it(scheduler, store) -> None:
    first = scheduler.load_conversation(_record("hello"))
    first.title = "Renamed"

    again = scheduler.load_conversation(_record("hello", "more"))

    assert again is first
    assert [c.id for c in scheduler.conversations()] == ["conv-1"]
    assert again.title == "Renamed"
    scheduler.save(again)
    assert [s.conversation_id for s in store.list()] == ["conv-1"]


@pytest.mark.parametrize("bad_id", ["../x", "a/b", ""])
def test_load_from_storage_with_unusable_id_is_not_found(fake, tmp_path, bad_id: str) -> None:
    scheduler = TabScheduler(fake, storage=JsonConversationStore(tmp_path), config=EngineConfig())
    with pytest.raises(ConversationNotFoundError):
        scheduler.load_from_storage(bad_id)


def test_rewind_truncates_after_user_input(scheduler) -> None:
    conv = scheduler.load_conversation(_record("one", "two", "three"))

    assert scheduler.rewind(conv.id, 1) is True

    assert [e["type"] for e in conv.log] == ["userInput", "output", "userInput"]
    assert conv.log[-1]["data"] == "two"
    assert conv.session_id is None
    assert [e.content for e in conv.transcript] == ["one", "re: one", "two"]
    assert scheduler.rewind(conv.id, 7) is False


def test_rewind_refused_while_processing(scheduler) -> None:
    conv = scheduler.load_conversation(_record("one"))
    assert scheduler.try_send(conv.id) is True
    with pytest.raises(ConversationBusyError):
        scheduler.rewind(conv.id, 0)


def test_fork_copies_prefix(scheduler) -> None:
    source = scheduler.load_conversation(_record("one", "two"))

    fork = scheduler.fork(source.id, 1)

    assert fork is not None
    assert fork.id != source.id
    assert fork.title == "two (fork)"
    assert fork.session_id is None
    assert [e["data"] for e in fork.log] == ["one", "re: one", "two"]
    fork.log[0]["data"] = "changed"
    assert source.log[0]["data"] == "one"
    assert len(source.log) == 4
    assert scheduler.fork(source.id, 5) is None


def test_fork_title_is_truncated(scheduler) -> None:
    source = scheduler.load_conversation(_record("a" * 40))
    assert scheduler.fork(source.id, 0).title == "a" * 25 + "... (fork)"


def test_fork_respects_limit(scheduler) -> None:
    source = scheduler.load_conversation(_record("one"))
    scheduler.create_conversation()
    scheduler.create_conversation()
    with pytest.raises(ConversationLimitError):
        scheduler.fork(source.id, 0)


@pytest.mark.asyncio
async def test_new_session_saves_and_resets(scheduler, store) -> None:
    conv = scheduler.load_conversation(_record("one"))

    await scheduler.new_session(conv.id)

    assert conv.log == []
    assert conv.transcript == []
    assert conv.session_id is None
    assert conv.state.total_cost == 0.0
    assert conv.title == DEFAULT_TITLE
    assert store.load("conv-1").message_count == 2


@pytest.mark.asyncio
async def test_close_conversation_stops_its_turn(scheduler, fake, store) -> None:
    conv = scheduler.create_conversation()
    fake.script = [SystemInit(session_id="s"), WAIT]
    turn = asyncio.create_task(scheduler.send_message(conv.id, "go"))
    await _until(lambda: conv.session_id == "s")

    await scheduler.close_conversation(conv.id)
    await asyncio.wait_for(turn, timeout=2)

    assert fake.stop_calls == 1
    assert scheduler.processing_id is None
    assert store.load(conv.id) is not None
    with pytest.raises(ConversationNotFoundError):
        scheduler.get(conv.id)


@pytest.mark.asyncio
async def test_close_idle_conversation_leaves_agent_alone(scheduler, fake) -> None:
    conv = scheduler.create_conversation()
    await scheduler.close_conversation(conv.id)
    assert fake.stop_calls == 0
    assert scheduler.conversations() == []


def test_empty_conversations_are_not_saved(scheduler, store) -> None:
    scheduler.save(scheduler.create_conversation())
    assert store.records == {}


def test_exclusivity_token() -> None:
    token = ExclusivityToken()
    assert token.acquire("a") is True
    assert token.acquire("b") is False
    assert token.release("b") is False
    assert token.owner == "a"
    assert token.release() is True
    assert token.is_held is False
    assert token.release() is False
