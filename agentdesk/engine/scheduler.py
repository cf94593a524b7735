"""Tab scheduler: many conversations, one agent process.

Each open conversation owns a log, a reducer and a SessionState, but all
of them share a single ProcessSupervisor. The ExclusivityToken records
which conversation is driving the agent; only that conversation receives
agent events, and nobody else may start a turn until it is released on
process end, error or stop.
"""
from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from agentdesk.shared.models.conversation import (
    ConversationEntry,
    ConversationRecord,
    LogType,
    make_log_entry,
)
from agentdesk.shared.services.conversation_store import ConversationStorage

from .config import EngineConfig, EventCallback, fire_event
from .control import PendingControlRequest
from .errors import (
    AgentProcessError,
    ConversationBusyError,
    ConversationLimitError,
    ConversationNotFoundError,
)
from .interpreter import StreamInterpreter
from .protocol import SystemStatus
from .reducer import ConversationReducer
from .session_state import SessionState
from .supervisor import (
    ImageAttachment,
    ProcessSupervisor,
    SupervisorChannels,
    TurnOptions,
    TurnPayload,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
PERMISSION_HINT = "Tip: enable auto-approve to skip permission prompts."


def _gen_conversation_id() -> str:
    return uuid.uuid4().hex[:12]


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


@dataclass
class Conversation:
    """One tab: its persisted log plus the state derived from it."""
    id: str
    title: str = DEFAULT_TITLE
    log: list[dict[str, Any]] = field(default_factory=list)
    state: SessionState = field(default_factory=SessionState)
    reducer: ConversationReducer = field(default_factory=ConversationReducer)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    interpreter: StreamInterpreter | None = None
    # Per-turn bookkeeping
    turn_active: bool = False
    failure_reported: bool = False
    denials: int = 0
    hint_sent: bool = False

    @property
    def transcript(self) -> list[ConversationEntry]:
        return self.reducer.transcript

    @property
    def session_id(self) -> str | None:
        return self.state.session_id

    def append(self, entries: Sequence[dict[str, Any]]) -> None:
        for entry in entries:
            self.log.append(entry)
            self.reducer.apply(entry)

    def replay(self) -> None:
        """Rebuild the transcript from the log."""
        self.reducer = ConversationReducer()
        self.reducer.apply_all(self.log)
        self.reducer.finish()

    def user_input_position(self, user_input_index: int) -> int:
        """Log position of the n-th user input, or -1."""
        count = -1
        for position, entry in enumerate(self.log):
            if entry.get("type") == LogType.USER_INPUT.value:
                count += 1
                if count == user_input_index:
                    return position
        return -1

    def to_record(self) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=self.id,
            title=self.title,
            session_id=self.state.session_id,
            total_cost=self.state.total_cost,
            total_input_tokens=self.state.total_input_tokens,
            total_output_tokens=self.state.total_output_tokens,
            start_time=self.started_at,
            end_time=datetime.now(timezone.utc),
            messages=list(self.log),
        )


class ExclusivityToken:
    """Which conversation currently drives the agent process."""

    def __init__(self) -> None:
        self._owner: str | None = None

    @property
    def owner(self) -> str | None:
        return self._owner

    @property
    def is_held(self) -> bool:
        return self._owner is not None

    def acquire(self, conversation_id: str) -> bool:
        if self._owner is not None:
            return False
        self._owner = conversation_id
        return True

    def release(self, conversation_id: str | None = None) -> bool:
        """Release the token; with an id, only if that conversation holds it."""
        if self._owner is None:
            return False
        if conversation_id is not None and conversation_id != self._owner:
            return False
        self._owner = None
        return True


class TabScheduler:
    """Open conversations sharing one supervised agent process."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        storage: ConversationStorage | None = None,
        config: EngineConfig | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._supervisor = supervisor
        self._storage = storage
        self._event_callback = event_callback or self._config.event_callback
        self._conversations: dict[str, Conversation] = {}
        self._token = ExclusivityToken()
        self._turn_options: TurnOptions | None = None
        supervisor.subscribe(SupervisorChannels(
            on_end=self._on_process_end,
            on_error=self._on_process_error,
            on_control_request=self._on_control_request,
        ))

    # ── Conversations ──

    @property
    def processing_id(self) -> str | None:
        return self._token.owner

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    def conversations(self) -> list[Conversation]:
        return list(self._conversations.values())

    def get(self, conversation_id: str) -> Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise ConversationNotFoundError(conversation_id)
        return conv

    def create_conversation(
        self, title: str = DEFAULT_TITLE, conversation_id: str | None = None,
    ) -> Conversation:
        if len(self._conversations) >= self._config.max_conversations:
            raise ConversationLimitError(self._config.max_conversations)
        if conversation_id is None or conversation_id in self._conversations:
            conversation_id = _gen_conversation_id()
        conv = Conversation(id=conversation_id, title=title)
        conv.state.selected_model = self._config.selected_model
        conv.interpreter = StreamInterpreter(
            conv.state, self._config.hidden_result_tools,
        )
        self._conversations[conv.id] = conv
        logger.info("Opened conversation %s", conv.id)
        return conv

    async def close_conversation(self, conversation_id: str) -> None:
        conv = self.get(conversation_id)
        self.save(conv)
        if self._token.owner == conversation_id:
            await self.stop()
        del self._conversations[conversation_id]
        logger.info("Closed conversation %s", conversation_id)

    async def new_session(self, conversation_id: str) -> Conversation:
        """Save the conversation, then start it over with a fresh agent session."""
        conv = self.get(conversation_id)
        self.save(conv)
        if self._token.owner == conversation_id:
            await self.stop()
        conv.log = []
        conv.reducer = ConversationReducer()
        conv.state.reset_session()
        conv.title = DEFAULT_TITLE
        conv.started_at = datetime.now(timezone.utc)
        return conv

    def load_conversation(self, record: ConversationRecord) -> Conversation:
        """Open a persisted conversation and replay its log.

        A conversation that is already open is returned as is.
        """
        existing = self._conversations.get(record.conversation_id)
        if existing is not None:
            logger.info("Conversation %s is already open", existing.id)
            return existing
        conv = self.create_conversation(conversation_id=record.conversation_id)
        conv.log = [dict(entry) for entry in record.messages]
        conv.state.restore_from(record)
        conv.started_at = record.start_time
        first = record.first_user_message()
        conv.title = record.title or (_truncate(first, 30) if first else DEFAULT_TITLE)
        conv.replay()
        return conv

    def load_from_storage(self, conversation_id: str) -> Conversation:
        if self._storage is None:
            raise ConversationNotFoundError(conversation_id)
        try:
            record = self._storage.load(conversation_id)
        except ValueError:
            raise ConversationNotFoundError(conversation_id) from None
        if record is None:
            raise ConversationNotFoundError(conversation_id)
        return self.load_conversation(record)

    def rewind(self, conversation_id: str, user_input_index: int) -> bool:
        """Drop everything after the n-th user input and forget the agent session."""
        conv = self.get(conversation_id)
        if self._token.owner == conversation_id:
            raise ConversationBusyError(conversation_id, "rewind")
        position = conv.user_input_position(user_input_index)
        if position == -1:
            return False
        conv.log = conv.log[:position + 1]
        conv.state.session_id = None
        conv.replay()
        logger.info("Rewound conversation %s to log position %d", conversation_id, position)
        return True

    def fork(self, conversation_id: str, user_input_index: int) -> Conversation | None:
        """Open a new conversation holding the log up to the n-th user input."""
        source = self.get(conversation_id)
        if len(self._conversations) >= self._config.max_conversations:
            raise ConversationLimitError(self._config.max_conversations)
        position = source.user_input_position(user_input_index)
        if position == -1:
            return None
        forked_log = copy.deepcopy(source.log[:position + 1])
        target = forked_log[position].get("data")
        if isinstance(target, dict):
            target = target.get("text")
        text = target if isinstance(target, str) and target else "Fork"
        conv = self.create_conversation(title=_truncate(text, 25) + " (fork)")
        conv.log = forked_log
        conv.replay()
        logger.info("Forked conversation %s into %s", conversation_id, conv.id)
        return conv

    def save(self, conv: Conversation) -> None:
        if self._storage is None or not conv.log:
            return
        try:
            self._storage.save(conv.to_record())
        except OSError as exc:
            logger.warning("Failed to save conversation %s: %s", conv.id, exc)

    # ── Turns ──

    def try_send(self, conversation_id: str) -> bool:
        """Claim the agent for a conversation if nobody holds it."""
        conv = self.get(conversation_id)
        if conv.state.is_processing:
            return False
        return self._token.acquire(conversation_id)

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        images: Sequence[ImageAttachment] = (),
        options: TurnOptions | None = None,
    ) -> bool:
        """Run a turn if the agent is free. Returns False when it is busy."""
        if not self.try_send(conversation_id):
            logger.info(
                "Conversation %s cannot send: agent held by %s",
                conversation_id, self._token.owner,
            )
            return False
        await self.run_turn(conversation_id, text, images, options)
        return True

    async def run_turn(
        self,
        conversation_id: str,
        text: str,
        images: Sequence[ImageAttachment] = (),
        options: TurnOptions | None = None,
    ) -> None:
        """Drive one turn for the conversation holding the exclusivity token."""
        conv = self.get(conversation_id)
        if self._token.owner != conversation_id:
            raise ConversationBusyError(conversation_id, "send from")

        if options is None:
            options = TurnOptions.from_config(self._config, model=conv.state.selected_model)
        self._turn_options = options

        if conv.title == DEFAULT_TITLE:
            conv.title = _truncate(text, 30)
        conv.turn_active = True
        conv.failure_reported = False
        conv.denials = 0
        conv.hint_sent = False
        conv.state.is_processing = True
        conv.interpreter.reset()

        user_entry = make_log_entry(
            LogType.USER_INPUT,
            data=text,
            images=[image.to_data_url() for image in images],
        )
        await self._append(conv, [user_entry])
        await self._emit("turn_started", conv.id, text=text)

        try:
            async for event in self._supervisor.send(
                TurnPayload(text=text, images=list(images)),
                options,
                session_id=conv.state.session_id,
            ):
                if self._token.owner != conv.id or not conv.turn_active:
                    continue
                previous_session = conv.state.session_id
                entries = conv.interpreter.interpret(event)
                await self._append(conv, entries)
                if conv.state.session_id and conv.state.session_id != previous_session:
                    await self._emit("session_assigned", conv.id, session_id=conv.state.session_id)
                if isinstance(event, SystemStatus):
                    await self._emit("compaction_changed", conv.id, is_compacting=event.compacting)
        finally:
            if conv.turn_active:
                # The stream ended without an end notification.
                await self._finish_turn(conv)

    async def stop(self) -> None:
        """Abort the running turn. Pending permission requests are dropped."""
        owner = self._token.owner
        conv = self._conversations.get(owner) if owner else None
        # Finish first so events still in flight are ignored.
        if conv is not None and conv.turn_active:
            await self._finish_turn(conv, stopped=True)
        await self._supervisor.stop()
        self._token.release(owner)

    async def respond(
        self, request_id: str, approved: bool, always_allow: bool = False,
    ) -> bool:
        """Answer a permission prompt. Late or unknown ids are a no-op."""
        answered = await self._supervisor.respond_to_control(
            request_id, approved, always_allow,
        )
        if not answered:
            return False
        conv = self._owner()
        conv_id = conv.id if conv else None
        await self._emit(
            "permission_resolved", conv_id,
            request_id=request_id, approved=approved, always_allow=always_allow,
        )
        if conv is not None and not approved:
            conv.denials += 1
            if conv.denials >= self._config.permission_hint_threshold:
                await self._maybe_hint(conv)
        return True

    # ── Supervisor notifications ──

    def _owner(self) -> Conversation | None:
        owner = self._token.owner
        return self._conversations.get(owner) if owner else None

    async def _on_control_request(self, pending: PendingControlRequest) -> None:
        conv = self._owner()
        if conv is None:
            logger.warning("Permission request %s with no owning conversation", pending.request_id)
            return
        await self._append(conv, [make_log_entry(
            LogType.PERMISSION_REQUEST, data=pending.to_dict(),
        )])
        await self._emit(
            "permission_prompt", conv.id,
            request_id=pending.request_id,
            tool_name=pending.tool_name,
            input=pending.input,
            pattern=pending.pattern,
            suggestions=pending.suggestions,
            decision_reason=pending.decision_reason,
            blocked_path=pending.blocked_path,
        )

    async def _on_process_error(self, error: AgentProcessError) -> None:
        conv = self._owner()
        if conv is None:
            logger.error("Agent error with no owning conversation: %s", error)
            return
        await self._report_failure(conv, error)

    async def _on_process_end(self) -> None:
        conv = self._owner()
        if conv is None:
            return
        if conv.interpreter.failure is not None:
            await self._report_failure(conv, conv.interpreter.failure)
        await self._finish_turn(conv)

    # ── Internals ──

    async def _report_failure(self, conv: Conversation, error: AgentProcessError) -> None:
        if conv.failure_reported:
            return
        conv.failure_reported = True
        await self._append(conv, [make_log_entry(
            LogType.ERROR, message=str(error), category=error.category.value,
        )])
        await self._emit(
            "agent_failed", conv.id,
            category=error.category.value, message=str(error),
        )
        if error.mentions_permissions:
            await self._maybe_hint(conv)

    async def _maybe_hint(self, conv: Conversation) -> None:
        auto_approve = (
            self._turn_options.auto_approve if self._turn_options else self._config.auto_approve
        )
        if auto_approve or conv.hint_sent:
            return
        conv.hint_sent = True
        await self._emit("permission_hint", conv.id, message=PERMISSION_HINT)

    async def _finish_turn(self, conv: Conversation, stopped: bool = False) -> None:
        conv.turn_active = False
        conv.state.is_processing = False
        conv.state.is_compacting = False
        conv.reducer.finish()
        self._token.release(conv.id)
        self.save(conv)
        await self._emit(
            "turn_finished", conv.id,
            success=not stopped and not conv.failure_reported,
            stopped=stopped,
            total_cost=conv.state.total_cost,
            request_count=conv.state.request_count,
        )

    async def _append(self, conv: Conversation, entries: list[dict[str, Any]]) -> None:
        if not entries:
            return
        conv.append(entries)
        await self._emit("transcript_updated", conv.id, entries=entries)

    async def _emit(self, event: str, conversation_id: str | None, **fields: Any) -> None:
        await fire_event(
            self._event_callback,
            {"event": event, "conversation_id": conversation_id, **fields},
        )
