"""Persistence of conversation records.

JsonConversationStore keeps one ``<conversation_id>.json`` file per
conversation under a base directory, written atomically.
"""
from __future__ import annotations

import abc
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agentdesk.shared.models.conversation import ConversationRecord

from .durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass
class ConversationSummary:
    conversation_id: str
    title: str
    first_user_message: str
    last_user_message: str
    message_count: int
    total_cost: float
    end_time: datetime


def summarize(record: ConversationRecord) -> ConversationSummary:
    return ConversationSummary(
        conversation_id=record.conversation_id,
        title=record.title,
        first_user_message=record.first_user_message(),
        last_user_message=record.last_user_message(),
        message_count=record.message_count,
        total_cost=record.total_cost,
        end_time=record.end_time,
    )


class ConversationStorage(abc.ABC):
    """Where the scheduler saves and loads conversations."""

    @abc.abstractmethod
    def save(self, record: ConversationRecord) -> None:
        ...

    @abc.abstractmethod
    def load(self, conversation_id: str) -> ConversationRecord | None:
        ...

    @abc.abstractmethod
    def list(self) -> list[ConversationSummary]:
        """Summaries, most recently ended first."""

    @abc.abstractmethod
    def delete(self, conversation_id: str) -> bool:
        ...


class MemoryConversationStore(ConversationStorage):
    def __init__(self) -> None:
        self.records: dict[str, ConversationRecord] = {}

    def save(self, record: ConversationRecord) -> None:
        self.records[record.conversation_id] = ConversationRecord.from_dict(
            json.loads(json.dumps(record.to_dict()))
        )

    def load(self, conversation_id: str) -> ConversationRecord | None:
        return self.records.get(conversation_id)

    def list(self) -> list[ConversationSummary]:
        summaries = [summarize(r) for r in self.records.values()]
        return sorted(summaries, key=lambda s: s.end_time, reverse=True)

    def delete(self, conversation_id: str) -> bool:
        return self.records.pop(conversation_id, None) is not None


class JsonConversationStore(ConversationStorage):
    """One JSON file per conversation."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = Path(base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _path(self, conversation_id: str) -> Path:
        if not _SAFE_ID_RE.match(conversation_id):
            raise ValueError(f"Invalid conversation id: {conversation_id!r}")
        return self._base_dir / f"{conversation_id}.json"

    def save(self, record: ConversationRecord) -> None:
        path = self._path(record.conversation_id)
        atomic_write_json(path, record.to_dict())
        logger.debug("Saved conversation %s (%d entries)", record.conversation_id, record.message_count)

    def load(self, conversation_id: str) -> ConversationRecord | None:
        path = self._path(conversation_id)
        try:
            data = read_json(path)
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load conversation %s", path)
            return None
        if not isinstance(data, dict):
            return None
        data.setdefault("conversationId", conversation_id)
        return ConversationRecord.from_dict(data)

    def list(self) -> list[ConversationSummary]:
        if not self._base_dir.is_dir():
            return []
        summaries = []
        for path in self._base_dir.glob("*.json"):
            record = self.load(path.stem)
            if record is not None:
                summaries.append(summarize(record))
        return sorted(summaries, key=lambda s: s.end_time, reverse=True)

    def delete(self, conversation_id: str) -> bool:
        path = self._path(conversation_id)
        if not path.exists():
            return False
        path.unlink()
        return True
