"""Persistent storage for "always allow" permission patterns.

The JSON file holds a single object:

    {"allowedPatterns": [
        {"toolName": "Bash", "pattern": "npm install *",
         "createdAt": "2025-01-01T12:00:00+00:00"}
    ]}
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from agentdesk.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

FILENAME = "permissions.json"


@dataclass
class PermissionEntry:
    tool_name: str
    pattern: str
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict[str, str]:
        return {
            "toolName": self.tool_name,
            "pattern": self.pattern,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> PermissionEntry | None:
        tool = data.get("toolName")
        pattern = data.get("pattern")
        if not isinstance(tool, str) or not isinstance(pattern, str):
            return None
        created = datetime.now(timezone.utc)
        raw = data.get("createdAt")
        if isinstance(raw, str):
            try:
                created = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError:
                pass
        return cls(tool_name=tool, pattern=pattern, created_at=created)


class PermissionStorage(abc.ABC):
    """Where the permission cache keeps its patterns."""

    @abc.abstractmethod
    def load(self) -> list[PermissionEntry]:
        """Return every stored entry."""

    @abc.abstractmethod
    def save(self, entries: list[PermissionEntry]) -> None:
        """Replace the stored entries."""


class MemoryPermissionStore(PermissionStorage):
    """Non-persistent storage, used by tests and throwaway sessions."""

    def __init__(self, entries: list[PermissionEntry] | None = None) -> None:
        self._entries = list(entries or [])
        self.save_count = 0

    def load(self) -> list[PermissionEntry]:
        return list(self._entries)

    def save(self, entries: list[PermissionEntry]) -> None:
        self._entries = list(entries)
        self.save_count += 1


class JsonPermissionStore(PermissionStorage):
    """Load and save permission patterns in a JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[PermissionEntry]:
        try:
            data = read_json(self._path)
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", self._path)
            return []
        if not isinstance(data, dict):
            return []
        entries = []
        for item in data.get("allowedPatterns") or []:
            entry = PermissionEntry.from_dict(item) if isinstance(item, dict) else None
            if entry is None:
                logger.warning("Skipping malformed permission entry in %s: %r", self._path, item)
                continue
            entries.append(entry)
        return entries

    def save(self, entries: list[PermissionEntry]) -> None:
        try:
            atomic_write_json(
                self._path,
                {"allowedPatterns": [e.to_dict() for e in entries]},
            )
        except OSError:
            logger.warning("Failed to write %s", self._path)
