"""Permission pattern cache.

Remembers "always allow" decisions as (tool, pattern) pairs so later
permission requests for similar input are approved without asking.
Bash commands are generalized with COMMAND_PATTERNS before being
stored ("npm install lodash" -> "npm install *"); file and search tools
store their subject verbatim.

Patterns use ``*`` as the only wildcard; every other character is
literal.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from agentdesk.adapters.permission_store import PermissionEntry, PermissionStorage

logger = logging.getLogger(__name__)

# (first word, subcommand, stored pattern). First match wins; an empty
# subcommand matches any second token.
COMMAND_PATTERNS: tuple[tuple[str, str, str], ...] = (
    # Package managers
    ("npm", "install", "npm install *"),
    ("npm", "i", "npm i *"),
    ("npm", "add", "npm add *"),
    ("npm", "remove", "npm remove *"),
    ("npm", "uninstall", "npm uninstall *"),
    ("npm", "update", "npm update *"),
    ("npm", "run", "npm run *"),
    ("npm", "test", "npm test *"),
    ("npx", "", "npx *"),
    ("yarn", "add", "yarn add *"),
    ("yarn", "remove", "yarn remove *"),
    ("yarn", "install", "yarn install *"),
    ("pnpm", "install", "pnpm install *"),
    ("pnpm", "add", "pnpm add *"),
    ("pnpm", "remove", "pnpm remove *"),
    ("bun", "install", "bun install *"),
    ("bun", "add", "bun add *"),
    # Git
    ("git", "add", "git add *"),
    ("git", "commit", "git commit *"),
    ("git", "push", "git push *"),
    ("git", "pull", "git pull *"),
    ("git", "checkout", "git checkout *"),
    ("git", "branch", "git branch *"),
    ("git", "merge", "git merge *"),
    ("git", "clone", "git clone *"),
    ("git", "reset", "git reset *"),
    ("git", "rebase", "git rebase *"),
    ("git", "tag", "git tag *"),
    ("git", "diff", "git diff *"),
    ("git", "log", "git log *"),
    ("git", "status", "git status"),
    # Docker
    ("docker", "run", "docker run *"),
    ("docker", "build", "docker build *"),
    ("docker", "exec", "docker exec *"),
    ("docker", "logs", "docker logs *"),
    ("docker", "stop", "docker stop *"),
    ("docker", "start", "docker start *"),
    ("docker", "rm", "docker rm *"),
    ("docker", "rmi", "docker rmi *"),
    ("docker", "pull", "docker pull *"),
    ("docker", "push", "docker push *"),
    # Build tools
    ("make", "", "make *"),
    ("cargo", "build", "cargo build *"),
    ("cargo", "run", "cargo run *"),
    ("cargo", "test", "cargo test *"),
    ("cargo", "install", "cargo install *"),
    ("mvn", "compile", "mvn compile *"),
    ("mvn", "test", "mvn test *"),
    ("mvn", "package", "mvn package *"),
    ("gradle", "build", "gradle build *"),
    ("gradle", "test", "gradle test *"),
    ("go", "build", "go build *"),
    ("go", "test", "go test *"),
    # Shell utilities
    ("curl", "", "curl *"),
    ("wget", "", "wget *"),
    ("ssh", "", "ssh *"),
    ("scp", "", "scp *"),
    ("rsync", "", "rsync *"),
    ("tar", "", "tar *"),
    ("zip", "", "zip *"),
    ("unzip", "", "unzip *"),
    ("mkdir", "", "mkdir *"),
    ("cat", "", "cat *"),
    ("ls", "", "ls *"),
    ("cd", "", "cd *"),
    # Runtimes
    ("node", "", "node *"),
    ("python", "", "python *"),
    ("python3", "", "python3 *"),
    ("pip", "install", "pip install *"),
    ("pip3", "install", "pip3 install *"),
    ("composer", "install", "composer install *"),
    ("composer", "require", "composer require *"),
    ("bundle", "install", "bundle install *"),
    ("gem", "install", "gem install *"),
)

_FILE_TOOLS = {"Read", "Write", "Edit", "MultiEdit"}
_SEARCH_TOOLS = {"Glob", "Grep"}


def generalize_command(command: str) -> str:
    """Return the wildcard pattern stored for an approved Bash command."""
    parts = command.split()
    if not parts:
        return command
    first = parts[0]
    sub = parts[1] if len(parts) > 1 else ""
    for cmd, sub_cmd, pattern in COMMAND_PATTERNS:
        if first == cmd and (sub_cmd == "" or sub == sub_cmd):
            return pattern
    return f"{first} *" if len(parts) > 1 else first


def extract_subject(tool_name: str, tool_input: dict[str, Any]) -> str | None:
    """Return the input field a tool's patterns are matched against."""
    if not isinstance(tool_input, dict):
        return None
    if tool_name == "Bash":
        key = "command"
    elif tool_name in _FILE_TOOLS:
        key = "file_path"
    elif tool_name == "NotebookEdit":
        key = "notebook_path"
    elif tool_name in _SEARCH_TOOLS:
        key = "pattern"
    else:
        return None
    value = tool_input.get(key)
    return value if isinstance(value, str) and value else None


def suggest_pattern(tool_name: str, tool_input: dict[str, Any]) -> str | None:
    """Pattern to store when the user picks "always allow"."""
    subject = extract_subject(tool_name, tool_input)
    if subject is None:
        return None
    if tool_name == "Bash":
        return generalize_command(subject)
    return subject


def matches_pattern(subject: str, pattern: str) -> bool:
    """Exact match, or ``*``-wildcard match anchored at both ends."""
    if subject == pattern:
        return True
    if "*" not in pattern:
        return False
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.fullmatch(regex, subject, re.DOTALL) is not None


class PermissionPatternCache:
    """In-memory view of approved patterns, persisted through *storage*."""

    def __init__(self, storage: PermissionStorage) -> None:
        self._storage = storage
        self._entries: list[PermissionEntry] = list(storage.load())

    def entries(self) -> list[PermissionEntry]:
        return list(self._entries)

    def patterns_for(self, tool_name: str) -> list[str]:
        return [e.pattern for e in self._entries if e.tool_name == tool_name]

    def is_pre_approved(self, tool_name: str, tool_input: dict[str, Any]) -> bool:
        subject = extract_subject(tool_name, tool_input)
        if subject is None:
            return False
        for pattern in self.patterns_for(tool_name):
            if matches_pattern(subject, pattern):
                logger.debug(
                    "Pre-approved %s via pattern %r", tool_name, pattern,
                )
                return True
        return False

    def add(self, tool_name: str, pattern: str) -> bool:
        """Add a pattern. Returns False if it was already present."""
        if any(
            e.tool_name == tool_name and e.pattern == pattern
            for e in self._entries
        ):
            return False
        self._entries.append(PermissionEntry(
            tool_name=tool_name,
            pattern=pattern,
            created_at=datetime.now(timezone.utc),
        ))
        logger.info("Added permission pattern %s: %r", tool_name, pattern)
        self._persist()
        return True

    def remove(self, tool_name: str, pattern: str) -> bool:
        """Remove a pattern. Returns True if it was present."""
        kept = [
            e for e in self._entries
            if not (e.tool_name == tool_name and e.pattern == pattern)
        ]
        if len(kept) == len(self._entries):
            return False
        self._entries = kept
        logger.info("Removed permission pattern %s: %r", tool_name, pattern)
        self._persist()
        return True

    def clear(self) -> None:
        self._entries = []
        logger.info("Cleared all permission patterns")
        self._persist()

    def _persist(self) -> None:
        self._storage.save(list(self._entries))
