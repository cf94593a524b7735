from __future__ import annotations

import json
from pathlib import Path

import pytest

from agentdesk.adapters.permission_store import (
    JsonPermissionStore,
    MemoryPermissionStore,
    PermissionEntry,
)
from agentdesk.engine.permissions import (
    PermissionPatternCache,
    extract_subject,
    generalize_command,
    matches_pattern,
    suggest_pattern,
)


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("npm install lodash", "npm install *"),
        ("npm i react react-dom", "npm i *"),
        ("npx create-react-app demo", "npx *"),
        ("git status", "git status"),
        ("git commit -m 'wip'", "git commit *"),
        ("make", "make *"),
        ("pip install requests", "pip install *"),
        ("terraform plan -out x", "terraform *"),
        ("pwd", "pwd"),
        ("  ls   -la  ", "ls *"),
        ("", ""),
    ],
)
def test_generalize_command(command: str, expected: str) -> None:
    assert generalize_command(command) == expected


def test_subcommand_mismatch_falls_back_to_first_word() -> None:
    assert generalize_command("git stash pop") == "git *"


@pytest.mark.parametrize(
    ("tool", "tool_input", "subject"),
    [
        ("Bash", {"command": "ls"}, "ls"),
        ("Read", {"file_path": "/a/b.py"}, "/a/b.py"),
        ("MultiEdit", {"file_path": "/a/b.py"}, "/a/b.py"),
        ("NotebookEdit", {"notebook_path": "/n.ipynb"}, "/n.ipynb"),
        ("Grep", {"pattern": "TODO"}, "TODO"),
        ("WebFetch", {"url": "https://example.com"}, None),
        ("Bash", {"command": ""}, None),
        ("Bash", {}, None),
    ],
)
def test_extract_subject(tool: str, tool_input: dict, subject) -> None:
    assert extract_subject(tool, tool_input) == subject


def test_suggest_pattern_generalizes_only_bash() -> None:
    assert suggest_pattern("Bash", {"command": "cargo test --all"}) == "cargo test *"
    assert suggest_pattern("Write", {"file_path": "/tmp/x"}) == "/tmp/x"
    assert suggest_pattern("Task", {"prompt": "x"}) is None


@pytest.mark.parametrize(
    ("subject", "pattern", "expected"),
    [
        ("npm install lodash", "npm install *", True),
        ("npm install", "npm install *", False),
        ("npm test", "npm install *", False),
        ("git status", "git status", True),
        ("git status --short", "git status", False),
        ("/src/a.py", "/src/*.py", True),
        ("/src/a.pyc", "/src/*.py", False),
        ("a+b", "a+b", True),
        ("axxb", "a.*b", False),
        ("multi\nline", "multi*", True),
    ],
)
def test_matches_pattern(subject: str, pattern: str, expected: bool) -> None:
    assert matches_pattern(subject, pattern) is expected


def test_cache_pre_approves_matching_input() -> None:
    cache = PermissionPatternCache(MemoryPermissionStore())
    cache.add("Bash", "npm install *")

    assert cache.is_pre_approved("Bash", {"command": "npm install lodash"})
    assert not cache.is_pre_approved("Bash", {"command": "rm -rf /"})
    # Patterns are scoped to their tool.
    assert not cache.is_pre_approved("Write", {"file_path": "npm install x"})


def test_cache_add_is_deduplicated_and_persisted() -> None:
    store = MemoryPermissionStore()
    cache = PermissionPatternCache(store)

    assert cache.add("Bash", "git add *") is True
    assert cache.add("Bash", "git add *") is False
    assert cache.patterns_for("Bash") == ["git add *"]
    assert store.save_count == 1
    assert [e.pattern for e in store.load()] == ["git add *"]


def test_cache_remove_and_clear() -> None:
    store = MemoryPermissionStore([
        PermissionEntry("Bash", "ls *"),
        PermissionEntry("Read", "/etc/hosts"),
    ])
    cache = PermissionPatternCache(store)

    assert cache.remove("Bash", "missing *") is False
    assert cache.remove("Bash", "ls *") is True
    assert [e.tool_name for e in cache.entries()] == ["Read"]

    cache.clear()
    assert cache.entries() == []
    assert store.load() == []


def test_json_store_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "permissions.json"
    cache = PermissionPatternCache(JsonPermissionStore(path))
    cache.add("Bash", "docker run *")

    on_disk = json.loads(path.read_text())
    assert on_disk["allowedPatterns"][0]["toolName"] == "Bash"
    assert on_disk["allowedPatterns"][0]["pattern"] == "docker run *"
    assert "createdAt" in on_disk["allowedPatterns"][0]

    reloaded = PermissionPatternCache(JsonPermissionStore(path))
    assert reloaded.is_pre_approved("Bash", {"command": "docker run alpine"})


def test_json_store_missing_file_is_empty(tmp_path: Path) -> None:
    assert JsonPermissionStore(tmp_path / "nope.json").load() == []


def test_json_store_tolerates_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "permissions.json"
    path.write_text("{not json")
    assert JsonPermissionStore(path).load() == []


def test_json_store_skips_malformed_entries(tmp_path: Path) -> None:
    path = tmp_path / "permissions.json"
    path.write_text(json.dumps({"allowedPatterns": [
        {"toolName": "Bash", "pattern": "ls *", "createdAt": "bogus"},
        {"toolName": "Bash"},
        "junk",
    ]}))
    entries = JsonPermissionStore(path).load()
    assert [(e.tool_name, e.pattern) for e in entries] == [("Bash", "ls *")]
