"""YAML configuration loader.

Layers a YAML file on top of the env-derived EngineConfig. String values
may reference environment variables (``${HOME}``).

Example YAML:
    engine:
      agent_command: claude
      selected_model: sonnet
      auto_approve: false
      effort: high
      thinking_enabled: true
      allowed_tools: [Read, Grep]
      max_turns: 20
      data_dir: ~/.agentdesk

    permissions:
      store_path: ~/.agentdesk/permissions.json
      seed:
        - tool: Bash
          pattern: "npm test *"
        - tool: Read
          pattern: "/repo/*"
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

# Runtime-only fields that a file cannot set.
_NON_YAML_FIELDS = {"event_callback"}


@dataclass
class PermissionSeed:
    """A pattern pre-loaded into the permission cache at startup."""
    tool: str
    pattern: str


@dataclass
class DeskConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    permission_seeds: list[PermissionSeed] = field(default_factory=list)


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, list):
        return [_expand(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    return value


def _coerce(current: Any, value: Any, key: str) -> Any:
    """Coerce a YAML value to the type of the field's current value."""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(current, int) and not isinstance(current, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, list):
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        if not isinstance(value, list):
            raise ValueError(f"engine.{key} must be a list")
        return [str(v) for v in value]
    return None if value is None else str(value)


def apply_engine_section(config: EngineConfig, section: dict[str, Any]) -> EngineConfig:
    """Apply an ``engine:`` mapping onto an EngineConfig in place."""
    known = {f.name for f in fields(EngineConfig)} - _NON_YAML_FIELDS
    for key, value in section.items():
        if key not in known:
            logger.warning("Ignoring unknown engine setting %r", key)
            continue
        setattr(config, key, _coerce(getattr(config, key), _expand(value), key))
    return config


def load_yaml_config(
    path: str | Path, base: EngineConfig | None = None,
) -> DeskConfig:
    """Load and parse a YAML config file.

    Settings in the file override *base* (default: EngineConfig.from_env()).
    """
    path = Path(path).expanduser()
    logger.info("load_yaml_config: loading %s", path)
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path)
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    for section in sorted(set(raw) - {"engine", "permissions"}):
        logger.warning("Ignoring unknown config section %r in %s", section, path)

    engine = base if base is not None else EngineConfig.from_env()
    apply_engine_section(engine, raw.get("engine") or {})

    perms_raw = raw.get("permissions") or {}
    store_path = perms_raw.get("store_path")
    if store_path:
        engine.permission_store_path = _expand(str(store_path))

    seeds: list[PermissionSeed] = []
    for item in perms_raw.get("seed") or []:
        if not isinstance(item, dict) or not item.get("tool") or not item.get("pattern"):
            logger.warning("Ignoring malformed permission seed: %r", item)
            continue
        seeds.append(PermissionSeed(
            tool=str(item["tool"]), pattern=_expand(str(item["pattern"])),
        ))

    logger.info(
        "Parsed YAML config %s: model=%s auto_approve=%s seeds=%d",
        path.name, engine.selected_model, engine.auto_approve, len(seeds),
    )
    return DeskConfig(engine=engine, permission_seeds=seeds)
