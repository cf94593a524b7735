"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via DESK_* env vars, or
layer a YAML file on top with yaml_config.load_yaml_config().
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for host notifications.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

_TRUE_VALUES = {"1", "true", "yes", "on"}


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Host callback errors must not break a running turn.
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_list(name: str) -> list[str] | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class EngineConfig:
    """Agent session engine configuration."""

    # Agent executable and any fixed leading arguments.
    agent_command: str = "claude"
    agent_command_args: list[str] = field(default_factory=list)
    default_cwd: str = "."

    # "default" means: let the agent pick, no --model flag.
    selected_model: str = "default"
    # Skip every permission prompt (--dangerously-skip-permissions).
    auto_approve: bool = False
    # Read-only planning mode; only meaningful when prompts are enabled.
    plan_mode: bool = False
    thinking_enabled: bool = False
    effort: str = "medium"
    mcp_config_path: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    # 0 disables the --max-turns flag.
    max_turns: int = 0
    append_system_prompt: str | None = None

    # Tools that always go to the user even under auto-approve.
    auto_approve_exempt_tools: list[str] = field(
        default_factory=lambda: ["AskUserQuestion", "ExitPlanMode"]
    )
    # Successful results of these tools are not shown in the transcript.
    hidden_result_tools: list[str] = field(
        default_factory=lambda: ["Read", "TodoWrite"]
    )

    # Seconds between SIGTERM and SIGKILL when stopping the agent.
    stop_grace_seconds: float = 2.0
    max_conversations: int = 10
    # Denials in one turn before suggesting auto-approve.
    permission_hint_threshold: int = 3

    # Storage root for conversations, permissions and logs.
    data_dir: str = field(
        default_factory=lambda: str(Path.home() / ".agentdesk")
    )
    permission_store_path: str | None = None

    # Logging
    log_level: str = "INFO"

    # Optional async callback for host notifications.
    # Receives dicts like {"event": "turn_started", "conversation_id": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    @property
    def permissions_path(self) -> Path:
        if self.permission_store_path:
            return Path(self.permission_store_path).expanduser()
        return Path(self.data_dir).expanduser() / "permissions.json"

    @property
    def conversations_dir(self) -> Path:
        return Path(self.data_dir).expanduser() / "conversations"

    @property
    def logs_dir(self) -> Path:
        return Path(self.data_dir).expanduser() / "logs"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from DESK_* environment variables."""
        desk_vars = {
            k: v for k, v in os.environ.items() if k.startswith("DESK_")
        }
        if desk_vars:
            logger.info(
                "EngineConfig.from_env: DESK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(desk_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no DESK_* env vars set, using defaults")

        config = cls(
            agent_command=os.getenv("DESK_AGENT_COMMAND", cls.agent_command),
            default_cwd=os.getenv("DESK_DEFAULT_CWD", cls.default_cwd),
            selected_model=os.getenv("DESK_MODEL", cls.selected_model),
            auto_approve=_env_bool("DESK_AUTO_APPROVE", cls.auto_approve),
            plan_mode=_env_bool("DESK_PLAN_MODE", cls.plan_mode),
            thinking_enabled=_env_bool("DESK_THINKING", cls.thinking_enabled),
            effort=os.getenv("DESK_EFFORT", cls.effort),
            mcp_config_path=os.getenv("DESK_MCP_CONFIG") or None,
            allowed_tools=_env_list("DESK_ALLOWED_TOOLS") or [],
            disallowed_tools=_env_list("DESK_DISALLOWED_TOOLS") or [],
            max_turns=int(os.getenv("DESK_MAX_TURNS", str(cls.max_turns))),
            stop_grace_seconds=float(os.getenv(
                "DESK_STOP_GRACE", str(cls.stop_grace_seconds)
            )),
            max_conversations=int(os.getenv(
                "DESK_MAX_CONVERSATIONS", str(cls.max_conversations)
            )),
            permission_hint_threshold=int(os.getenv(
                "DESK_PERMISSION_HINT_THRESHOLD",
                str(cls.permission_hint_threshold),
            )),
            permission_store_path=os.getenv("DESK_PERMISSION_STORE") or None,
            log_level=os.getenv("DESK_LOG_LEVEL", cls.log_level),
        )
        args = os.getenv("DESK_AGENT_ARGS")
        if args:
            config.agent_command_args = args.split()
        data_dir = os.getenv("DESK_DATA_DIR")
        if data_dir:
            config.data_dir = data_dir
        logger.info(
            "EngineConfig.from_env: command=%s model=%s cwd=%s auto_approve=%s",
            config.agent_command, config.selected_model,
            config.default_cwd, config.auto_approve,
        )
        return config
