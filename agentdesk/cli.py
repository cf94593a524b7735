"""Command-line host for the agent session engine.

Usage:
    agentdesk chat "Add a --dry-run flag to the build script"
    agentdesk chat --resume 3f2a9c1d7b44 -i
    agentdesk chat --auto-approve --model sonnet --image shot.png "What is wrong here?"
    agentdesk permissions list
    agentdesk permissions add Bash "npm test *"
    agentdesk history show 3f2a9c1d7b44
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from agentdesk.adapters.event_bus import EventBus
from agentdesk.adapters.events import (
    AgentFailed,
    PermissionHint,
    PermissionPrompt,
    SessionAssigned,
    TranscriptUpdated,
    TurnFinished,
)
from agentdesk.adapters.permission_store import JsonPermissionStore
from agentdesk.engine.config import EngineConfig
from agentdesk.engine.control import ControlChannel
from agentdesk.engine.errors import AgentDeskError, ErrorCategory
from agentdesk.engine.permissions import PermissionPatternCache, extract_subject
from agentdesk.engine.reducer import rebuild_transcript
from agentdesk.engine.scheduler import TabScheduler
from agentdesk.engine.supervisor import ImageAttachment, ProcessSupervisor, TurnOptions
from agentdesk.engine.yaml_config import PermissionSeed, load_yaml_config
from agentdesk.shared.models.conversation import (
    AssistantEntry,
    ConversationEntry,
    ErrorEntry,
    LogType,
    ThinkingEntry,
    ToolResultEntry,
    ToolStatus,
    ToolUseEntry,
    UserEntry,
)
from agentdesk.shared.services.conversation_store import JsonConversationStore

logger = logging.getLogger(__name__)

_RESULT_PREVIEW_LINES = 8
_FAILURE_TITLES = {
    ErrorCategory.AGENT_MISSING.value: "Agent not installed",
    ErrorCategory.LOGIN_REQUIRED.value: "Login required",
    ErrorCategory.PROCESS.value: "Agent error",
}
_FAILURE_TIPS = {
    ErrorCategory.AGENT_MISSING.value: (
        "Install the agent CLI or point DESK_AGENT_COMMAND at it."
    ),
    ErrorCategory.LOGIN_REQUIRED.value: "Run the agent's login command, then retry.",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentdesk",
        description="Chat with a coding-agent CLI from the terminal",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file layered over DESK_* env vars",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging on stderr",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="Run one or more turns")
    chat.add_argument("prompt", nargs="?", default=None, help="First message")
    chat.add_argument(
        "--interactive", "-i",
        action="store_true",
        help="Keep prompting after the first turn",
    )
    chat.add_argument("--resume", default=None, help="Stored conversation id to continue")
    chat.add_argument(
        "--continue", dest="continue_last",
        action="store_true",
        help="Resume the agent's most recent session",
    )
    chat.add_argument("--model", default=None, help="Agent model (default: agent's choice)")
    chat.add_argument("--cwd", default=None, help="Working directory for the agent")
    chat.add_argument(
        "--auto-approve",
        action="store_true",
        default=None,
        help="Skip all permission prompts",
    )
    chat.add_argument("--plan", action="store_true", default=None, help="Plan mode")
    chat.add_argument(
        "--effort",
        default=None,
        choices=["low", "medium", "high"],
        help="Thinking effort (enables thinking)",
    )
    chat.add_argument(
        "--image",
        action="append",
        default=[],
        help="Attach an image file or data: URL (repeatable)",
    )

    perms = sub.add_parser("permissions", help="Manage always-allow patterns")
    perms_sub = perms.add_subparsers(dest="action", required=True)
    perms_sub.add_parser("list", help="Show stored patterns")
    for name in ("add", "remove"):
        p = perms_sub.add_parser(name, help=f"{name.capitalize()} a pattern")
        p.add_argument("tool", help="Tool name, e.g. Bash")
        p.add_argument("pattern", help='Pattern, e.g. "npm test *"')
    perms_sub.add_parser("clear", help="Remove every pattern")

    history = sub.add_parser("history", help="Browse stored conversations")
    history_sub = history.add_subparsers(dest="action", required=True)
    history_sub.add_parser("list", help="List stored conversations")
    show = history_sub.add_parser("show", help="Replay a stored conversation")
    show.add_argument("conversation_id")
    return parser


def _load_config(args: argparse.Namespace) -> tuple[EngineConfig, list[PermissionSeed]]:
    config = EngineConfig.from_env()
    seeds: list[PermissionSeed] = []
    if args.config:
        desk = load_yaml_config(args.config, base=config)
        config, seeds = desk.engine, desk.permission_seeds
    return config, seeds


def _configure_logging(config: EngineConfig, verbose: bool) -> Path:
    """Log to a rotating file; mirror to stderr with --verbose."""
    log_file = config.logs_dir / "agentdesk.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
    ]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    level = logging.DEBUG if verbose else getattr(
        logging, config.log_level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s",
        handlers=handlers,
        force=True,
    )
    return log_file


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    config, seeds = _load_config(args)
    log_file = _configure_logging(config, args.verbose)
    logger.info("agentdesk %s (log=%s)", args.command, log_file)

    console = Console()
    permissions = PermissionPatternCache(JsonPermissionStore(config.permissions_path))
    for seed in seeds:
        permissions.add(seed.tool, seed.pattern)
    storage = JsonConversationStore(config.conversations_dir)

    try:
        if args.command == "permissions":
            _permissions_command(console, permissions, args)
        elif args.command == "history":
            _history_command(console, storage, args)
        else:
            _apply_chat_flags(config, args)
            asyncio.run(_chat(console, config, permissions, storage, args))
    except AgentDeskError as exc:
        console.print(f"[red]Error:[/red] {escape(str(exc))}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        sys.exit(130)


# ── permissions ──


def _permissions_command(
    console: Console, permissions: PermissionPatternCache, args: argparse.Namespace,
) -> None:
    if args.action == "list":
        entries = permissions.entries()
        if not entries:
            console.print("No always-allow patterns stored.")
            return
        table = Table("Tool", "Pattern", "Created")
        for entry in entries:
            table.add_row(
                entry.tool_name, escape(entry.pattern),
                entry.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)
    elif args.action == "add":
        if permissions.add(args.tool, args.pattern):
            console.print(f"Added {args.tool}: {escape(args.pattern)}")
        else:
            console.print("Pattern already present.")
    elif args.action == "remove":
        if not permissions.remove(args.tool, args.pattern):
            console.print(f"[yellow]No such pattern:[/yellow] {args.tool}: {escape(args.pattern)}")
            sys.exit(1)
        console.print(f"Removed {args.tool}: {escape(args.pattern)}")
    elif args.action == "clear":
        permissions.clear()
        console.print("Cleared all patterns.")


# ── history ──


def _history_command(
    console: Console, storage: JsonConversationStore, args: argparse.Namespace,
) -> None:
    if args.action == "list":
        summaries = storage.list()
        if not summaries:
            console.print("No stored conversations.")
            return
        table = Table("Id", "Title", "Messages", "Cost", "Last active")
        for s in summaries:
            table.add_row(
                s.conversation_id, escape(s.title or s.first_user_message[:40]),
                str(s.message_count), f"${s.total_cost:.4f}",
                s.end_time.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)
        return

    try:
        record = storage.load(args.conversation_id)
    except ValueError:
        record = None
    if record is None:
        console.print(f"[red]No stored conversation {escape(args.conversation_id)}[/red]")
        sys.exit(1)
    console.print(Panel(escape(record.title or record.conversation_id), style="bold"))
    for entry in rebuild_transcript(record.messages):
        _render_entry(console, entry)
    console.print(
        f"[dim]session {record.session_id or '-'} · "
        f"${record.total_cost:.4f} · {record.total_input_tokens} in / "
        f"{record.total_output_tokens} out[/dim]"
    )


def _render_entry(console: Console, entry: ConversationEntry) -> None:
    if isinstance(entry, UserEntry):
        console.print(f"\n[bold green]>[/bold green] {escape(entry.content)}")
        if entry.images:
            console.print(f"[dim]({len(entry.images)} image(s) attached)[/dim]")
    elif isinstance(entry, AssistantEntry):
        console.print(escape(entry.content))
    elif isinstance(entry, ThinkingEntry):
        console.print(f"[dim italic]{escape(entry.content)}[/dim italic]")
    elif isinstance(entry, ToolUseEntry):
        mark = {
            ToolStatus.COMPLETED: "[green]✓[/green]",
            ToolStatus.FAILED: "[red]✗[/red]",
            ToolStatus.EXECUTING: "[yellow]…[/yellow]",
        }[entry.status]
        console.print(
            f"{mark} [bold cyan]{escape(entry.tool_name)}[/bold cyan] "
            f"{escape(_tool_summary(entry.tool_name, entry.raw_input))}"
        )
    elif isinstance(entry, ToolResultEntry):
        _render_tool_result(console, entry.content, entry.is_error)
    elif isinstance(entry, ErrorEntry):
        console.print(f"[red]{escape(entry.content)}[/red]")


# ── chat ──


def _apply_chat_flags(config: EngineConfig, args: argparse.Namespace) -> None:
    if args.model:
        config.selected_model = args.model
    if args.cwd:
        config.default_cwd = args.cwd
    if args.auto_approve:
        config.auto_approve = True
    if args.plan:
        config.plan_mode = True
    if args.effort:
        config.thinking_enabled = True
        config.effort = args.effort


def _load_image(value: str) -> ImageAttachment:
    """An --image argument: a pasted data URL or a path to an image file."""
    if value.startswith("data:"):
        image = ImageAttachment.from_data_url(value)
        if image is None:
            raise ValueError("Unsupported data URL; expected data:image/...;base64,...")
        return image
    return ImageAttachment.from_file(value)


async def _chat(
    console: Console,
    config: EngineConfig,
    permissions: PermissionPatternCache,
    storage: JsonConversationStore,
    args: argparse.Namespace,
) -> None:
    try:
        images = [_load_image(value) for value in args.image]
    except (OSError, ValueError) as exc:
        console.print(f"[red]Error:[/red] {escape(str(exc))}")
        sys.exit(1)

    bus = EventBus()
    control = ControlChannel(
        permissions=permissions,
        auto_approve=config.auto_approve,
        exempt_tools=config.auto_approve_exempt_tools,
    )
    supervisor = ProcessSupervisor(config, control)
    scheduler = TabScheduler(
        supervisor, storage=storage, config=config,
        event_callback=bus.make_callback(),
    )

    if args.resume:
        conv = scheduler.load_from_storage(args.resume)
        console.print(f"[dim]Resumed {conv.id}: {escape(conv.title)}[/dim]")
        for entry in conv.transcript:
            _render_entry(console, entry)
    else:
        conv = scheduler.create_conversation()

    text = args.prompt
    continue_last = args.continue_last
    while True:
        if not text:
            text = await asyncio.to_thread(Prompt.ask, "\n[bold green]>[/bold green]", default="")
            text = text.strip()
            if not text or text in {"exit", "quit", "/exit"}:
                break
        options = None
        if continue_last:
            options = TurnOptions.from_config(config, continue_last=True)
            continue_last = False

        stale = bus.drain()
        if stale:
            logger.debug("Dropping %d events left over from the last turn", len(stale))
        turn = asyncio.create_task(
            scheduler.send_message(conv.id, text, images, options)
        )
        try:
            await _pump_events(console, bus, scheduler, conv.id, turn)
            await turn
        except asyncio.CancelledError:
            await scheduler.stop()
            raise
        images = []
        text = None
        if args.prompt and not args.interactive:
            break

    console.print(f"[dim]Conversation saved as {conv.id}[/dim]")


async def _pump_events(
    console: Console,
    bus: EventBus,
    scheduler: TabScheduler,
    conversation_id: str,
    turn: asyncio.Task,
) -> None:
    """Render host events until the turn finishes."""
    streaming = False
    while True:
        event = await bus.next_event(timeout=0.5)
        if event is None:
            if turn.done():
                return
            continue
        if event.conversation_id not in (None, conversation_id):
            continue
        if isinstance(event, TranscriptUpdated):
            for entry in event.entries:
                streaming = _render_log_entry(console, entry, streaming)
        elif isinstance(event, PermissionPrompt):
            if streaming:
                console.print()
                streaming = False
            await _ask_permission(console, scheduler, event)
        elif isinstance(event, AgentFailed):
            _render_failure(console, event)
        elif isinstance(event, PermissionHint):
            console.print(f"[yellow]{escape(event.message)}[/yellow]")
        elif isinstance(event, SessionAssigned):
            logger.info("Conversation %s bound to agent session %s", conversation_id, event.session_id)
        elif isinstance(event, TurnFinished):
            if streaming:
                console.print()
            _render_turn_summary(console, event)
            return


def _render_log_entry(console: Console, entry: dict[str, Any], streaming: bool) -> bool:
    """Print one live log entry. Returns whether assistant text is mid-stream."""
    kind = entry.get("type")
    if kind == LogType.OUTPUT.value:
        text = entry.get("data") or ""
        if text:
            console.print(escape(text), end="")
            return True
        if entry.get("isFinal") and streaming:
            console.print()
        return False
    content_kinds = {
        LogType.THINKING.value, LogType.TOOL_USE.value, LogType.TOOL_RESULT.value,
    }
    if kind not in content_kinds:
        return streaming
    if streaming:
        console.print()
    if kind == LogType.THINKING.value:
        console.print(f"[dim italic]{escape(str(entry.get('data', '')))}[/dim italic]")
    elif kind == LogType.TOOL_USE.value:
        name = str(entry.get("toolName", "Tool"))
        summary = _tool_summary(name, entry.get("rawInput") or {})
        console.print(f"[bold cyan]⏺ {escape(name)}[/bold cyan] {escape(summary)}")
    elif kind == LogType.TOOL_RESULT.value and not entry.get("hidden"):
        _render_tool_result(console, str(entry.get("content", "")), bool(entry.get("isError")))
    return False


def _tool_summary(tool_name: str, raw_input: dict[str, Any]) -> str:
    subject = extract_subject(tool_name, raw_input)
    if subject:
        return subject
    if not raw_input:
        return ""
    text = json.dumps(raw_input, ensure_ascii=False)
    return text if len(text) <= 80 else text[:77] + "..."


def _render_tool_result(console: Console, content: str, is_error: bool) -> None:
    lines = content.splitlines()
    preview = "\n".join(lines[:_RESULT_PREVIEW_LINES])
    if len(lines) > _RESULT_PREVIEW_LINES:
        preview += f"\n… {len(lines) - _RESULT_PREVIEW_LINES} more lines"
    style = "red" if is_error else "dim"
    console.print(f"[{style}]  ⎿ {escape(preview)}[/{style}]")


async def _ask_permission(
    console: Console, scheduler: TabScheduler, event: PermissionPrompt,
) -> None:
    subject = extract_subject(event.tool_name, event.input) or _tool_summary(
        event.tool_name, event.input
    )
    console.print(Panel(
        escape(subject or "(no input)"),
        title=f"Allow {escape(event.tool_name)}?",
        subtitle=escape(event.decision_reason or ""),
        border_style="yellow",
    ))
    choices = ["y", "n", "a"] if event.pattern else ["y", "n"]
    hint = f" (a = always allow '{event.pattern}')" if event.pattern else ""
    answer = await asyncio.to_thread(
        Prompt.ask, f"Approve{escape(hint)}", choices=choices, default="y",
    )
    await scheduler.respond(
        event.request_id, approved=answer in {"y", "a"}, always_allow=answer == "a",
    )


def _render_failure(console: Console, event: AgentFailed) -> None:
    title = _FAILURE_TITLES.get(event.category, "Agent error")
    body = escape(event.message)
    tip = _FAILURE_TIPS.get(event.category)
    if tip:
        body += f"\n\n[dim]{escape(tip)}[/dim]"
    console.print(Panel(body, title=title, border_style="red"))


def _render_turn_summary(console: Console, event: TurnFinished) -> None:
    if event.stopped:
        console.print("[yellow]Stopped.[/yellow]")
        return
    console.print(
        f"[dim]{event.request_count} request(s) · total ${event.total_cost:.4f}[/dim]"
    )
