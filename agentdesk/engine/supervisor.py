"""Agent process supervisor.

Spawns the agent CLI for one turn, writes the user's message to its
stdin as a stream-json document, and streams decoded events back while
the Control Channel answers permission requests on the same pipe.

Exactly one process runs at a time. Lifecycle notifications go to a
single subscriber through SupervisorChannels; a run that is stopped
deliberately ends silently.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import mimetypes
import os
import re
import signal
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .config import EngineConfig
from .control import ControlChannel, PendingControlRequest
from .errors import (
    AgentNotInstalledError,
    AgentProcessError,
    SupervisorBusyError,
    classify_process_failure,
)
from .framing import LineFramer
from .protocol import ControlRequest, ProtocolEvent, ResultEvent, decode

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(image/\w+);base64,(.+)$", re.DOTALL)
_READ_CHUNK = 64 * 1024


@dataclass
class ImageAttachment:
    media_type: str
    data: str

    @classmethod
    def from_data_url(cls, url: str) -> ImageAttachment | None:
        """Parse ``data:image/png;base64,...``; None for anything else."""
        match = _DATA_URL_RE.match(url.strip())
        if not match:
            return None
        return cls(media_type=match.group(1), data=match.group(2))

    @classmethod
    def from_file(cls, path: str | Path) -> ImageAttachment:
        path = Path(path)
        media_type, _ = mimetypes.guess_type(path.name)
        if not media_type or not media_type.startswith("image/"):
            raise ValueError(f"Not an image file: {path}")
        return cls(
            media_type=media_type,
            data=base64.b64encode(path.read_bytes()).decode("ascii"),
        )

    def to_data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"

    def to_block(self) -> dict[str, Any]:
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": self.media_type,
                "data": self.data,
            },
        }


@dataclass
class TurnPayload:
    text: str
    images: list[ImageAttachment] = field(default_factory=list)


@dataclass
class TurnOptions:
    """Per-turn command-line options."""
    cwd: str = "."
    model: str = "default"
    auto_approve: bool = False
    plan_mode: bool = False
    thinking_enabled: bool = False
    effort: str = "medium"
    mcp_config_path: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    max_turns: int = 0
    append_system_prompt: str | None = None
    # Resume the most recent agent session when no session id is known.
    continue_last: bool = False

    @classmethod
    def from_config(cls, config: EngineConfig, **overrides: Any) -> TurnOptions:
        options = cls(
            cwd=config.default_cwd,
            model=config.selected_model,
            auto_approve=config.auto_approve,
            plan_mode=config.plan_mode,
            thinking_enabled=config.thinking_enabled,
            effort=config.effort,
            mcp_config_path=config.mcp_config_path,
            allowed_tools=list(config.allowed_tools),
            disallowed_tools=list(config.disallowed_tools),
            max_turns=config.max_turns,
            append_system_prompt=config.append_system_prompt,
        )
        return replace(options, **overrides) if overrides else options


MessageHandler = Callable[[ProtocolEvent], Awaitable[None]]
EndHandler = Callable[[], Awaitable[None]]
ErrorHandler = Callable[[AgentProcessError], Awaitable[None]]
ControlHandler = Callable[[PendingControlRequest], Awaitable[None]]


@dataclass
class SupervisorChannels:
    """Lifecycle callbacks of the single supervisor subscriber."""
    on_message: MessageHandler | None = None
    on_end: EndHandler | None = None
    on_error: ErrorHandler | None = None
    on_control_request: ControlHandler | None = None


@dataclass
class _Run:
    process: asyncio.subprocess.Process
    stopped: bool = False
    saw_result: bool = False


class ProcessSupervisor:
    """Runs the agent CLI and streams its events."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        control: ControlChannel | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self.control = control or ControlChannel(
            auto_approve=self._config.auto_approve,
            exempt_tools=self._config.auto_approve_exempt_tools,
        )
        self._channels: SupervisorChannels | None = None
        self._run: _Run | None = None
        self.last_error: AgentProcessError | None = None

    # ── Subscription ──

    @property
    def channels(self) -> SupervisorChannels:
        return self._channels or SupervisorChannels()

    def subscribe(self, channels: SupervisorChannels) -> None:
        if self._channels is not None:
            raise RuntimeError("ProcessSupervisor already has a subscriber")
        self._channels = channels

    def unsubscribe(self) -> None:
        self._channels = None

    # ── State ──

    @property
    def is_running(self) -> bool:
        return self._run is not None and self._run.process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._run.process.pid if self._run else None

    # ── Command construction ──

    def build_command(
        self, options: TurnOptions, session_id: str | None = None,
    ) -> list[str]:
        cmd = [self._config.agent_command, *self._config.agent_command_args]
        cmd.extend([
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--verbose",
        ])
        if options.thinking_enabled and options.effort:
            cmd.extend(["--effort", options.effort])
        # The two permission flags are mutually exclusive: with both set the
        # CLI still routes prompts through stdio.
        if options.auto_approve:
            cmd.append("--dangerously-skip-permissions")
        else:
            cmd.extend(["--permission-prompt-tool", "stdio"])
            if options.plan_mode:
                cmd.extend(["--permission-mode", "plan"])
        if options.mcp_config_path:
            cmd.extend(["--mcp-config", options.mcp_config_path])
        if options.model and options.model != "default":
            cmd.extend(["--model", options.model])
        for tool in options.allowed_tools:
            cmd.extend(["--allowedTools", tool])
        for tool in options.disallowed_tools:
            cmd.extend(["--disallowedTools", tool])
        if options.max_turns > 0:
            cmd.extend(["--max-turns", str(options.max_turns)])
        if options.append_system_prompt:
            cmd.extend(["--append-system-prompt", options.append_system_prompt])
        if session_id:
            cmd.extend(["--resume", session_id])
        elif options.continue_last:
            cmd.append("--continue")
        return cmd

    @staticmethod
    def build_env() -> dict[str, str]:
        env = dict(os.environ)
        env["FORCE_COLOR"] = "0"
        env["NO_COLOR"] = "1"
        return env

    @staticmethod
    def build_turn_payload(
        payload: TurnPayload, session_id: str | None = None,
    ) -> dict[str, Any]:
        content: list[dict[str, Any]] = [{"type": "text", "text": payload.text}]
        content.extend(image.to_block() for image in payload.images)
        return {
            "type": "user",
            "session_id": session_id or "",
            "message": {"role": "user", "content": content},
            "parent_tool_use_id": None,
        }

    # ── Running a turn ──

    async def send(
        self,
        payload: TurnPayload,
        options: TurnOptions,
        session_id: str | None = None,
    ) -> AsyncIterator[ProtocolEvent]:
        """Run one turn, yielding every event except control requests."""
        if self.is_running:
            raise SupervisorBusyError(self.pid)
        self.last_error = None
        self.control.auto_approve = options.auto_approve

        cwd = options.cwd or self._config.default_cwd
        if not Path(cwd).expanduser().is_dir():
            await self._fail(AgentProcessError(f"Working directory not found: {cwd}"))
            return

        cmd = self.build_command(options, session_id)
        logger.info("Starting agent: %s (cwd=%s)", " ".join(cmd), cwd)
        try:
            # Arguments go straight to exec, never through a shell.
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(Path(cwd).expanduser()),
                env=self.build_env(),
                start_new_session=True,
            )
        except FileNotFoundError:
            await self._fail(AgentNotInstalledError(self._config.agent_command))
            return
        except PermissionError as exc:
            await self._fail(AgentProcessError(f"Cannot execute agent: {exc}"))
            return

        run = _Run(process=proc)
        self._run = run
        self.control.attach(proc.stdin)
        stderr_task = asyncio.create_task(self._collect_stderr(proc))
        logger.info("Agent started (pid=%d)", proc.pid)

        try:
            await self._write_payload(proc, self.build_turn_payload(payload, session_id))

            framer = LineFramer()
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK)
                lines = framer.feed(chunk) if chunk else framer.flush()
                for line in lines:
                    event = decode(line)
                    if event is None or run.stopped:
                        continue
                    if isinstance(event, ControlRequest):
                        await self._on_control_request(event)
                        continue
                    if isinstance(event, ResultEvent):
                        run.saw_result = True
                        if proc.stdin is not None and not proc.stdin.is_closing():
                            proc.stdin.close()
                    await self._notify_message(event)
                    yield event
                if not chunk:
                    break

            returncode = await proc.wait()
            stderr_text = await stderr_task
        finally:
            if proc.returncode is None:
                # Consumer abandoned the stream.
                await self._terminate(proc)
            if not stderr_task.done():
                stderr_task.cancel()
            self.control.detach(proc.stdin)
            if self._run is run:
                self._run = None

        logger.info("Agent exited (pid=%d, rc=%s)", proc.pid, returncode)
        if run.stopped:
            return
        if returncode != 0:
            await self._fail(classify_process_failure(stderr_text.strip(), returncode))
        elif not run.saw_result:
            await self._fail(AgentProcessError(stderr_text.strip()))
        else:
            await self._notify_end()

    async def stop(self) -> None:
        """Abort the running process. No end/error notification follows."""
        run = self._run
        if run is None:
            self.control.detach()
            return
        self.control.detach(run.process.stdin)
        run.stopped = True
        proc = run.process
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        await self._terminate(proc)
        logger.info("Agent stopped (pid=%d)", proc.pid)

    async def respond_to_control(
        self, request_id: str, approved: bool, always_allow: bool = False,
    ) -> bool:
        return await self.control.respond(request_id, approved, always_allow)

    # ── Internals ──

    async def _write_payload(
        self, proc: asyncio.subprocess.Process, document: dict[str, Any],
    ) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write((json.dumps(document) + "\n").encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            # The exit code and stderr will explain the failure.
            logger.warning("Agent stdin closed before the turn was written: %s", exc)

    @staticmethod
    async def _collect_stderr(proc: asyncio.subprocess.Process) -> str:
        if proc.stderr is None:
            return ""
        data = await proc.stderr.read()
        return data.decode("utf-8", errors="replace")

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, SIGKILL after the grace period."""
        if proc.returncode is not None:
            return
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Agent ignored SIGTERM (pid=%d), killing", proc.pid)
            self._signal(proc, signal.SIGKILL)
            await proc.wait()

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    async def _on_control_request(self, event: ControlRequest) -> None:
        pending = await self.control.handle(event)
        if pending is not None and self.channels.on_control_request:
            await self.channels.on_control_request(pending)

    async def _notify_message(self, event: ProtocolEvent) -> None:
        if self.channels.on_message:
            await self.channels.on_message(event)

    async def _notify_end(self) -> None:
        if self.channels.on_end:
            await self.channels.on_end()

    async def _fail(self, error: AgentProcessError) -> None:
        logger.error("Agent run failed (%s): %s", error.category.value, error)
        self.last_error = error
        if self.channels.on_error:
            await self.channels.on_error(error)
        await self._notify_end()
