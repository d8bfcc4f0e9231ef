"""Agent process — one supervised run of the agent CLI.

Spawns the CLI with ``stream-json`` output, feeds it the instruction, and
turns everything the child does into an ordered queue of
:data:`ProcessEvent` values: decoded stdout records, cleaned stderr
lines, and finally exactly one :class:`ProcessExited` (or a
:class:`ProcessFailed` when the spawn itself fails).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from teamstream.agent.decoder import LineDecoder, decode_line
from teamstream.agent.helpers import clean_terminal_output, find_agent_binary
from teamstream.agent.records import DecodedRecord, InitRecord, ResultRecord
from teamstream.config.models import AgentSettings
from teamstream.constants import AGENT_TEAMS_ENV, BYPASS_PERMISSIONS
from teamstream.errors import ProcessStateError, SpawnError
from teamstream.session.models import AllowDecision, DenyDecision

logger = logging.getLogger(__name__)

#: Bytes requested per stdout/stderr read.
_READ_CHUNK = 64 * 1024

#: Seconds to wait after SIGTERM before SIGKILL.
_SIGTERM_WAIT = 3.0

#: Seconds to keep draining pipes after the child exits.  Grandchildren
#: that inherited the pipes can hold them open indefinitely.
_DRAIN_TIMEOUT = 2.0

#: stderr lines kept for error previews.
_STDERR_TAIL = 50


# ------------------------------------------------------------------ #
# Channel events
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RecordMessage:
    record: DecodedRecord


@dataclass(frozen=True)
class StderrLine:
    text: str


@dataclass(frozen=True)
class ProcessExited:
    code: int | None


@dataclass(frozen=True)
class ProcessFailed:
    reason: str


ProcessEvent = RecordMessage | StderrLine | ProcessExited | ProcessFailed


class AgentProcess:
    """Supervise one agent CLI process for a session.

    A process is started once; resuming a conversation means building a
    new :class:`AgentProcess` with the latest resume token.
    """

    def __init__(
        self,
        session_id: str,
        working_directory: str | Path,
        *,
        model: str | None = None,
        resume_token: str | None = None,
        settings: AgentSettings | None = None,
        close_grace: float = 5.0,
        team_mode: bool = False,
    ) -> None:
        self.session_id = session_id
        self.working_directory = Path(working_directory)
        self.model = model
        self.resume_token = resume_token
        self.team_mode = team_mode
        self._settings = settings or AgentSettings()
        self._close_grace = close_grace

        self.events: asyncio.Queue[ProcessEvent] = asyncio.Queue()

        self._proc: asyncio.subprocess.Process | None = None
        self._started = False
        self._stdin_open = False
        self._interrupted = False
        self._exit_code: int | None = None
        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._wait_task: asyncio.Task[None] | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL)

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def interactive(self) -> bool:
        """``True`` when permission prompts are forwarded to the client."""
        return self._settings.permission_mode != BYPASS_PERMISSIONS

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def interrupted(self) -> bool:
        """``True`` once this layer has signalled the process."""
        return self._interrupted

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def stderr_text(self) -> str:
        """Most recent stderr lines, newline-joined."""
        return "\n".join(self._stderr_tail)

    # ------------------------------------------------------------------ #
    # Command line and environment
    # ------------------------------------------------------------------ #

    def build_args(self) -> list[str]:
        args = [
            find_agent_binary(self._settings.binary),
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if self.model:
            args.extend(["--model", self.model])
        if self.resume_token:
            args.extend(["--resume", self.resume_token])
        if self.interactive:
            args.extend(
                [
                    "--input-format",
                    "stream-json",
                    "--permission-prompt-tool",
                    "stdio",
                    "--permission-mode",
                    self._settings.permission_mode,
                ]
            )
        else:
            args.append("--dangerously-skip-permissions")
        args.extend(self._settings.extra_args)
        return args

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.setdefault("HOME", str(Path.home()))
        if self.team_mode:
            env[AGENT_TEAMS_ENV] = "1"

        if self._settings.api_key_env:
            api_key = os.environ.get(self._settings.api_key_env)
            if api_key:
                env["ANTHROPIC_API_KEY"] = api_key
            else:
                logger.warning(
                    "%s: %s is not set, using the CLI's own credentials",
                    self.session_id,
                    self._settings.api_key_env,
                )
        if self._settings.base_url:
            env["ANTHROPIC_BASE_URL"] = self._settings.base_url

        # Cap Node.js V8 heap to keep one agent from OOM-killing the tree.
        heap_mb = self._settings.node_heap_limit_mb
        node_opts = env.get("NODE_OPTIONS", "")
        if heap_mb and "--max-old-space-size" not in node_opts:
            separator = " " if node_opts else ""
            env["NODE_OPTIONS"] = f"{node_opts}{separator}--max-old-space-size={heap_mb}"
        return env

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self, instruction: str) -> None:
        """Spawn the CLI and hand it *instruction*.

        Raises:
            ProcessStateError: If the process was already started.
            SpawnError: If the process could not be spawned.  A
                :class:`ProcessFailed` event is queued first.
        """
        if self._started:
            msg = f"Agent process for session {self.session_id} already started"
            raise ProcessStateError(msg)
        self._started = True

        if not self.working_directory.is_dir():
            await self._fail(f"Working directory does not exist: {self.working_directory}")

        args = self.build_args()
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.working_directory),
                env=self.build_env(),
                start_new_session=True,
            )
        except FileNotFoundError:
            await self._fail(
                f"Agent CLI not found: {args[0]}. "
                "Install: npm install -g @anthropic-ai/claude-code"
            )
        except OSError as exc:
            await self._fail(f"Failed to spawn agent CLI: {exc}")

        logger.info(
            "%s: agent started (pid %s, resume=%s, team=%s)",
            self.session_id,
            self.pid,
            self.resume_token or "-",
            self.team_mode,
        )

        self._stdin_open = True
        self._stdout_task = asyncio.create_task(self._pump_stdout())
        self._stderr_task = asyncio.create_task(self._pump_stderr())
        self._wait_task = asyncio.create_task(self._wait_for_exit())

        await self._send_instruction(instruction)

    async def _fail(self, reason: str) -> None:
        logger.error("%s: %s", self.session_id, reason)
        await self.events.put(ProcessFailed(reason))
        raise SpawnError(reason)

    async def _send_instruction(self, instruction: str) -> None:
        if self.interactive:
            message = {
                "type": "user",
                "session_id": self.resume_token or "",
                "message": {"role": "user", "content": instruction},
                "parent_tool_use_id": None,
            }
            await self._write_line(json.dumps(message))
            return

        await self._write(instruction.encode())
        await self._close_stdin()

    def interrupt(self) -> bool:
        """Send SIGINT once.  Returns ``False`` when there is nothing to signal."""
        proc = self._proc
        if proc is None or proc.returncode is not None or self._interrupted:
            return False
        self._interrupted = True
        logger.info("%s: interrupting agent (pid %s)", self.session_id, proc.pid)
        with contextlib.suppress(ProcessLookupError):
            proc.send_signal(signal.SIGINT)
        return True

    async def wait(self) -> int | None:
        """Wait until the exit event has been queued; return the exit code."""
        if self._wait_task is not None:
            await asyncio.shield(self._wait_task)
        return self._exit_code

    async def close(self) -> None:
        """Graceful shutdown: interrupt -> wait -> SIGTERM -> SIGKILL."""
        proc = self._proc
        if proc is None:
            return

        if proc.returncode is None:
            self.interrupt()
            try:
                await asyncio.wait_for(self.wait(), timeout=self._close_grace)
            except TimeoutError:
                logger.warning(
                    "%s: agent ignored interrupt for %.1fs, terminating",
                    self.session_id,
                    self._close_grace,
                )
                with contextlib.suppress(ProcessLookupError):
                    proc.terminate()
                try:
                    await asyncio.wait_for(self.wait(), timeout=_SIGTERM_WAIT)
                except TimeoutError:
                    with contextlib.suppress(ProcessLookupError):
                        proc.kill()

        await self.wait()
        await self._close_stdin()

    # ------------------------------------------------------------------ #
    # Control channel
    # ------------------------------------------------------------------ #

    async def send_permission_response(
        self,
        request_id: str,
        decision: AllowDecision | DenyDecision,
        original_input: dict[str, Any] | None = None,
    ) -> None:
        """Answer a ``can_use_tool`` control request."""
        payload = decision.to_control_payload()
        if payload["behavior"] == "allow":
            payload.setdefault("updatedInput", original_input or {})
        await self._write_control_response(request_id, payload)

    async def acknowledge_control(self, request_id: str) -> None:
        """Approve a control request that needs no client involvement."""
        await self._write_control_response(request_id, {"behavior": "allow"})

    async def _write_control_response(
        self, request_id: str, response: dict[str, Any]
    ) -> None:
        line = {
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": request_id,
                "response": response,
            },
        }
        await self._write_line(json.dumps(line))

    # ------------------------------------------------------------------ #
    # stdin
    # ------------------------------------------------------------------ #

    async def _write_line(self, text: str) -> None:
        await self._write(text.encode() + b"\n")

    async def _write(self, data: bytes) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or not self._stdin_open:
            logger.debug("%s: stdin closed, dropping %d bytes", self.session_id, len(data))
            return
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            logger.warning("%s: failed to write to agent stdin: %s", self.session_id, exc)
            self._stdin_open = False

    async def _close_stdin(self) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or not self._stdin_open:
            return
        self._stdin_open = False
        with contextlib.suppress(BrokenPipeError, ConnectionResetError, OSError):
            proc.stdin.close()
            await proc.stdin.wait_closed()

    # ------------------------------------------------------------------ #
    # Pumps
    # ------------------------------------------------------------------ #

    async def _pump_stdout(self) -> None:
        proc = self._proc
        if proc is None or proc.stdout is None:
            return

        decoder = LineDecoder()
        try:
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                for line in decoder.feed(chunk):
                    await self._emit_line(line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("%s: error reading agent stdout: %s", self.session_id, exc)

        for line in decoder.flush():
            await self._emit_line(line)

    async def _emit_line(self, line: str) -> None:
        record = decode_line(line)
        if isinstance(record, InitRecord | ResultRecord) and record.session_id:
            self.resume_token = record.session_id
        await self.events.put(RecordMessage(record))

        # The control channel is only needed until the terminal result.
        if isinstance(record, ResultRecord) and self.interactive:
            await self._close_stdin()

    async def _pump_stderr(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return

        decoder = LineDecoder()
        try:
            while True:
                chunk = await proc.stderr.read(_READ_CHUNK)
                if not chunk:
                    break
                for line in decoder.feed(chunk):
                    await self._emit_stderr(line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("%s: error reading agent stderr: %s", self.session_id, exc)

        for line in decoder.flush():
            await self._emit_stderr(line)

    async def _emit_stderr(self, line: str) -> None:
        text = clean_terminal_output(line).strip()
        if not text:
            return
        self._stderr_tail.append(text)
        await self.events.put(StderrLine(text))

    async def _wait_for_exit(self) -> None:
        proc = self._proc
        if proc is None:
            return

        code = await proc.wait()
        pumps = [t for t in (self._stdout_task, self._stderr_task) if t is not None]
        if pumps:
            _, pending = await asyncio.wait(pumps, timeout=_DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            if pending:
                logger.warning(
                    "%s: output pipes still open after exit, stopped reading",
                    self.session_id,
                )

        self._exit_code = code
        await self._close_stdin()
        if code == 0 or self._interrupted:
            logger.info("%s: agent exited with code %s", self.session_id, code)
        else:
            logger.error("%s: agent exited with code %s", self.session_id, code)
        await self.events.put(ProcessExited(code))
