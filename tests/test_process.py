"""Tests for the agent process supervisor."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from teamstream.agent.process import (
    AgentProcess,
    ProcessEvent,
    ProcessExited,
    ProcessFailed,
    RecordMessage,
    StderrLine,
)
from teamstream.agent.records import AssistantRecord, InitRecord, ResultRecord
from teamstream.config.models import AgentSettings
from teamstream.constants import AGENT_TEAMS_ENV
from teamstream.errors import ProcessStateError, SpawnError
from teamstream.session.models import AllowDecision, DenyDecision

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class MockPipe:
    """Async-aware mock pipe that returns chunks on demand.

    Chunks can be added at any time via ``feed()``.  ``read()`` blocks
    until a chunk is available and returns ``b""`` forever after
    ``close()``.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def feed_json(self, obj: dict[str, Any]) -> None:
        self.feed(json.dumps(obj).encode() + b"\n")

    def close(self) -> None:
        """Signal EOF."""
        self._queue.put_nowait(b"")

    async def read(self, n: int = -1) -> bytes:
        data = await self._queue.get()
        if not data:
            self._queue.put_nowait(b"")
        return data


def _make_mock_process(*, exit_on_interrupt: bool = True) -> MagicMock:
    """Create a mock subprocess whose pipes and exit are driven by the test.

    ``proc.finish(code)`` closes both output pipes and lets ``wait()``
    return *code*.  SIGINT finishes with 130 unless *exit_on_interrupt*
    is ``False``; terminate and kill always finish.
    """
    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = None
    proc.stdout = MockPipe()
    proc.stderr = MockPipe()

    stdin = MagicMock()
    stdin.write = MagicMock()
    stdin.drain = AsyncMock()
    stdin.close = MagicMock()
    stdin.wait_closed = AsyncMock()
    proc.stdin = stdin

    exited = asyncio.Event()

    def finish(code: int) -> None:
        if exited.is_set():
            return
        proc.returncode = code
        proc.stdout.close()
        proc.stderr.close()
        exited.set()

    async def wait() -> int:
        await exited.wait()
        return proc.returncode

    def on_signal(sig: int) -> None:
        if exit_on_interrupt:
            finish(130)

    proc.finish = finish
    proc.wait = wait
    proc.send_signal = MagicMock(side_effect=on_signal)
    proc.terminate = MagicMock(side_effect=lambda: finish(-15))
    proc.kill = MagicMock(side_effect=lambda: finish(-9))
    return proc


def _make_process(
    tmp_path: Path,
    *,
    permission_mode: str = "bypassPermissions",
    **kwargs: Any,
) -> AgentProcess:
    settings = kwargs.pop(
        "settings",
        AgentSettings(binary="claude", permission_mode=permission_mode),
    )
    return AgentProcess("s1", tmp_path, settings=settings, **kwargs)


def _written(proc: MagicMock) -> list[bytes]:
    return [c.args[0] for c in proc.stdin.write.call_args_list]


async def _drain(process: AgentProcess) -> list[ProcessEvent]:
    """Collect events up to and including the exit (or failure) event."""
    events: list[ProcessEvent] = []
    while True:
        event = await asyncio.wait_for(process.events.get(), timeout=2.0)
        events.append(event)
        if isinstance(event, ProcessExited | ProcessFailed):
            return events


# ------------------------------------------------------------------ #
# Command line and environment
# ------------------------------------------------------------------ #


class TestBuildArgs:
    def test_bypass_mode(self, tmp_path: Path) -> None:
        assert _make_process(tmp_path).build_args() == [
            "claude",
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]

    def test_model_and_resume(self, tmp_path: Path) -> None:
        args = _make_process(tmp_path, model="opus", resume_token="tok-1").build_args()
        assert args[args.index("--model") + 1] == "opus"
        assert args[args.index("--resume") + 1] == "tok-1"

    def test_interactive_mode(self, tmp_path: Path) -> None:
        args = _make_process(tmp_path, permission_mode="acceptEdits").build_args()
        assert args[args.index("--input-format") + 1] == "stream-json"
        assert args[args.index("--permission-prompt-tool") + 1] == "stdio"
        assert args[args.index("--permission-mode") + 1] == "acceptEdits"
        assert "--dangerously-skip-permissions" not in args

    def test_extra_args_last(self, tmp_path: Path) -> None:
        settings = AgentSettings(binary="claude", extra_args=["--max-turns", "5"])
        args = _make_process(tmp_path, settings=settings).build_args()
        assert args[-2:] == ["--max-turns", "5"]

    def test_configured_binary_expanded(self, tmp_path: Path) -> None:
        settings = AgentSettings(binary="~/bin/claude")
        args = _make_process(tmp_path, settings=settings).build_args()
        assert args[0] == str(Path.home() / "bin" / "claude")


class TestBuildEnv:
    def test_team_mode_flag(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(AGENT_TEAMS_ENV, raising=False)
        assert AGENT_TEAMS_ENV not in _make_process(tmp_path).build_env()
        assert _make_process(tmp_path, team_mode=True).build_env()[AGENT_TEAMS_ENV] == "1"

    def test_api_key_injected(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MY_AGENT_KEY", "sk-test")
        settings = AgentSettings(binary="claude", api_key_env="MY_AGENT_KEY")
        env = _make_process(tmp_path, settings=settings).build_env()
        assert env["ANTHROPIC_API_KEY"] == "sk-test"

    def test_missing_api_key_warns(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        monkeypatch.delenv("MY_AGENT_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        settings = AgentSettings(binary="claude", api_key_env="MY_AGENT_KEY")
        with caplog.at_level(logging.WARNING):
            env = _make_process(tmp_path, settings=settings).build_env()
        assert "ANTHROPIC_API_KEY" not in env
        assert "MY_AGENT_KEY is not set" in caplog.text

    def test_base_url(self, tmp_path: Path) -> None:
        settings = AgentSettings(binary="claude", base_url="http://localhost:8080")
        env = _make_process(tmp_path, settings=settings).build_env()
        assert env["ANTHROPIC_BASE_URL"] == "http://localhost:8080"

    def test_node_heap_limit(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("NODE_OPTIONS", raising=False)
        env = _make_process(tmp_path).build_env()
        assert env["NODE_OPTIONS"] == "--max-old-space-size=2048"

        monkeypatch.setenv("NODE_OPTIONS", "--enable-source-maps")
        env = _make_process(tmp_path).build_env()
        assert env["NODE_OPTIONS"] == "--enable-source-maps --max-old-space-size=2048"

    def test_node_heap_limit_respects_existing(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("NODE_OPTIONS", "--max-old-space-size=512")
        env = _make_process(tmp_path).build_env()
        assert env["NODE_OPTIONS"] == "--max-old-space-size=512"

    def test_node_heap_limit_disabled(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("NODE_OPTIONS", raising=False)
        settings = AgentSettings(binary="claude", node_heap_limit_mb=0)
        assert "NODE_OPTIONS" not in _make_process(tmp_path, settings=settings).build_env()


# ------------------------------------------------------------------ #
# Start
# ------------------------------------------------------------------ #


class TestStart:
    async def test_bypass_writes_instruction_and_closes_stdin(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process()
        process = _make_process(tmp_path)

        with patch("asyncio.create_subprocess_exec", return_value=mock_proc) as mock_exec:
            await process.start("Fix the tests")

        assert mock_exec.call_args.args[0] == "claude"
        kwargs = mock_exec.call_args.kwargs
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["start_new_session"] is True
        assert _written(mock_proc) == [b"Fix the tests"]
        mock_proc.stdin.close.assert_called_once()
        assert process.pid == 4242
        assert process.running

        mock_proc.finish(0)
        assert await process.wait() == 0

    async def test_interactive_sends_user_message(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process()
        process = _make_process(tmp_path, permission_mode="default", resume_token="tok-1")

        with patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            await process.start("Refactor")

        message = json.loads(_written(mock_proc)[0])
        assert message["type"] == "user"
        assert message["session_id"] == "tok-1"
        assert message["message"] == {"role": "user", "content": "Refactor"}
        mock_proc.stdin.close.assert_not_called()

        # stdin stays open for control responses until the result record.
        mock_proc.stdout.feed_json({"type": "result", "subtype": "success"})
        event = await asyncio.wait_for(process.events.get(), timeout=2.0)
        assert isinstance(event, RecordMessage)
        mock_proc.stdin.close.assert_called_once()

        mock_proc.finish(0)
        await process.wait()

    async def test_second_start_raises(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process()
        process = _make_process(tmp_path)

        with patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            await process.start("one")
            with pytest.raises(ProcessStateError):
                await process.start("two")

        mock_proc.finish(0)
        await process.wait()

    async def test_missing_working_directory(self, tmp_path: Path) -> None:
        process = _make_process(tmp_path / "missing")

        with patch("asyncio.create_subprocess_exec") as mock_exec:
            with pytest.raises(SpawnError, match="does not exist"):
                await process.start("hi")

        mock_exec.assert_not_called()
        event = process.events.get_nowait()
        assert isinstance(event, ProcessFailed)

    async def test_binary_not_found(self, tmp_path: Path) -> None:
        process = _make_process(tmp_path)

        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError):
            with pytest.raises(SpawnError, match="Agent CLI not found: claude"):
                await process.start("hi")

        event = process.events.get_nowait()
        assert isinstance(event, ProcessFailed)
        assert "npm install" in event.reason

    async def test_os_error(self, tmp_path: Path) -> None:
        process = _make_process(tmp_path)

        with patch(
            "asyncio.create_subprocess_exec", side_effect=PermissionError("denied")
        ):
            with pytest.raises(SpawnError, match="Failed to spawn agent CLI"):
                await process.start("hi")

        assert isinstance(process.events.get_nowait(), ProcessFailed)


# ------------------------------------------------------------------ #
# Output events
# ------------------------------------------------------------------ #


class TestEvents:
    async def test_records_in_order_then_exit(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process()
        process = _make_process(tmp_path)

        with patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            await process.start("go")

        init = json.dumps({"type": "system", "subtype": "init", "session_id": "tok-1"})
        mock_proc.stdout.feed(init[:10].encode())
        mock_proc.stdout.feed(init[10:].encode() + b"\n")
        mock_proc.stdout.feed_json(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}}
        )
        mock_proc.stdout.feed(json.dumps({"type": "result", "session_id": "tok-2"}).encode())
        mock_proc.stderr.feed(b"\x1b[33mwarning: slow\x1b[0m\n\n")
        mock_proc.finish(0)

        events = await _drain(process)

        records = [e.record for e in events if isinstance(e, RecordMessage)]
        assert [type(r) for r in records] == [InitRecord, AssistantRecord, ResultRecord]
        assert [e.text for e in events if isinstance(e, StderrLine)] == ["warning: slow"]
        assert events[-1] == ProcessExited(0)
        assert process.resume_token == "tok-2"
        assert process.exit_code == 0
        assert process.stderr_text == "warning: slow"

    async def test_nonzero_exit(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process()
        process = _make_process(tmp_path)

        with patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            await process.start("go")

        mock_proc.stderr.feed(b"fatal: out of memory\n")
        mock_proc.finish(1)

        events = await _drain(process)
        assert events[-1] == ProcessExited(1)
        assert not process.running

    async def test_exactly_one_exit_event(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process()
        process = _make_process(tmp_path)

        with patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            await process.start("go")

        mock_proc.finish(0)
        await _drain(process)
        await process.close()
        assert process.events.empty()


# ------------------------------------------------------------------ #
# Control channel
# ------------------------------------------------------------------ #


class TestControlChannel:
    async def _start_interactive(self, tmp_path: Path) -> tuple[AgentProcess, MagicMock]:
        mock_proc = _make_mock_process()
        process = _make_process(tmp_path, permission_mode="default")
        with patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            await process.start("go")
        return process, mock_proc

    async def test_allow_echoes_original_input(self, tmp_path: Path) -> None:
        process, mock_proc = await self._start_interactive(tmp_path)

        await process.send_permission_response("req-1", AllowDecision(), {"file_path": "a"})

        assert json.loads(_written(mock_proc)[-1]) == {
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": "req-1",
                "response": {"behavior": "allow", "updatedInput": {"file_path": "a"}},
            },
        }
        mock_proc.finish(0)
        await process.wait()

    async def test_allow_with_rewritten_input(self, tmp_path: Path) -> None:
        process, mock_proc = await self._start_interactive(tmp_path)

        decision = AllowDecision(updated_input={"file_path": "b"}, updated_permissions=[{"type": "addRules"}])
        await process.send_permission_response("req-1", decision, {"file_path": "a"})

        response = json.loads(_written(mock_proc)[-1])["response"]["response"]
        assert response == {
            "behavior": "allow",
            "updatedInput": {"file_path": "b"},
            "updatedPermissions": [{"type": "addRules"}],
        }
        mock_proc.finish(0)
        await process.wait()

    async def test_deny(self, tmp_path: Path) -> None:
        process, mock_proc = await self._start_interactive(tmp_path)

        await process.send_permission_response("req-2", DenyDecision())

        response = json.loads(_written(mock_proc)[-1])["response"]
        assert response["request_id"] == "req-2"
        assert response["response"] == {"behavior": "deny", "message": "User denied"}
        mock_proc.finish(0)
        await process.wait()

    async def test_acknowledge_control(self, tmp_path: Path) -> None:
        process, mock_proc = await self._start_interactive(tmp_path)

        await process.acknowledge_control("req-3")

        response = json.loads(_written(mock_proc)[-1])["response"]
        assert response == {
            "subtype": "success",
            "request_id": "req-3",
            "response": {"behavior": "allow"},
        }
        mock_proc.finish(0)
        await process.wait()

    async def test_write_after_stdin_closed_is_dropped(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process()
        process = _make_process(tmp_path)
        with patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            await process.start("go")

        await process.acknowledge_control("req-4")

        assert _written(mock_proc) == [b"go"]
        mock_proc.finish(0)
        await process.wait()

    async def test_broken_pipe_does_not_raise(self, tmp_path: Path) -> None:
        process, mock_proc = await self._start_interactive(tmp_path)
        mock_proc.stdin.write.side_effect = BrokenPipeError

        await process.acknowledge_control("req-5")
        await process.acknowledge_control("req-6")

        # The second write is dropped once the pipe is known to be broken.
        assert mock_proc.stdin.write.call_count == 2
        mock_proc.finish(0)
        await process.wait()


# ------------------------------------------------------------------ #
# Interrupt and shutdown
# ------------------------------------------------------------------ #


class TestShutdown:
    async def test_interrupt_signals_once(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process(exit_on_interrupt=False)
        process = _make_process(tmp_path)
        with patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            await process.start("go")

        assert process.interrupt() is True
        assert process.interrupt() is False
        mock_proc.send_signal.assert_called_once_with(signal.SIGINT)
        assert process.interrupted

        mock_proc.finish(130)
        await process.wait()

    async def test_interrupt_before_start(self, tmp_path: Path) -> None:
        process = _make_process(tmp_path)
        assert process.interrupt() is False
        await process.close()

    async def test_close_graceful(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process()
        process = _make_process(tmp_path)
        with patch("asyncio.create_subprocess_exec", return_value=mock_proc):
            await process.start("go")

        await process.close()

        mock_proc.send_signal.assert_called_once_with(signal.SIGINT)
        mock_proc.terminate.assert_not_called()
        assert process.exit_code == 130
        events = await _drain(process)
        assert events[-1] == ProcessExited(130)

    async def test_close_escalates_to_terminate(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process(exit_on_interrupt=False)
        process = _make_process(tmp_path, close_grace=0.05)
        with (
            patch("asyncio.create_subprocess_exec", return_value=mock_proc),
            patch("teamstream.agent.process._SIGTERM_WAIT", 0.05),
        ):
            await process.start("go")
            await process.close()

        mock_proc.terminate.assert_called_once()
        mock_proc.kill.assert_not_called()
        assert process.exit_code == -15

    async def test_close_escalates_to_kill(self, tmp_path: Path) -> None:
        mock_proc = _make_mock_process(exit_on_interrupt=False)
        mock_proc.terminate = MagicMock()
        process = _make_process(tmp_path, close_grace=0.05)
        with (
            patch("asyncio.create_subprocess_exec", return_value=mock_proc),
            patch("teamstream.agent.process._SIGTERM_WAIT", 0.05),
        ):
            await process.start("go")
            await process.close()

        mock_proc.terminate.assert_called_once()
        mock_proc.kill.assert_called_once()
        assert process.exit_code == -9
