"""SessionStream — one client-facing event stream for one session.

Wires a run together: the registry provides the process, its records go
through the translator onto the client channel, the activity supervisor
watches for stalls, permission prompts wait in the broker, and the
resume controller decides whether another run follows.  Every exit path
ends in :meth:`SessionStream._teardown`, which runs once and always
emits ``done`` last.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from pathlib import Path

from teamstream.agent.helpers import format_stderr_preview
from teamstream.agent.process import (
    AgentProcess,
    ProcessExited,
    ProcessFailed,
    RecordMessage,
    StderrLine,
)
from teamstream.agent.records import (
    ControlRequestRecord,
    DecodedRecord,
    PermissionRequestRecord,
    ResultRecord,
)
from teamstream.agent.translator import EventTranslator
from teamstream.config.models import TeamstreamConfig
from teamstream.errors import SpawnError
from teamstream.orchestrator.activity import ActivitySupervisor
from teamstream.orchestrator.permissions import PermissionBroker
from teamstream.orchestrator.registry import SessionRegistry
from teamstream.orchestrator.resume import ResumeController, RunOutcome, Sleep
from teamstream.orchestrator.workstate import WorkStateReader
from teamstream.session.models import (
    ClientEvent,
    DoneEvent,
    ErrorEvent,
    NotificationPayload,
    PermissionDecision,
    PermissionRequestEvent,
    StatusEvent,
    ToolOutputEvent,
)
from teamstream.session.store import SessionStore

logger = logging.getLogger(__name__)


class SessionStream:
    """Async iterator of :data:`ClientEvent` for one start request.

    Call :meth:`open` to start producing; iterate to consume; call
    :meth:`cancel` (idempotent) when the client goes away.  The last
    event is always a :class:`DoneEvent`.
    """

    def __init__(
        self,
        session_id: str,
        instruction: str,
        *,
        store: SessionStore,
        registry: SessionRegistry,
        work_state: WorkStateReader,
        config: TeamstreamConfig | None = None,
        working_directory: str | Path = ".",
        model: str | None = None,
        resume_token: str | None = None,
        team_mode: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self._instruction = instruction
        self._store = store
        self._registry = registry
        self._config = config or TeamstreamConfig()
        self._working_directory = Path(working_directory)
        self._model = model
        self._resume_token = resume_token or None
        self._team_mode = team_mode
        self._clock = clock

        self.broker = PermissionBroker(session_id)
        self.translator = EventTranslator(self._resume_token)
        self._cancel_event = asyncio.Event()
        self.resume = ResumeController(
            work_state,
            poll_interval=self._config.resume.poll_interval,
            max_cycles=self._config.resume.max_cycles,
            cancel_event=self._cancel_event,
            sleep=sleep,
        )

        self._channel: asyncio.Queue[ClientEvent | None] = asyncio.Queue()
        self._producer: asyncio.Task[None] | None = None
        self._process: AgentProcess | None = None
        self._responders: set[asyncio.Task[None]] = set()
        self._persisted_token = self._resume_token
        self._torn_down = False
        self._finished = False
        self._done_callbacks: list[Callable[[SessionStream], None]] = []

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def finished(self) -> bool:
        """``True`` once ``done`` has been queued."""
        return self._finished

    @property
    def process(self) -> AgentProcess | None:
        """The process of the current run, if one was created."""
        return self._process

    def open(self) -> SessionStream:
        if self._producer is None:
            self._producer = asyncio.create_task(self._produce())
        return self

    def cancel(self) -> None:
        """Abort the stream.  Safe to call any number of times."""
        if self._cancel_event.is_set():
            return
        logger.info("%s: stream cancelled", self.session_id)
        self._cancel_event.set()

    async def aclose(self) -> None:
        """Cancel and wait until teardown has finished."""
        self.cancel()
        if self._producer is not None:
            await asyncio.shield(self._producer)

    def respond_permission(self, request_id: str, decision: PermissionDecision) -> bool:
        return self.broker.resolve(request_id, decision)

    def add_done_callback(self, callback: Callable[[SessionStream], None]) -> None:
        """Call *callback* with this stream once teardown has finished."""
        if self._finished:
            callback(self)
        else:
            self._done_callbacks.append(callback)

    def __aiter__(self) -> SessionStream:
        return self

    async def __anext__(self) -> ClientEvent:
        event = await self._channel.get()
        if event is None:
            # Keep signalling exhaustion to repeated readers.
            self._channel.put_nowait(None)
            raise StopAsyncIteration
        return event

    # ------------------------------------------------------------------ #
    # Producer
    # ------------------------------------------------------------------ #

    async def _produce(self) -> None:
        try:
            outcome = await self.resume.drive(
                self._run_once,
                self._instruction,
                self._resume_token,
                self._team_mode,
                on_cycle=self._announce_cycle,
            )
            if outcome.error is not None:
                self._emit(ErrorEvent(data=outcome.error))
        except Exception as exc:
            logger.exception("%s: stream failed", self.session_id)
            self._emit(ErrorEvent(data=str(exc) or type(exc).__name__))
        finally:
            await self._teardown()

    async def _announce_cycle(self, cycle: int) -> None:
        self._emit(
            StatusEvent(
                data=NotificationPayload(
                    title="Teams",
                    message=f"Teammate activity detected, continuing (cycle {cycle})...",
                )
            )
        )

    async def _run_once(self, instruction: str, resume_token: str | None) -> RunOutcome:
        self.translator.begin_run()
        if self.cancelled:
            return self._outcome(None)

        process = await self._registry.create(self.session_id, self._build_process(resume_token))
        self._process = process
        activity = ActivitySupervisor(
            self.session_id,
            self._on_stall,
            settings=self._config.timeouts,
            shutdown_event=self._cancel_event,
            clock=self._clock,
            paused=lambda: len(self.broker) > 0,
        )
        try:
            if self.cancelled:
                return self._outcome(None)
            try:
                await process.start(instruction)
            except SpawnError as exc:
                return self._outcome(None, error=str(exc))
            await activity.start()
            return await self._consume(process, activity)
        finally:
            await activity.stop()
            if self.cancelled:
                await process.close()
            self.broker.deny_all("Agent process exited")
            self._registry.discard(self.session_id, process)

    def _build_process(self, resume_token: str | None) -> Callable[[], AgentProcess]:
        def factory() -> AgentProcess:
            return AgentProcess(
                self.session_id,
                self._working_directory,
                model=self._model,
                resume_token=resume_token,
                settings=self._config.agent,
                close_grace=self._config.timeouts.close_grace,
                team_mode=self._team_mode,
            )

        return factory

    async def _consume(
        self, process: AgentProcess, activity: ActivitySupervisor
    ) -> RunOutcome:
        """Relay process events until exit, failure or cancellation."""
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            while True:
                getter = asyncio.ensure_future(process.events.get())
                done, _ = await asyncio.wait(
                    {getter, cancelled}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter not in done:
                    getter.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await getter
                    return self._outcome(None)

                event = getter.result()
                activity.record_activity()
                if isinstance(event, RecordMessage):
                    await self._handle_record(process, event.record, activity)
                elif isinstance(event, StderrLine):
                    self._emit(ToolOutputEvent(data=event.text))
                elif isinstance(event, ProcessFailed):
                    return self._outcome(None, error=event.reason)
                elif isinstance(event, ProcessExited):
                    return self._exit_outcome(process, event.code)
        finally:
            cancelled.cancel()

    async def _handle_record(
        self,
        process: AgentProcess,
        record: DecodedRecord,
        activity: ActivitySupervisor,
    ) -> None:
        events = self.translator.translate(record)

        if isinstance(record, ResultRecord):
            activity.mark_terminal()
        self._persist_token()

        if isinstance(record, PermissionRequestRecord):
            for event in events:
                if isinstance(event, PermissionRequestEvent):
                    self._await_permission(process, record, event, activity)
        elif isinstance(record, ControlRequestRecord):
            await process.acknowledge_control(record.request_id)

        for event in events:
            self._emit(event)

    def _await_permission(
        self,
        process: AgentProcess,
        record: PermissionRequestRecord,
        event: PermissionRequestEvent,
        activity: ActivitySupervisor,
    ) -> None:
        """Register the prompt, then answer the agent once it is decided."""
        permission_id = event.data.permission_request_id
        future = self.broker.register(permission_id, record.input, self._cancel_event)

        async def answer() -> None:
            decision = await future
            activity.record_activity()
            await process.send_permission_response(
                record.request_id, decision, record.input
            )

        task = asyncio.create_task(answer())
        self._responders.add(task)
        task.add_done_callback(self._responders.discard)

    async def _on_stall(self, reason: str) -> None:
        process = self._process
        if process is None or not process.running:
            return
        if process.interrupt():
            self._emit(ToolOutputEvent(data=f"[auto-interrupt] {reason}"))
            return
        # Already interrupted once and still running: escalate.
        await process.close()

    # ------------------------------------------------------------------ #
    # Outcomes
    # ------------------------------------------------------------------ #

    def _outcome(self, exit_code: int | None, error: str | None = None) -> RunOutcome:
        return RunOutcome(
            exit_code=exit_code,
            resume_token=self.translator.resume_token,
            team_name=self.translator.team_name,
            aborted=self.cancelled,
            error=error,
        )

    def _exit_outcome(self, process: AgentProcess, code: int | None) -> RunOutcome:
        error = None
        if (
            code not in (0, None)
            and not self.translator.terminal_seen
            and not process.interrupted
            and not self.cancelled
        ):
            error = f"Agent exited with code {code}."
            preview = format_stderr_preview(process.stderr_text)
            if preview:
                error += f" Stderr:\n  {preview}"
        return self._outcome(code, error=error)

    def _persist_token(self) -> None:
        token = self.translator.resume_token
        if not token or token == self._persisted_token:
            return
        self._persisted_token = token
        try:
            self._store.update_resume_token(self.session_id, token)
        except (KeyError, OSError) as exc:
            logger.error("%s: failed to persist resume token: %s", self.session_id, exc)

    # ------------------------------------------------------------------ #
    # Channel and teardown
    # ------------------------------------------------------------------ #

    def _emit(self, event: ClientEvent) -> None:
        if self.cancelled or self._finished:
            return
        self._channel.put_nowait(event)

    async def _teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True

        process = self._process
        if process is not None:
            await process.close()
            self._registry.discard(self.session_id, process)

        self.broker.deny_all()
        if self._responders:
            await asyncio.gather(*self._responders, return_exceptions=True)

        content = self.translator.assistant_content()
        if content:
            try:
                self._store.add_message(self.session_id, "assistant", content)
            except (KeyError, OSError) as exc:
                logger.error(
                    "%s: failed to persist assistant message: %s", self.session_id, exc
                )

        self._finished = True
        self._channel.put_nowait(DoneEvent())
        self._channel.put_nowait(None)
        logger.info("%s: stream done", self.session_id)
        callbacks, self._done_callbacks = self._done_callbacks, []
        for callback in callbacks:
            callback(self)
