"""Orchestrator — the inbound interface of the orchestration layer."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from teamstream.config.models import TeamstreamConfig
from teamstream.errors import SessionNotFoundError, UnknownControlActionError
from teamstream.orchestrator.registry import SessionRegistry
from teamstream.orchestrator.resume import Sleep
from teamstream.orchestrator.stream import SessionStream
from teamstream.orchestrator.workstate import FileWorkStateReader, WorkStateReader
from teamstream.session.models import (
    DEFAULT_TITLE,
    PermissionResponse,
    title_from_message,
)
from teamstream.session.store import SessionStore

logger = logging.getLogger(__name__)


class Orchestrator:
    """Starts session streams and routes control and permission calls to them.

    Owns one :class:`SessionRegistry`; every session id has at most one
    live stream and one live agent process.
    """

    def __init__(
        self,
        store: SessionStore,
        config: TeamstreamConfig | None = None,
        *,
        work_state: WorkStateReader | None = None,
        registry: SessionRegistry | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._config = config or TeamstreamConfig()
        self._work_state = work_state or FileWorkStateReader(self._config.team.claude_home)
        self.registry = registry or SessionRegistry()
        self._sleep = sleep
        self._streams: dict[str, SessionStream] = {}

    @property
    def streams(self) -> dict[str, SessionStream]:
        return dict(self._streams)

    async def start(
        self,
        session_id: str,
        instruction: str,
        *,
        working_directory: str | Path | None = None,
        model: str | None = None,
        resume_token: str | None = None,
        team_mode: bool | None = None,
    ) -> SessionStream:
        """Open a new event stream for *session_id*.

        Raises:
            SessionNotFoundError: If the store has no such session.
        """
        session = self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        self._store.add_message(session_id, "user", instruction)
        title = title_from_message(instruction)
        if session.title == DEFAULT_TITLE and title:
            self._store.update_title(session_id, title)

        cwd = _resolve_working_directory(working_directory, session.working_directory)
        effective_model = model or session.model or self._config.model
        token = resume_token if resume_token is not None else session.resume_token
        team = self._config.team.enabled if team_mode is None else team_mode

        previous = self._streams.pop(session_id, None)
        if previous is not None and not previous.finished:
            logger.info("%s: replacing active stream", session_id)
            await previous.aclose()

        logger.info(
            "%s: starting stream (cwd=%s, resume=%s, team=%s)",
            session_id,
            cwd,
            token or "-",
            team,
        )
        stream = SessionStream(
            session_id,
            instruction,
            store=self._store,
            registry=self.registry,
            work_state=self._work_state,
            config=self._config,
            working_directory=cwd,
            model=effective_model,
            resume_token=token or None,
            team_mode=team,
            sleep=self._sleep,
        )
        self._streams[session_id] = stream
        stream.add_done_callback(self._forget_stream)
        return stream.open()

    def _forget_stream(self, stream: SessionStream) -> None:
        if self._streams.get(stream.session_id) is stream:
            del self._streams[stream.session_id]

    async def send_control(self, session_id: str, action: str) -> bool:
        """Apply ``interrupt`` or ``close`` to the session's live process.

        Returns ``False`` when the session has no live process.

        Raises:
            UnknownControlActionError: For any other action.
        """
        if action == "interrupt":
            return self.registry.interrupt(session_id)
        if action == "close":
            stream = self._streams.get(session_id)
            if stream is not None:
                stream.cancel()
            return await self.registry.close(session_id)
        raise UnknownControlActionError(action)

    def respond_permission(self, response: PermissionResponse) -> bool:
        """Deliver a client decision to whichever stream is waiting for it."""
        for stream in self._streams.values():
            if response.permission_request_id in stream.broker:
                return stream.respond_permission(
                    response.permission_request_id, response.decision
                )
        logger.warning(
            "no pending permission request %s", response.permission_request_id
        )
        return False

    async def shutdown(self) -> None:
        """Cancel every stream and close every process."""
        streams = list(self._streams.values())
        self._streams.clear()
        for stream in streams:
            stream.cancel()
        await asyncio.gather(*(s.aclose() for s in streams), return_exceptions=True)
        await self.registry.close_all()


def _resolve_working_directory(
    requested: str | Path | None, stored: str
) -> Path:
    """Request argument, then the session's directory, then the current one."""
    if requested and str(requested) != "/":
        return Path(requested)
    if stored:
        return Path(stored)
    return Path(os.getcwd())
