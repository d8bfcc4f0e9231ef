"""SessionRegistry — at most one live agent process per session."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from teamstream.agent.process import AgentProcess

logger = logging.getLogger(__name__)

ProcessFactory = Callable[[], AgentProcess]


class SessionRegistry:
    """Maps session ids to their live :class:`AgentProcess`.

    :meth:`create` is serialized per session id, so two concurrent calls
    for the same id never leave two processes running.
    """

    def __init__(self) -> None:
        self._processes: dict[str, AgentProcess] = {}
        # Locks exist only while a create() for that id is in flight.
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._processes)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._processes

    async def create(self, session_id: str, factory: ProcessFactory) -> AgentProcess:
        """Replace any live process for *session_id* with ``factory()``.

        The previous process is fully closed before the new one is built.
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                previous = self._processes.pop(session_id, None)
                if previous is not None:
                    logger.info("%s: closing previous agent process", session_id)
                    await previous.close()
                process = factory()
                self._processes[session_id] = process
                return process
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    def get(self, session_id: str) -> AgentProcess | None:
        return self._processes.get(session_id)

    def discard(self, session_id: str, process: AgentProcess) -> bool:
        """Forget *process*, but only if it is still the registered one."""
        if self._processes.get(session_id) is not process:
            return False
        del self._processes[session_id]
        return True

    def interrupt(self, session_id: str) -> bool:
        process = self._processes.get(session_id)
        if process is None:
            return False
        return process.interrupt()

    async def close(self, session_id: str) -> bool:
        process = self._processes.pop(session_id, None)
        if process is None:
            return False
        await process.close()
        return True

    async def close_all(self) -> None:
        processes = list(self._processes.values())
        self._processes.clear()
        if processes:
            logger.info("closing %d agent process(es)", len(processes))
            await asyncio.gather(*(p.close() for p in processes), return_exceptions=True)
