"""BackgroundLoop — periodic async task that stops on a shared event.

Subclasses implement :meth:`_tick`; the base class owns the task, the
interval wait and the error policy (a failing tick is logged, the loop
keeps going).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

logger = logging.getLogger(__name__)


class BackgroundLoop:
    """Run :meth:`_tick` every *interval* seconds until *shutdown_event* is set."""

    def __init__(
        self,
        shutdown_event: asyncio.Event,
        interval: int | float,
    ) -> None:
        self._shutdown_event = shutdown_event
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Spawn the loop task; a no-op when it is already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=type(self).__name__)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _tick(self) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    async def _wait_interval(self) -> bool:
        """Wait one interval; ``True`` means shutdown was signalled meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval)
        except TimeoutError:
            return False
        return True

    async def _run(self) -> None:
        with contextlib.suppress(asyncio.CancelledError):
            while not self._shutdown_event.is_set():
                if await self._wait_interval():
                    return
                try:
                    await self._tick()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("%s: tick failed", type(self).__name__)
