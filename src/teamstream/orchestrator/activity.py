"""ActivitySupervisor — interrupts agent runs that have gone quiet.

Two situations count as a stall:

* the terminal result arrived but the process has not exited within
  ``post_result_grace`` seconds;
* no terminal result yet and nothing at all was heard for
  ``idle_timeout`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from teamstream.background_loop import BackgroundLoop
from teamstream.config.models import TimeoutSettings
from teamstream.constants import StallCallback

logger = logging.getLogger(__name__)


class ActivitySupervisor(BackgroundLoop):
    """Periodically checks one run for inactivity.

    Every process event (including stderr) should be reported through
    :meth:`record_activity`.  The optional *paused* predicate suspends
    stall detection, e.g. while a permission prompt is open.  The stall
    callback fires on every tick
    while the run stays stalled; stopping the supervisor ends that.
    """

    def __init__(
        self,
        session_id: str,
        on_stall: StallCallback,
        *,
        settings: TimeoutSettings | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        paused: Callable[[], bool] | None = None,
    ) -> None:
        settings = settings or TimeoutSettings()
        super().__init__(
            shutdown_event=shutdown_event or asyncio.Event(),
            interval=settings.check_interval,
        )
        self._session_id = session_id
        self._on_stall = on_stall
        self._idle_timeout = settings.idle_timeout
        self._post_result_grace = settings.post_result_grace
        self._clock = clock
        self._paused = paused
        self._last_activity = clock()
        self._terminal_seen = False

    @property
    def terminal_seen(self) -> bool:
        return self._terminal_seen

    def record_activity(self) -> None:
        self._last_activity = self._clock()

    def mark_terminal(self) -> None:
        """Note the terminal result; the exit grace period starts now."""
        self._terminal_seen = True
        self._last_activity = self._clock()

    def check(self) -> str | None:
        """Return a stall reason, or ``None`` while the run looks healthy.

        While *paused* reports true (the agent is blocked on a client
        decision) nothing counts as a stall, and the idle clock restarts
        from the moment the pause ends.
        """
        if self._paused is not None and self._paused():
            self._last_activity = self._clock()
            return None
        elapsed = self._clock() - self._last_activity
        if self._terminal_seen:
            if elapsed >= self._post_result_grace:
                return f"process still running {elapsed:.0f}s after its result"
            return None
        if elapsed >= self._idle_timeout:
            return f"idle timeout: no output for {elapsed:.0f}s"
        return None

    async def _tick(self) -> None:
        reason = self.check()
        if reason is None:
            return
        logger.warning("%s: stalled run, %s", self._session_id, reason)
        await self._on_stall(reason)
