"""ResumeController — keeps a team session going after the lead agent exits.

In team mode the lead agent often exits while teammates are still busy.
The controller waits a poll interval, checks the shared work state, and
when work remains starts another run with the latest resume token and a
fixed "check your inbox" instruction.  The loop is bounded by
``max_cycles`` and ends early on abort or on any failed run.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace

from teamstream.constants import CONTINUE_INSTRUCTION
from teamstream.orchestrator.workstate import WorkStateReader, has_active_work

logger = logging.getLogger(__name__)


class ResumeState(enum.Enum):
    RUNNING = "running"
    EVALUATING = "evaluating"
    DONE = "done"


@dataclass(frozen=True)
class RunOutcome:
    """What one process run left behind."""

    exit_code: int | None
    resume_token: str | None = None
    team_name: str | None = None
    aborted: bool = False
    error: str | None = None


RunOnce = Callable[[str, str | None], Awaitable[RunOutcome]]
CycleCallback = Callable[[int], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class ResumeController:
    """State machine: RUNNING -> EVALUATING -> (RUNNING | DONE)."""

    def __init__(
        self,
        work_state: WorkStateReader,
        *,
        poll_interval: float = 5.0,
        max_cycles: int = 30,
        cancel_event: asyncio.Event | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._work_state = work_state
        self._poll_interval = poll_interval
        self._max_cycles = max_cycles
        self._cancel_event = cancel_event or asyncio.Event()
        self._sleep = sleep
        self.state = ResumeState.RUNNING
        self.cycles = 0

    @property
    def aborted(self) -> bool:
        return self._cancel_event.is_set()

    def should_resume(self, outcome: RunOutcome, team_mode: bool) -> bool:
        """A run hands off to evaluation only in team mode with a token."""
        return (
            team_mode
            and bool(outcome.resume_token)
            and not outcome.aborted
            and outcome.error is None
            and not self.aborted
        )

    async def evaluate(self, team: str | None) -> bool:
        """Wait one poll interval, then report whether another cycle should run."""
        self.state = ResumeState.EVALUATING
        if self.cycles >= self._max_cycles:
            logger.info("resume limit of %d cycle(s) reached", self._max_cycles)
            return False

        await self._sleep_unless_aborted(self._poll_interval)
        if self.aborted:
            return False

        active = await asyncio.to_thread(has_active_work, self._work_state, team)
        logger.info(
            "resume check %d: active work for %s = %s",
            self.cycles + 1,
            team or "all teams",
            active,
        )
        return active

    async def drive(
        self,
        run_once: RunOnce,
        instruction: str,
        resume_token: str | None,
        team_mode: bool,
        on_cycle: CycleCallback | None = None,
    ) -> RunOutcome:
        """Run the first instruction, then resume while the team has work."""
        self.state = ResumeState.RUNNING
        outcome = await run_once(instruction, resume_token)

        while self.should_resume(outcome, team_mode):
            if not await self.evaluate(outcome.team_name):
                break

            self.cycles += 1
            if on_cycle is not None:
                await on_cycle(self.cycles)

            self.state = ResumeState.RUNNING
            previous = outcome
            outcome = await run_once(CONTINUE_INSTRUCTION, previous.resume_token)
            outcome = replace(
                outcome,
                resume_token=outcome.resume_token or previous.resume_token,
                team_name=outcome.team_name or previous.team_name,
            )
            if outcome.error is not None:
                logger.error("resume cycle %d failed: %s", self.cycles, outcome.error)

        self.state = ResumeState.DONE
        return outcome

    async def _sleep_unless_aborted(self, seconds: float) -> None:
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
