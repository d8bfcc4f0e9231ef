"""PermissionBroker — pending tool-permission prompts awaiting a client answer."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

from teamstream.session.models import AllowDecision, DenyDecision, PermissionDecision

logger = logging.getLogger(__name__)

#: Message sent to the agent when a prompt is abandoned.
_ABORTED_MESSAGE = "Permission request aborted"


@dataclass
class _PendingPermission:
    future: asyncio.Future[PermissionDecision]
    original_input: dict[str, Any]
    watcher: asyncio.Task[None] | None = None


class PermissionBroker:
    """Correlates ``permission_request`` events with client decisions.

    Each registered id resolves exactly once: by :meth:`resolve`, by
    :meth:`deny_all`, or by its cancel event firing.  Resolved entries
    are removed, so a late or repeated answer is simply rejected.
    """

    def __init__(self, session_id: str = "") -> None:
        self._session_id = session_id
        self._pending: dict[str, _PendingPermission] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def register(
        self,
        request_id: str,
        original_input: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> asyncio.Future[PermissionDecision]:
        """Create the pending entry for *request_id*.

        Raises:
            ValueError: If *request_id* is already pending.
        """
        if request_id in self._pending:
            msg = f"Permission request already pending: {request_id}"
            raise ValueError(msg)

        future: asyncio.Future[PermissionDecision] = (
            asyncio.get_running_loop().create_future()
        )
        entry = _PendingPermission(future=future, original_input=original_input or {})
        self._pending[request_id] = entry
        if cancel_event is not None:
            entry.watcher = asyncio.create_task(
                self._deny_on_cancel(request_id, cancel_event)
            )
        logger.debug("%s: permission %s pending", self._session_id, request_id)
        return future

    def resolve(self, request_id: str, decision: PermissionDecision) -> bool:
        """Deliver *decision*.  Returns ``False`` for unknown or settled ids."""
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            return False

        if isinstance(decision, AllowDecision) and decision.updated_input is None:
            decision = decision.model_copy(update={"updated_input": entry.original_input})
        entry.future.set_result(decision)

        if entry.watcher is not None and entry.watcher is not asyncio.current_task():
            entry.watcher.cancel()
        logger.debug(
            "%s: permission %s resolved (%s)",
            self._session_id,
            request_id,
            decision.behavior,
        )
        return True

    def deny_all(self, message: str = _ABORTED_MESSAGE) -> int:
        """Deny every pending request; returns how many were denied."""
        denied = 0
        for request_id in list(self._pending):
            if self.resolve(request_id, DenyDecision(message=message)):
                denied += 1
        if denied:
            logger.info("%s: denied %d pending permission(s)", self._session_id, denied)
        return denied

    async def _deny_on_cancel(self, request_id: str, cancel_event: asyncio.Event) -> None:
        with contextlib.suppress(asyncio.CancelledError):
            await cancel_event.wait()
            self.resolve(request_id, DenyDecision(message=_ABORTED_MESSAGE))
