"""Exception types raised by the orchestration layer."""

from __future__ import annotations


class TeamstreamError(Exception):
    """Base class for all teamstream errors."""


class SpawnError(TeamstreamError):
    """The agent process could not be started."""


class ProcessStateError(TeamstreamError):
    """An agent process was used in a state that does not allow the call."""


class SessionNotFoundError(TeamstreamError):
    """No session with the requested id exists in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class UnknownControlActionError(TeamstreamError):
    """A control request named an action other than interrupt or close."""

    def __init__(self, action: str) -> None:
        super().__init__(f"Unknown action: {action}")
        self.action = action
