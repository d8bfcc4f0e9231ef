"""Shared constants and type aliases for the teamstream runtime."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

#: Instruction sent to the agent on every resume cycle.
CONTINUE_INSTRUCTION = (
    "Check your inbox for messages from your teammates. Process every update "
    "and keep managing the team until all tasks are complete."
)

#: Env var that switches the agent CLI into team mode.
AGENT_TEAMS_ENV = "CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS"

#: Permission mode that skips every permission prompt.
BYPASS_PERMISSIONS = "bypassPermissions"

#: Callback invoked with a human-readable reason when a run stalls.
StallCallback = Callable[[str], Awaitable[None]]
