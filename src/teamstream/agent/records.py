"""Decoded records — one per line of agent ``stream-json`` output.

Records are transient: each one lives only for a single translation step.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


# ------------------------------------------------------------------ #
# Content blocks
# ------------------------------------------------------------------ #


class TextBlock(_Record):
    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(_Record):
    type: Literal["thinking"] = "thinking"
    thinking: str


class ToolUseBlock(_Record):
    type: Literal["tool_use"] = "tool_use"
    id: str = ""
    name: str = ""
    input: Any = None


class ToolResultBlock(_Record):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = ""
    content: str = Field(default="", description="Flattened to plain text")
    is_error: bool = False


AssistantBlock = TextBlock | ThinkingBlock | ToolUseBlock


# ------------------------------------------------------------------ #
# Records
# ------------------------------------------------------------------ #


class InitRecord(_Record):
    """``system/init``: the agent is up and reports a fresh resume token."""

    kind: Literal["init"] = "init"
    session_id: str | None = None
    model: str | None = None
    cwd: str | None = None
    tools: list[str] = Field(default_factory=list)
    slash_commands: list[str] = Field(default_factory=list)
    skills: list[Any] = Field(default_factory=list)


class AssistantRecord(_Record):
    """An assistant turn: text, thinking and tool invocations in declared order."""

    kind: Literal["assistant"] = "assistant"
    blocks: list[AssistantBlock] = Field(default_factory=list)


class ToolResultRecord(_Record):
    """Tool results fed back to the model (a ``user`` line)."""

    kind: Literal["tool_result"] = "tool_result"
    results: list[ToolResultBlock] = Field(default_factory=list)
    tool_use_result: dict[str, Any] | None = None


class ResultRecord(_Record):
    """Terminal result of one run."""

    kind: Literal["result"] = "result"
    subtype: str = "success"
    is_error: bool = False
    num_turns: int | None = None
    duration_ms: int | None = None
    session_id: str | None = None
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    result: str | None = None


class TaskNotificationRecord(_Record):
    kind: Literal["task_notification"] = "task_notification"
    task_id: str = ""
    status: str = ""
    summary: str = ""


class SystemStatusRecord(_Record):
    """``system/status``: currently only context compaction."""

    kind: Literal["system_status"] = "system_status"
    status: str | None = None


class HookRecord(_Record):
    kind: Literal["hook"] = "hook"
    subtype: str
    hook_name: str | None = None


class ToolProgressRecord(_Record):
    kind: Literal["tool_progress"] = "tool_progress"
    tool_use_id: str | None = None
    tool_name: str = ""
    elapsed_time_seconds: float | None = None


class PermissionRequestRecord(_Record):
    """``control_request/can_use_tool``: the agent waits for an answer."""

    kind: Literal["permission_request"] = "permission_request"
    request_id: str
    tool_name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    suggestions: list[Any] | None = None
    blocked_path: str | None = None
    decision_reason: str | None = None
    tool_use_id: str | None = None


class ControlRequestRecord(_Record):
    """Any other control request; acknowledged without client involvement."""

    kind: Literal["control_request"] = "control_request"
    request_id: str
    subtype: str = ""


class RawRecord(_Record):
    """A line that was not a JSON object."""

    kind: Literal["raw"] = "raw"
    text: str


class UnknownRecord(_Record):
    """Valid JSON of a type this layer does not translate."""

    kind: Literal["unknown"] = "unknown"
    type: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


DecodedRecord = (
    InitRecord
    | AssistantRecord
    | ToolResultRecord
    | ResultRecord
    | TaskNotificationRecord
    | SystemStatusRecord
    | HookRecord
    | ToolProgressRecord
    | PermissionRequestRecord
    | ControlRequestRecord
    | RawRecord
    | UnknownRecord
)
