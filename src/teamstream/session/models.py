"""Pydantic v2 models for sessions, client events and permission decisions."""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

#: Title of a session that has not been named yet.
DEFAULT_TITLE = "New Chat"

#: Auto-generated titles keep this many characters of the first message.
TITLE_MAX_CHARS = 50

# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class Session(BaseModel):
    """A logical conversation that persists across many process runs."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(description="Opaque session identifier")
    working_directory: str = Field(default="", description="Agent working directory")
    model: str | None = Field(default=None, description="Selected model")
    resume_token: str = Field(
        default="",
        description="Latest resume token reported by the agent (empty until known)",
    )
    title: str = Field(default=DEFAULT_TITLE, description="Display title")


def title_from_message(message: str) -> str:
    """First ``TITLE_MAX_CHARS`` characters of *message*, with ``...`` when cut."""
    text = message.strip()
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


class StoredMessage(BaseModel):
    """One persisted message of a session transcript."""

    model_config = ConfigDict(extra="forbid")

    role: Literal["user", "assistant"]
    content: str
    ts: str = Field(description="ISO 8601 timestamp with milliseconds")


# ---------------------------------------------------------------------------
# Client event payloads
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class StatusPayload(_Payload):
    """Session metadata reported when the agent initializes."""

    session_id: str | None = None
    model: str | None = None
    tools: list[str] | None = None
    slash_commands: list[str] | None = None
    skills: list[Any] | None = None


class NotificationPayload(_Payload):
    """A user-visible notice (hooks, resume cycles)."""

    notification: Literal[True] = True
    title: str
    message: str


class CompactingPayload(_Payload):
    """Context-compaction status reported by the agent."""

    compacting: Literal[True] = True
    status: str | None = None


class ToolUsePayload(_Payload):
    id: str
    name: str
    input: Any = None


class ToolResultPayload(_Payload):
    tool_use_id: str
    content: str
    is_error: bool = False


class ToolProgressPayload(_Payload):
    """Periodic progress for a long-running tool call."""

    progress: Literal[True] = Field(default=True, alias="_progress")
    tool_use_id: str | None = None
    tool_name: str
    elapsed_time_seconds: float | None = None


class PermissionRequestPayload(_Payload):
    """Everything the client needs to approve or deny a tool invocation."""

    permission_request_id: str = Field(alias="permissionRequestId")
    tool_name: str = Field(alias="toolName")
    tool_input: Any = Field(default=None, alias="toolInput")
    suggestions: list[Any] | None = None
    decision_reason: str | None = Field(default=None, alias="decisionReason")
    blocked_path: str | None = Field(default=None, alias="blockedPath")
    tool_use_id: str | None = Field(default=None, alias="toolUseId")


class TaskNotificationPayload(_Payload):
    task_id: str
    status: str
    summary: str = ""


class UsagePayload(_Payload):
    """Token and cost figures from the terminal result record."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    cost_usd: float | None = None


class ResultPayload(_Payload):
    subtype: str = "success"
    is_error: bool = False
    num_turns: int | None = None
    duration_ms: int | None = None
    session_id: str | None = None
    usage: UsagePayload | None = None


# ---------------------------------------------------------------------------
# Client events
# ---------------------------------------------------------------------------


class _EventBase(BaseModel):
    """Common envelope: every client event is a ``type`` plus a ``data`` payload."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_wire(self) -> dict[str, Any]:
        """Serialize to a plain ``{"type": ..., "data": ...}`` mapping."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StatusEvent(_EventBase):
    type: Literal["status"] = "status"
    data: StatusPayload | NotificationPayload | CompactingPayload


class TextEvent(_EventBase):
    type: Literal["text"] = "text"
    data: str


class ThinkingEvent(_EventBase):
    """Reasoning fragment; streamed to the client but never persisted."""

    type: Literal["thinking"] = "thinking"
    data: str


class ToolUseEvent(_EventBase):
    type: Literal["tool_use"] = "tool_use"
    data: ToolUsePayload


class ToolResultEvent(_EventBase):
    type: Literal["tool_result"] = "tool_result"
    data: ToolResultPayload


class ToolOutputEvent(_EventBase):
    type: Literal["tool_output"] = "tool_output"
    data: str | ToolProgressPayload


class PermissionRequestEvent(_EventBase):
    type: Literal["permission_request"] = "permission_request"
    data: PermissionRequestPayload


class TaskNotificationEvent(_EventBase):
    type: Literal["task_notification"] = "task_notification"
    data: TaskNotificationPayload


class ResultEvent(_EventBase):
    type: Literal["result"] = "result"
    data: ResultPayload


class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    data: str


class DoneEvent(_EventBase):
    """Always the final event of a stream."""

    type: Literal["done"] = "done"
    data: str = ""


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


ClientEvent = Annotated[
    Annotated[StatusEvent, Tag("status")]
    | Annotated[TextEvent, Tag("text")]
    | Annotated[ThinkingEvent, Tag("thinking")]
    | Annotated[ToolUseEvent, Tag("tool_use")]
    | Annotated[ToolResultEvent, Tag("tool_result")]
    | Annotated[ToolOutputEvent, Tag("tool_output")]
    | Annotated[PermissionRequestEvent, Tag("permission_request")]
    | Annotated[TaskNotificationEvent, Tag("task_notification")]
    | Annotated[ResultEvent, Tag("result")]
    | Annotated[ErrorEvent, Tag("error")]
    | Annotated[DoneEvent, Tag("done")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all client-facing event types."""


def format_sse(event: _EventBase) -> str:
    """Render *event* as one server-sent-events frame."""
    return f"data: {json.dumps(event.to_wire(), ensure_ascii=False)}\n\n"


# ---------------------------------------------------------------------------
# Permission decisions
# ---------------------------------------------------------------------------


class AllowDecision(_Payload):
    """Let the tool run, optionally with rewritten input or new session rules."""

    behavior: Literal["allow"] = "allow"
    updated_permissions: list[Any] | None = Field(
        default=None, alias="updatedPermissions"
    )
    updated_input: dict[str, Any] | None = Field(default=None, alias="updatedInput")

    def to_control_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class DenyDecision(_Payload):
    """Refuse the tool invocation."""

    behavior: Literal["deny"] = "deny"
    message: str | None = None

    def to_control_payload(self) -> dict[str, Any]:
        return {"behavior": "deny", "message": self.message or "User denied"}


PermissionDecision = Annotated[
    AllowDecision | DenyDecision,
    Field(discriminator="behavior"),
]


class PermissionResponse(_Payload):
    """Client answer to a ``permission_request`` event."""

    permission_request_id: str = Field(alias="permissionRequestId")
    decision: PermissionDecision
