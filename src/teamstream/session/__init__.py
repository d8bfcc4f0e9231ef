"""Sessions — client event models, permission decisions and the session store."""

from teamstream.session.models import (
    AllowDecision,
    ClientEvent,
    DenyDecision,
    DoneEvent,
    ErrorEvent,
    PermissionDecision,
    PermissionRequestEvent,
    PermissionResponse,
    ResultEvent,
    Session,
    StatusEvent,
    TextEvent,
    ThinkingEvent,
    ToolOutputEvent,
    ToolResultEvent,
    ToolUseEvent,
    format_sse,
)
from teamstream.session.store import FileSessionStore, SessionStore

__all__ = [
    "AllowDecision",
    "ClientEvent",
    "DenyDecision",
    "DoneEvent",
    "ErrorEvent",
    "FileSessionStore",
    "PermissionDecision",
    "PermissionRequestEvent",
    "PermissionResponse",
    "ResultEvent",
    "Session",
    "SessionStore",
    "StatusEvent",
    "TextEvent",
    "ThinkingEvent",
    "ToolOutputEvent",
    "ToolResultEvent",
    "ToolUseEvent",
    "format_sse",
]
