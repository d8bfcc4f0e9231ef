"""Event translator — maps decoded records onto the client event vocabulary.

The mapping itself is pure.  Side information that callers need after
the run (the latest resume token, the team name, whether a terminal
result was seen, and the transcript to persist) is kept as attributes.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from teamstream.agent.records import (
    AssistantRecord,
    ControlRequestRecord,
    DecodedRecord,
    HookRecord,
    InitRecord,
    PermissionRequestRecord,
    RawRecord,
    ResultRecord,
    SystemStatusRecord,
    TaskNotificationRecord,
    TextBlock,
    ThinkingBlock,
    ToolProgressRecord,
    ToolResultRecord,
    ToolUseBlock,
    UnknownRecord,
)
from teamstream.session.models import (
    ClientEvent,
    CompactingPayload,
    NotificationPayload,
    PermissionRequestEvent,
    PermissionRequestPayload,
    ResultEvent,
    ResultPayload,
    StatusEvent,
    StatusPayload,
    TaskNotificationEvent,
    TaskNotificationPayload,
    TextEvent,
    ThinkingEvent,
    ToolOutputEvent,
    ToolProgressPayload,
    ToolResultEvent,
    ToolResultPayload,
    ToolUseEvent,
    ToolUsePayload,
    UsagePayload,
)

logger = logging.getLogger(__name__)

_USAGE_KEYS = (
    "input_tokens",
    "output_tokens",
    "cache_read_input_tokens",
    "cache_creation_input_tokens",
)


def new_permission_request_id() -> str:
    """Return a fresh client-facing permission request id."""
    return f"perm-{uuid.uuid4().hex}"


class EventTranslator:
    """Translate one stream's records into client events.

    One translator lives for a whole session stream, across resume cycles,
    so the persisted transcript covers every run.
    """

    def __init__(self, resume_token: str | None = None) -> None:
        self.resume_token = resume_token
        self.team_name: str | None = None
        self.terminal_seen = False
        self.content_blocks: list[dict[str, Any]] = []
        self._pending_text = ""

    def begin_run(self) -> None:
        """Reset per-run state before the next process starts."""
        self.terminal_seen = False

    # ------------------------------------------------------------------ #
    # Translation
    # ------------------------------------------------------------------ #

    def translate(self, record: DecodedRecord) -> list[ClientEvent]:
        if isinstance(record, InitRecord):
            self._update_token(record.session_id)
            return [
                StatusEvent(
                    data=StatusPayload(
                        session_id=record.session_id,
                        model=record.model,
                        tools=record.tools,
                        slash_commands=record.slash_commands,
                        skills=record.skills,
                    )
                )
            ]

        if isinstance(record, AssistantRecord):
            return self._translate_assistant(record)

        if isinstance(record, ToolResultRecord):
            return self._translate_tool_results(record)

        if isinstance(record, ResultRecord):
            self._update_token(record.session_id)
            self.terminal_seen = True
            return [ResultEvent(data=self._result_payload(record))]

        if isinstance(record, TaskNotificationRecord):
            return [
                TaskNotificationEvent(
                    data=TaskNotificationPayload(
                        task_id=record.task_id,
                        status=record.status,
                        summary=record.summary,
                    )
                )
            ]

        if isinstance(record, SystemStatusRecord):
            return [StatusEvent(data=CompactingPayload(status=record.status))]

        if isinstance(record, HookRecord):
            return [
                StatusEvent(
                    data=NotificationPayload(
                        title=f"Hook: {record.hook_name or record.subtype}",
                        message=record.subtype,
                    )
                )
            ]

        if isinstance(record, ToolProgressRecord):
            return [
                ToolOutputEvent(
                    data=ToolProgressPayload(
                        tool_use_id=record.tool_use_id,
                        tool_name=record.tool_name,
                        elapsed_time_seconds=record.elapsed_time_seconds,
                    )
                )
            ]

        if isinstance(record, PermissionRequestRecord):
            return [
                PermissionRequestEvent(
                    data=PermissionRequestPayload(
                        permission_request_id=new_permission_request_id(),
                        tool_name=record.tool_name,
                        tool_input=record.input,
                        suggestions=record.suggestions,
                        decision_reason=record.decision_reason,
                        blocked_path=record.blocked_path,
                        tool_use_id=record.tool_use_id,
                    )
                )
            ]

        if isinstance(record, RawRecord):
            self._pending_text += record.text
            return [TextEvent(data=record.text)]

        if isinstance(record, ControlRequestRecord | UnknownRecord):
            logger.debug("no client event for %s record", record.kind)
            return []

        logger.debug("unhandled record %r", record)
        return []

    def _translate_assistant(self, record: AssistantRecord) -> list[ClientEvent]:
        events: list[ClientEvent] = []
        for block in record.blocks:
            if isinstance(block, ThinkingBlock):
                events.append(ThinkingEvent(data=block.thinking))
            elif isinstance(block, TextBlock):
                self._pending_text += block.text
                events.append(TextEvent(data=block.text))
            elif isinstance(block, ToolUseBlock):
                self._flush_text()
                self.content_blocks.append(
                    {
                        "type": "tool_use",
                        "id": block.id,
                        "name": block.name,
                        "input": block.input,
                    }
                )
                events.append(
                    ToolUseEvent(
                        data=ToolUsePayload(
                            id=block.id, name=block.name, input=block.input
                        )
                    )
                )
        return events

    def _translate_tool_results(self, record: ToolResultRecord) -> list[ClientEvent]:
        if record.tool_use_result is not None and self.team_name is None:
            team_name = record.tool_use_result.get("team_name")
            if isinstance(team_name, str) and team_name:
                self.team_name = team_name
                logger.info("captured team name %s", team_name)

        events: list[ClientEvent] = []
        for result in record.results:
            self.content_blocks.append(
                {
                    "type": "tool_result",
                    "tool_use_id": result.tool_use_id,
                    "content": result.content,
                    "is_error": result.is_error,
                }
            )
            events.append(
                ToolResultEvent(
                    data=ToolResultPayload(
                        tool_use_id=result.tool_use_id,
                        content=result.content,
                        is_error=result.is_error,
                    )
                )
            )
        return events

    @staticmethod
    def _result_payload(record: ResultRecord) -> ResultPayload:
        usage = None
        figures: dict[str, Any] = {}
        if record.usage:
            figures = {
                key: record.usage[key]
                for key in _USAGE_KEYS
                if isinstance(record.usage.get(key), int)
            }
        if figures or record.total_cost_usd is not None:
            usage = UsagePayload(cost_usd=record.total_cost_usd, **figures)
        return ResultPayload(
            subtype=record.subtype,
            is_error=record.is_error,
            num_turns=record.num_turns,
            duration_ms=record.duration_ms,
            session_id=record.session_id,
            usage=usage,
        )

    def _update_token(self, token: str | None) -> None:
        if token:
            self.resume_token = token

    # ------------------------------------------------------------------ #
    # Persistence buffer
    # ------------------------------------------------------------------ #

    def _flush_text(self) -> None:
        if self._pending_text.strip():
            self.content_blocks.append({"type": "text", "text": self._pending_text})
        self._pending_text = ""

    def assistant_content(self) -> str:
        """Build the assistant message to persist for this stream.

        A transcript that contains tool activity is stored as a JSON array
        of content blocks; a text-only one is stored as plain text.
        Returns ``""`` when there is nothing to persist.
        """
        self._flush_text()
        if not self.content_blocks:
            return ""
        has_tools = any(
            b["type"] in ("tool_use", "tool_result") for b in self.content_blocks
        )
        if has_tools:
            return json.dumps(self.content_blocks, ensure_ascii=False)
        return "".join(b["text"] for b in self.content_blocks).strip()
