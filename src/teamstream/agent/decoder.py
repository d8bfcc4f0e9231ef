"""Line decoder — turns agent stdout bytes into decoded records.

:class:`LineDecoder` handles framing: chunks arrive at arbitrary cut
points and only complete newline-terminated lines come out.
:func:`decode_line` handles content: one line becomes one record, and
nothing that arrives on stdout is ever an error.
"""

from __future__ import annotations

import codecs
import json
import logging
import math
from typing import Any

from pydantic import ValidationError

from teamstream.agent.records import (
    AssistantBlock,
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
    ToolResultBlock,
    ToolResultRecord,
    ToolUseBlock,
    UnknownRecord,
)

logger = logging.getLogger(__name__)

#: Longest line kept in the carry-over buffer (16 MiB of text).
_MAX_LINE_CHARS = 16 * 1024 * 1024


class LineDecoder:
    """Incremental newline framer with a carry-over buffer.

    ``feed`` returns every line completed by the chunk and keeps the
    trailing partial line; ``flush`` returns that partial line once the
    stream has ended.  Blank lines are dropped and surrounding whitespace
    (including ``\\r``) is stripped.
    """

    def __init__(self, max_line_chars: int = _MAX_LINE_CHARS) -> None:
        self._max_line_chars = max_line_chars
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._discarding = False

    def feed(self, chunk: bytes | str) -> list[str]:
        text = self._utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []

        lines: list[str] = []
        if "\n" in text:
            segments = (self._buffer + text).split("\n")
            self._buffer = segments.pop()
            for segment in segments:
                if self._discarding:
                    # Tail of an oversized line.
                    self._discarding = False
                    continue
                if len(segment) > self._max_line_chars:
                    self._warn_oversized()
                    continue
                line = segment.strip()
                if line:
                    lines.append(line)
        else:
            self._buffer += text

        if len(self._buffer) > self._max_line_chars:
            self._warn_oversized()
            self._buffer = ""
            self._discarding = True

        return lines

    def _warn_oversized(self) -> None:
        logger.warning(
            "stdout line exceeds %d characters, discarding", self._max_line_chars
        )

    def flush(self) -> list[str]:
        self._buffer += self._utf8.decode(b"", final=True)
        leftover = self._buffer.strip()
        self._buffer = ""
        if self._discarding:
            self._discarding = False
            return []
        return [leftover] if leftover else []

    @property
    def pending(self) -> str:
        """Partial line currently held back."""
        return self._buffer


# ------------------------------------------------------------------ #
# Record decoding
# ------------------------------------------------------------------ #


def decode_line(line: str) -> DecodedRecord:
    """Decode one line of ``stream-json`` output.

    Never raises: non-JSON text becomes a :class:`RawRecord`, and JSON
    that is unknown or does not fit its record shape becomes an
    :class:`UnknownRecord`.
    """
    try:
        msg = json.loads(line)
    except json.JSONDecodeError:
        return RawRecord(text=line)
    if not isinstance(msg, dict):
        return RawRecord(text=line)

    try:
        return _decode_message(msg)
    except ValidationError as exc:
        logger.warning(
            "malformed %r record from agent: %s",
            msg.get("type"),
            exc.errors()[0]["msg"] if exc.errors() else exc,
        )
        return UnknownRecord(type=str(msg.get("type", "")), data=msg)


def _decode_message(msg: dict[str, Any]) -> DecodedRecord:
    """Dispatch on the top-level ``type`` of a ``stream-json`` message.

    The agent CLI emits these top-level types:

    * ``system``          — ``init`` plus notifications, status and hooks.
    * ``assistant``       — wraps an API message; content blocks are
      ``text``, ``thinking`` or ``tool_use``.
    * ``user``            — tool results fed back to the model.
    * ``result``          — terminal result with usage and session id.
    * ``tool_progress``   — heartbeat of a long-running tool.
    * ``control_request`` — permission prompts and SDK handshakes.
    """
    msg_type = msg.get("type")

    if msg_type == "system":
        return _decode_system(msg)
    if msg_type == "assistant":
        return AssistantRecord(blocks=_assistant_blocks(msg.get("message")))
    if msg_type == "user":
        return _decode_tool_results(msg)
    if msg_type == "result":
        is_error = bool(msg.get("is_error", False))
        usage = msg.get("usage")
        return ResultRecord(
            subtype=str(msg.get("subtype") or ("error" if is_error else "success")),
            is_error=is_error,
            num_turns=_int_or_none(msg.get("num_turns")),
            duration_ms=_int_or_none(msg.get("duration_ms")),
            session_id=_str_or_none(msg.get("session_id")),
            total_cost_usd=_number_or_none(msg.get("total_cost_usd")),
            usage=usage if isinstance(usage, dict) else None,
            result=_str_or_none(msg.get("result")),
        )
    if msg_type == "tool_progress":
        return ToolProgressRecord(
            tool_use_id=_str_or_none(msg.get("tool_use_id")),
            tool_name=str(msg.get("tool_name", "")),
            elapsed_time_seconds=_number_or_none(msg.get("elapsed_time_seconds")),
        )
    if msg_type == "control_request":
        return _decode_control_request(msg)

    return UnknownRecord(type=str(msg_type or ""), data=msg)


def _decode_system(msg: dict[str, Any]) -> DecodedRecord:
    subtype = str(msg.get("subtype", ""))

    if subtype == "init":
        skills = msg.get("skills")
        return InitRecord(
            session_id=_str_or_none(msg.get("session_id")),
            model=_str_or_none(msg.get("model")),
            cwd=_str_or_none(msg.get("cwd")),
            tools=_str_list(msg.get("tools")),
            slash_commands=_str_list(msg.get("slash_commands")),
            skills=skills if isinstance(skills, list) else [],
        )
    if subtype == "task_notification":
        return TaskNotificationRecord(
            task_id=str(msg.get("task_id", "")),
            status=str(msg.get("status", "")),
            summary=str(msg.get("summary", "")),
        )
    if subtype == "status":
        return SystemStatusRecord(status=_str_or_none(msg.get("status")))
    if subtype.startswith("hook_"):
        return HookRecord(subtype=subtype, hook_name=_str_or_none(msg.get("hook_name")))

    return UnknownRecord(type=f"system/{subtype}", data=msg)


def _assistant_blocks(message: object) -> list[AssistantBlock]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []

    blocks: list[AssistantBlock] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                blocks.append(TextBlock(text=text))
        elif block_type == "thinking":
            thinking = block.get("thinking")
            if isinstance(thinking, str) and thinking:
                blocks.append(ThinkingBlock(thinking=thinking))
        elif block_type == "tool_use":
            blocks.append(
                ToolUseBlock(
                    id=str(block.get("id", "")),
                    name=str(block.get("name", "")),
                    input=block.get("input"),
                )
            )
    return blocks


def _decode_tool_results(msg: dict[str, Any]) -> ToolResultRecord:
    results: list[ToolResultBlock] = []
    message = msg.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            results.append(
                ToolResultBlock(
                    tool_use_id=str(block.get("tool_use_id", "")),
                    content=flatten_tool_content(block.get("content")),
                    is_error=bool(block.get("is_error", False)),
                )
            )

    tool_use_result = msg.get("tool_use_result")
    return ToolResultRecord(
        results=results,
        tool_use_result=tool_use_result if isinstance(tool_use_result, dict) else None,
    )


def _decode_control_request(msg: dict[str, Any]) -> DecodedRecord:
    request_id = msg.get("request_id")
    request = msg.get("request")
    if not isinstance(request_id, str) or not isinstance(request, dict):
        return UnknownRecord(type="control_request", data=msg)

    subtype = str(request.get("subtype", ""))
    if subtype != "can_use_tool":
        return ControlRequestRecord(request_id=request_id, subtype=subtype)

    tool_input = request.get("input")
    suggestions = request.get("permission_suggestions")
    return PermissionRequestRecord(
        request_id=request_id,
        tool_name=str(request.get("tool_name", "")),
        input=tool_input if isinstance(tool_input, dict) else {},
        suggestions=suggestions if isinstance(suggestions, list) else None,
        blocked_path=_str_or_none(request.get("blocked_path")),
        decision_reason=_str_or_none(request.get("decision_reason")),
        tool_use_id=_str_or_none(request.get("tool_use_id")),
    )


def flatten_tool_content(content: object) -> str:
    """Flatten tool-result content to plain text.

    A string is kept as-is; a list of blocks keeps its ``text`` parts
    joined by newlines; anything else becomes an empty string.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(c.get("text") or "")
            for c in content
            if isinstance(c, dict) and c.get("type") == "text"
        ]
        return "\n".join(parts)
    return ""


def _str_or_none(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def _number_or_none(value: object) -> float | None:
    """Numeric fields degrade to ``None`` one by one instead of failing the record."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value if math.isfinite(value) else None


def _int_or_none(value: object) -> int | None:
    number = _number_or_none(value)
    return None if number is None else round(number)
