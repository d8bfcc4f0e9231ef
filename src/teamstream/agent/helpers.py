"""Shared helper functions for the agent process."""

from __future__ import annotations

import re
import shutil
from pathlib import Path

#: CSI / OSC escape sequences and stray C0 control characters.
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
    r"|[\x00-\x08\x0b-\x1f\x7f]"
)


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def clean_terminal_output(text: str) -> str:
    """Strip ANSI colour codes and terminal control characters from *text*."""
    return _ANSI_RE.sub("", text)


def find_agent_binary(configured: str | None = None) -> str:
    """Resolve the agent CLI executable.

    An explicitly configured path wins.  Otherwise the per-user install
    location (``~/.local/bin/claude``) is preferred over ``PATH``, and the
    bare name is the last resort so the spawn error names the binary.
    """
    if configured:
        return str(Path(configured).expanduser())

    local = Path.home() / ".local" / "bin" / "claude"
    if local.is_file():
        return str(local)

    return shutil.which("claude") or "claude"
