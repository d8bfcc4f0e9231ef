"""Work-state reader — is a team still busy after the lead agent exits?

Teams coordinate through plain JSON files under the agent's home
directory::

    <claude_home>/tasks/<team>/*.json            one task per file, ``status``
    <claude_home>/teams/<team>/inboxes/*.json    a list of messages, or
                                                 ``{"messages": [...]}``
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

#: Task statuses that mean a teammate still has work to do.
ACTIVE_TASK_STATUSES = frozenset({"pending", "in_progress"})


@runtime_checkable
class WorkStateReader(Protocol):
    """Read-only view of a team's shared work state."""

    def list_tasks(self, team: str | None = None) -> list[dict[str, Any]]: ...

    def list_unread_inbox(self, team: str | None = None) -> list[dict[str, Any]]: ...


class FileWorkStateReader:
    """Reads tasks and inbox messages from the agent's home directory.

    With ``team=None`` every team directory is scanned.  Unreadable or
    corrupt files are skipped.
    """

    def __init__(self, claude_home: Path) -> None:
        self._home = Path(claude_home)

    def list_tasks(self, team: str | None = None) -> list[dict[str, Any]]:
        tasks: list[dict[str, Any]] = []
        for team_dir in self._team_dirs(self._home / "tasks", team):
            for path in sorted(team_dir.glob("*.json")):
                data = _load_json(path)
                if isinstance(data, dict):
                    tasks.append(data)
        return tasks

    def list_unread_inbox(self, team: str | None = None) -> list[dict[str, Any]]:
        unread: list[dict[str, Any]] = []
        for team_dir in self._team_dirs(self._home / "teams", team):
            inbox_dir = team_dir / "inboxes"
            if not inbox_dir.is_dir():
                continue
            for path in sorted(inbox_dir.glob("*.json")):
                data = _load_json(path)
                messages = data.get("messages") if isinstance(data, dict) else data
                if not isinstance(messages, list):
                    continue
                unread.extend(
                    m for m in messages if isinstance(m, dict) and m.get("read") is False
                )
        return unread

    @staticmethod
    def _team_dirs(root: Path, team: str | None) -> Iterator[Path]:
        if team is not None:
            # Team names come from agent output; never leave *root*.
            if Path(team).name != team or team in (".", ".."):
                logger.warning("ignoring invalid team name %r", team)
                return
            candidate = root / team
            if candidate.is_dir():
                yield candidate
            return
        if not root.is_dir():
            return
        for child in sorted(root.iterdir()):
            if child.is_dir():
                yield child


def has_active_work(reader: WorkStateReader, team: str | None = None) -> bool:
    """``True`` if any task is pending/in progress or any inbox message is unread."""
    active = [
        t for t in reader.list_tasks(team) if t.get("status") in ACTIVE_TASK_STATUSES
    ]
    unread = reader.list_unread_inbox(team)
    logger.debug(
        "work state for %s: %d active task(s), %d unread message(s)",
        team or "all teams",
        len(active),
        len(unread),
    )
    return bool(active or unread)


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug("skipping unreadable %s: %s", path, exc)
        return None
