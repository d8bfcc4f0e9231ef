"""Tests for reading team work state from the agent's home directory."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from teamstream.orchestrator.workstate import (
    FileWorkStateReader,
    WorkStateReader,
    has_active_work,
)

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _write(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


def _task(home: Path, team: str, name: str, status: str) -> None:
    _write(home / "tasks" / team / f"{name}.json", {"id": name, "status": status})


def _inbox(home: Path, team: str, member: str, messages: Any) -> None:
    _write(home / "teams" / team / "inboxes" / f"{member}.json", messages)


# ------------------------------------------------------------------ #
# Tests
# ------------------------------------------------------------------ #


class TestFileWorkStateReader:
    def test_satisfies_protocol(self, tmp_path: Path) -> None:
        assert isinstance(FileWorkStateReader(tmp_path), WorkStateReader)

    def test_missing_home(self, tmp_path: Path) -> None:
        reader = FileWorkStateReader(tmp_path / "nothing")
        assert reader.list_tasks() == []
        assert reader.list_unread_inbox() == []
        assert reader.list_tasks("alpha") == []

    def test_tasks_for_one_team(self, tmp_path: Path) -> None:
        _task(tmp_path, "alpha", "1", "pending")
        _task(tmp_path, "alpha", "2", "completed")
        _task(tmp_path, "beta", "3", "in_progress")

        reader = FileWorkStateReader(tmp_path)
        assert [t["id"] for t in reader.list_tasks("alpha")] == ["1", "2"]
        assert [t["id"] for t in reader.list_tasks()] == ["1", "2", "3"]

    def test_corrupt_files_skipped(self, tmp_path: Path) -> None:
        _task(tmp_path, "alpha", "1", "pending")
        (tmp_path / "tasks" / "alpha" / "2.json").write_text("{not json", encoding="utf-8")
        _write(tmp_path / "tasks" / "alpha" / "3.json", ["not", "a", "task"])

        reader = FileWorkStateReader(tmp_path)
        assert [t["id"] for t in reader.list_tasks("alpha")] == ["1"]

    def test_unread_inbox_formats(self, tmp_path: Path) -> None:
        _inbox(tmp_path, "alpha", "lead", [{"text": "a", "read": False}, {"text": "b", "read": True}])
        _inbox(tmp_path, "alpha", "dev", {"messages": [{"text": "c", "read": False}, {"text": "d"}]})
        _inbox(tmp_path, "alpha", "qa", "garbage")

        unread = FileWorkStateReader(tmp_path).list_unread_inbox("alpha")
        assert sorted(m["text"] for m in unread) == ["a", "c"]

    def test_invalid_team_name_rejected(self, tmp_path: Path) -> None:
        _task(tmp_path / "tasks", "x", "escape", "pending")

        reader = FileWorkStateReader(tmp_path / "home")
        assert reader.list_tasks("../../tasks/x") == []
        assert reader.list_tasks("..") == []


class TestHasActiveWork:
    def test_pending_task(self, tmp_path: Path) -> None:
        _task(tmp_path, "alpha", "1", "pending")
        assert has_active_work(FileWorkStateReader(tmp_path), "alpha") is True

    def test_in_progress_task(self, tmp_path: Path) -> None:
        _task(tmp_path, "alpha", "1", "in_progress")
        assert has_active_work(FileWorkStateReader(tmp_path), "alpha") is True

    def test_unread_message(self, tmp_path: Path) -> None:
        _task(tmp_path, "alpha", "1", "completed")
        _inbox(tmp_path, "alpha", "lead", [{"read": False}])
        assert has_active_work(FileWorkStateReader(tmp_path), "alpha") is True

    def test_all_done(self, tmp_path: Path) -> None:
        _task(tmp_path, "alpha", "1", "completed")
        _inbox(tmp_path, "alpha", "lead", [{"read": True}])
        assert has_active_work(FileWorkStateReader(tmp_path), "alpha") is False

    def test_other_team_not_counted(self, tmp_path: Path) -> None:
        _task(tmp_path, "beta", "1", "pending")
        reader = FileWorkStateReader(tmp_path)
        assert has_active_work(reader, "alpha") is False
        assert has_active_work(reader, None) is True
