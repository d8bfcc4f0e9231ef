"""Tests for the JSON-file session store."""

from __future__ import annotations

import json
import re
from pathlib import Path

import pytest

from teamstream.session.store import FileSessionStore, SessionStore


class TestSessions:
    def test_satisfies_protocol(self, tmp_path: Path) -> None:
        assert isinstance(FileSessionStore(tmp_path), SessionStore)

    def test_create_and_get(self, tmp_path: Path) -> None:
        store = FileSessionStore(tmp_path / "sessions")
        store.create_session("abc", working_directory="/work", model="opus")

        session = store.get_session("abc")
        assert session is not None
        assert session.working_directory == "/work"
        assert session.model == "opus"
        assert session.resume_token == ""
        assert session.title == "New Chat"

    def test_missing_session(self, tmp_path: Path) -> None:
        store = FileSessionStore(tmp_path)
        assert store.get_session("nope") is None
        assert store.list_messages("nope") == []

    def test_duplicate_rejected(self, tmp_path: Path) -> None:
        store = FileSessionStore(tmp_path)
        store.create_session("abc")
        with pytest.raises(ValueError, match="already exists"):
            store.create_session("abc")

    def test_unsafe_id_rejected(self, tmp_path: Path) -> None:
        store = FileSessionStore(tmp_path)
        with pytest.raises(ValueError, match="Invalid session id"):
            store.create_session("../escape")
        assert store.get_session("../escape") is None


class TestUpdates:
    def test_messages_appended_in_order(self, tmp_path: Path) -> None:
        store = FileSessionStore(tmp_path)
        store.create_session("abc")
        store.add_message("abc", "user", "Hello")
        store.add_message("abc", "assistant", "Hi")

        messages = store.list_messages("abc")
        assert [(m.role, m.content) for m in messages] == [
            ("user", "Hello"),
            ("assistant", "Hi"),
        ]
        assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", messages[0].ts)

    def test_resume_token(self, tmp_path: Path) -> None:
        store = FileSessionStore(tmp_path)
        store.create_session("abc")
        store.update_resume_token("abc", "tok-1")
        assert store.get_session("abc").resume_token == "tok-1"

    def test_title(self, tmp_path: Path) -> None:
        store = FileSessionStore(tmp_path)
        store.create_session("abc")
        store.update_title("abc", "Fix the login bug")
        assert store.get_session("abc").title == "Fix the login bug"

    def test_updates_require_session(self, tmp_path: Path) -> None:
        store = FileSessionStore(tmp_path)
        with pytest.raises(KeyError):
            store.add_message("nope", "user", "x")
        with pytest.raises(KeyError):
            store.update_resume_token("nope", "tok")
        with pytest.raises(KeyError):
            store.update_title("nope", "title")

    def test_file_is_plain_json(self, tmp_path: Path) -> None:
        store = FileSessionStore(tmp_path)
        store.create_session("abc")
        store.add_message("abc", "user", "héllo")

        data = json.loads((tmp_path / "abc.json").read_text(encoding="utf-8"))
        assert data["session"]["id"] == "abc"
        assert data["messages"][0]["content"] == "héllo"
        assert not list(tmp_path.glob("*.tmp"))
