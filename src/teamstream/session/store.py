"""Session store — the durable side of a conversation.

The orchestration layer only needs a few calls from its store
(``get_session``, ``add_message``, ``update_resume_token`` and
``update_title``), captured by the :class:`SessionStore` protocol.
:class:`FileSessionStore` is a small JSON-file implementation used by
the CLI and the tests.
"""

from __future__ import annotations

import json
import os
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal, Protocol, runtime_checkable

from teamstream.session.models import DEFAULT_TITLE, Session, StoredMessage

#: Valid session id pattern: used verbatim as a file name.
_SAFE_ID_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")

Role = Literal["user", "assistant"]


@runtime_checkable
class SessionStore(Protocol):
    """Persistence calls made by the orchestration layer."""

    def get_session(self, session_id: str) -> Session | None: ...

    def add_message(self, session_id: str, role: Role, content: str) -> None: ...

    def update_resume_token(self, session_id: str, token: str) -> None: ...

    def update_title(self, session_id: str, title: str) -> None: ...


class FileSessionStore:
    """Stores each session as ``<id>.json`` under *root*.

    Thread-safe: all writes are serialized through a ``threading.Lock``.
    Crash-safe: each write goes to a temp file that replaces the original.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # SessionStore protocol
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        data = self._read(session_id)
        if data is None:
            return None
        return Session.model_validate(data["session"])

    def add_message(self, session_id: str, role: Role, content: str) -> None:
        with self._lock:
            data = self._require(session_id)
            message = StoredMessage(role=role, content=content, ts=_iso_now())
            data["messages"].append(message.model_dump())
            self._write(session_id, data)

    def update_resume_token(self, session_id: str, token: str) -> None:
        with self._lock:
            data = self._require(session_id)
            if data["session"].get("resume_token") == token:
                return
            data["session"]["resume_token"] = token
            self._write(session_id, data)

    def update_title(self, session_id: str, title: str) -> None:
        with self._lock:
            data = self._require(session_id)
            data["session"]["title"] = title
            self._write(session_id, data)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def create_session(
        self,
        session_id: str,
        working_directory: str = "",
        model: str | None = None,
        title: str = DEFAULT_TITLE,
    ) -> Session:
        """Create and persist a new, empty session.

        Raises:
            ValueError: If the id is unsafe as a file name or already exists.
        """
        _check_id(session_id)
        session = Session(
            id=session_id,
            working_directory=working_directory,
            model=model,
            title=title,
        )
        with self._lock:
            if self._path(session_id).exists():
                msg = f"Session already exists: {session_id}"
                raise ValueError(msg)
            self._write(
                session_id,
                {"session": session.model_dump(), "messages": []},
            )
        return session

    def list_messages(self, session_id: str) -> list[StoredMessage]:
        data = self._read(session_id)
        if data is None:
            return []
        return [StoredMessage.model_validate(m) for m in data["messages"]]

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _path(self, session_id: str) -> Path:
        return self._root / f"{session_id}.json"

    def _read(self, session_id: str) -> dict | None:
        if not _SAFE_ID_RE.match(session_id):
            return None
        path = self._path(session_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def _require(self, session_id: str) -> dict:
        data = self._read(session_id)
        if data is None:
            msg = f"Session not found: {session_id}"
            raise KeyError(msg)
        return data

    def _write(self, session_id: str, data: dict) -> None:
        path = self._path(session_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, path)


def _check_id(session_id: str) -> None:
    if not _SAFE_ID_RE.match(session_id):
        msg = (
            f"Invalid session id {session_id!r}: must contain only "
            "alphanumeric characters, dots, hyphens, and underscores."
        )
        raise ValueError(msg)


def _iso_now() -> str:
    """Return the current UTC time as ISO 8601 with milliseconds."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
