"""
aiko.core.database - Message persistence.

The engine treats storage as an opaque collaborator described by the
``MessageStore`` protocol. ``SQLiteMessageStore`` is the default
implementation used by the CLI; tests use it with ``":memory:"``.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

from aiko.core.models import ConversationSession, Message, Role

logger = logging.getLogger("aiko.database")


@runtime_checkable
class MessageStore(Protocol):
    """Persistence collaborator called by the job controller."""

    def insert_message(self, session_id: int, role: Role, text: str) -> int: ...

    def update_message(self, message_id: int, text: str) -> None: ...

    def get_messages_for_session(self, session_id: int) -> list[Message]: ...

    def create_session(self, name: str) -> int: ...

    def list_sessions(self) -> list[ConversationSession]: ...

    def latest_session(self) -> ConversationSession | None: ...


# ---------------------------------------------------------------------------
# SQL DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id      INTEGER PRIMARY KEY AUTOINCREMENT,
    name            TEXT    NOT NULL DEFAULT 'New chat',
    created_at      REAL    NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    message_id      INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id      INTEGER NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    role            TEXT    NOT NULL,                -- user | assistant
    text            TEXT    NOT NULL DEFAULT '',
    created_at      REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, message_id);
"""


class SQLiteMessageStore:
    """Synchronous SQLite store for sessions and their messages."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = db_path
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.commit()

    @classmethod
    def in_memory(cls) -> "SQLiteMessageStore":
        return cls(":memory:")

    # -- Sessions ----------------------------------------------------------

    def create_session(self, name: str = "New chat") -> int:
        cur = self._conn.execute(
            "INSERT INTO sessions (name, created_at) VALUES (?, ?)",
            (name, time.time()),
        )
        self._conn.commit()
        logger.debug("Created session %d (%s)", cur.lastrowid, name)
        return int(cur.lastrowid)

    def get_session(self, session_id: int) -> ConversationSession | None:
        row = self._conn.execute(
            "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
        if row is None:
            return None
        return ConversationSession(
            id=row["session_id"],
            name=row["name"],
            messages=self.get_messages_for_session(session_id),
        )

    def list_sessions(self) -> list[ConversationSession]:
        """All sessions, newest first, without their messages."""
        rows = self._conn.execute(
            "SELECT * FROM sessions ORDER BY created_at DESC, session_id DESC"
        ).fetchall()
        return [ConversationSession(id=r["session_id"], name=r["name"]) for r in rows]

    def latest_session(self) -> ConversationSession | None:
        row = self._conn.execute(
            "SELECT session_id FROM sessions ORDER BY created_at DESC, session_id DESC LIMIT 1"
        ).fetchone()
        if row is None:
            return None
        return self.get_session(row["session_id"])

    # -- Messages ----------------------------------------------------------

    def insert_message(self, session_id: int, role: Role, text: str) -> int:
        cur = self._conn.execute(
            """INSERT INTO messages (session_id, role, text, created_at)
               VALUES (?, ?, ?, ?)""",
            (session_id, Role(role).value, text, time.time()),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def update_message(self, message_id: int, text: str) -> None:
        """Rewrite a stored message. The engine never calls this; each reply
        is written once through ``insert_message``. It is here for callers
        that edit history."""
        self._conn.execute(
            "UPDATE messages SET text = ? WHERE message_id = ?", (text, message_id)
        )
        self._conn.commit()

    def get_messages_for_session(self, session_id: int) -> list[Message]:
        rows = self._conn.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY message_id",
            (session_id,),
        ).fetchall()
        return [
            Message(
                id=r["message_id"],
                session_id=r["session_id"],
                role=Role(r["role"]),
                text=r["text"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def close(self) -> None:
        self._conn.close()
