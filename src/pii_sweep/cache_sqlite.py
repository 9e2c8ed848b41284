"""Persistent session store backed by SQLite, survives process restarts.

Drop-in replacement for MemorySessionStore when the cache has to outlive
the process (CLI calls, sidecar restarts).  Holds only hash-only records.

Usage:
    store = SqliteSessionStore(db_path="~/.pii-sweep/cache.db")
    cache = SessionCache("session_abc", store)
"""

from __future__ import annotations
import sqlite3
from pathlib import Path
from typing import Any


_SCHEMA = """
CREATE TABLE IF NOT EXISTS cached_redactions (
    session_id TEXT NOT NULL,
    id TEXT NOT NULL,
    value_hash TEXT NOT NULL,
    masked_value TEXT NOT NULL,
    type TEXT NOT NULL,
    created_at TEXT NOT NULL,
    usage_count INTEGER NOT NULL DEFAULT 1,
    value_length INTEGER NOT NULL,
    PRIMARY KEY (session_id, id)
);
CREATE INDEX IF NOT EXISTS idx_cached_redactions_hash
    ON cached_redactions(session_id, value_hash);
"""

_COLUMNS = ("id", "value_hash", "masked_value", "type", "created_at", "usage_count", "value_length")
_KEYS = ("id", "valueHash", "maskedValue", "type", "createdAt", "usageCount", "valueLength")


class SqliteSessionStore:
    """SQLite-backed store for SessionCache records, keyed by session."""

    __slots__ = ("_db",)

    def __init__(self, *, db_path: str | Path = "cache.db") -> None:
        db_path = Path(db_path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(db_path), check_same_thread=False)
        self._db.executescript(_SCHEMA)

    def load(self, session_id: str) -> list[dict[str, Any]]:
        rows = self._db.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM cached_redactions WHERE session_id = ? "
            "ORDER BY usage_count DESC, created_at DESC",
            (session_id,),
        ).fetchall()
        return [dict(zip(_KEYS, row)) for row in rows]

    def save(self, session_id: str, records: list[dict[str, Any]]) -> None:
        """Replace a session's records in one transaction (last writer wins)."""
        with self._db:
            self._db.execute("DELETE FROM cached_redactions WHERE session_id = ?", (session_id,))
            self._db.executemany(
                f"INSERT OR REPLACE INTO cached_redactions (session_id, {', '.join(_COLUMNS)}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [(session_id, *(r[k] for k in _KEYS)) for r in records],
            )

    def delete_session(self, session_id: str) -> None:
        with self._db:
            self._db.execute("DELETE FROM cached_redactions WHERE session_id = ?", (session_id,))

    def list_sessions(self) -> list[str]:
        """List all session IDs in the database."""
        rows = self._db.execute("SELECT DISTINCT session_id FROM cached_redactions").fetchall()
        return [r[0] for r in rows]

    def close(self) -> None:
        self._db.close()
