"""SQLite memory engine and schema management."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path


class MemoryEngine:
    """Owns the SQLite connection, its access lock and the table lifecycle."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def db_path(self) -> Path | str:
        return self._db_path

    @property
    def lock(self) -> threading.Lock:
        """Serializes every statement issued on the shared connection."""
        return self._lock

    def connect(self) -> sqlite3.Connection:
        if self._conn is None:
            if isinstance(self._db_path, Path):
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self) -> None:
        conn = self.connect()
        with self._lock:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS records (
                    id INTEGER PRIMARY KEY,
                    identity TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT '{}',
                    messages TEXT NOT NULL DEFAULT '{}',
                    stats TEXT NOT NULL DEFAULT '{}',
                    disabled INTEGER NOT NULL DEFAULT 0,
                    record_values TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE INDEX IF NOT EXISTS idx_records_disabled
                ON records(disabled);

                CREATE TABLE IF NOT EXISTS event_journal (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    record_id INTEGER,
                    decision TEXT,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE INDEX IF NOT EXISTS idx_event_journal_record_id
                ON event_journal(record_id, id DESC);
                """
            )
            conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
