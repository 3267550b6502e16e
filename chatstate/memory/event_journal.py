"""Event journal for notable engine events (disables, faults, dropped writes)."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from typing import Any


class EventJournal:
    def __init__(self, conn: sqlite3.Connection, *, lock: threading.Lock | None = None) -> None:
        self._conn = conn
        self._lock = lock or threading.Lock()

    async def record(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        record_id: int | None = None,
        decision: str | None = None,
    ) -> int:
        return await asyncio.to_thread(self.record_sync, event_type, payload, record_id=record_id, decision=decision)

    def record_sync(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        record_id: int | None = None,
        decision: str | None = None,
    ) -> int:
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO event_journal (event_type, record_id, decision, payload)
                VALUES (?, ?, ?, ?)
                """,
                (event_type, record_id, decision, json.dumps(payload, ensure_ascii=True, default=str)),
            )
            self._conn.commit()
        return int(cursor.lastrowid)

    def latest(self, limit: int = 50, *, record_id: int | None = None) -> list[dict[str, Any]]:
        query = "SELECT id, event_type, record_id, decision, payload, created_at FROM event_journal"
        params: tuple[Any, ...] = ()
        if record_id is not None:
            query += " WHERE record_id = ?"
            params = (record_id,)
        query += " ORDER BY id DESC LIMIT ?"
        with self._lock:
            rows = self._conn.execute(query, (*params, limit)).fetchall()

        events: list[dict[str, Any]] = []
        for row in rows:
            event = dict(row)
            event["payload"] = json.loads(event["payload"])
            events.append(event)
        return events
