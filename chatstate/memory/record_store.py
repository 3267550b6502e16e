"""Persistent record stores: SQLite for durability, in-memory for tests and ephemeral bots."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from typing import Any, Protocol

from chatstate.errors import DuplicateRecordError, StorageError, ValidationError
from chatstate.record import (
    GROUP_DISABLED,
    GROUP_IDENTITY,
    GROUP_MESSAGES,
    GROUP_STATE,
    GROUP_STATS,
    GROUP_VALUES,
    Record,
    RecordDiff,
)

# Field group -> column in the records table.
_COLUMNS = {
    GROUP_IDENTITY: "identity",
    GROUP_STATE: "state",
    GROUP_MESSAGES: "messages",
    GROUP_STATS: "stats",
    GROUP_DISABLED: "disabled",
    GROUP_VALUES: "record_values",
}


class RecordStore(Protocol):
    async def insert(self, record: Record) -> None: ...

    async def find(self, record_id: int) -> Record | None: ...

    async def write_diff(self, record_id: int, diff: RecordDiff) -> None: ...


def _encode(group: str, value: Any) -> Any:
    if group == GROUP_DISABLED:
        return 1 if value else 0
    return json.dumps(value, ensure_ascii=True)


def _decode(group: str, raw: Any) -> Any:
    if group == GROUP_DISABLED:
        return bool(raw)
    return json.loads(raw) if raw else {}


class SqliteRecordStore:
    """Records table accessor; one column per field group so diffs stay sparse.

    Blocking sqlite calls run in worker threads and are serialized by ``lock``,
    which should be the owning ``MemoryEngine.lock`` when the connection is shared.
    """

    def __init__(self, conn: sqlite3.Connection, *, lock: threading.Lock | None = None) -> None:
        self._conn = conn
        self._lock = lock or threading.Lock()

    async def insert(self, record: Record) -> None:
        await asyncio.to_thread(self.insert_sync, record)

    async def find(self, record_id: int) -> Record | None:
        return await asyncio.to_thread(self.find_sync, record_id)

    async def write_diff(self, record_id: int, diff: RecordDiff) -> None:
        await asyncio.to_thread(self.write_diff_sync, record_id, diff)

    def insert_sync(self, record: Record) -> None:
        if record.id == 0:
            raise ValidationError("record id must be non-zero")
        groups = record.to_groups()
        columns = [_COLUMNS[name] for name in groups]
        placeholders = ", ".join("?" for _ in columns)
        params = [_encode(name, value) for name, value in groups.items()]
        with self._lock:
            try:
                self._conn.execute(
                    f"INSERT INTO records (id, {', '.join(columns)}) VALUES (?, {placeholders})",
                    (record.id, *params),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise DuplicateRecordError(f"record {record.id} already exists") from exc
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageError(f"insert of record {record.id} failed: {exc}") from exc

    def find_sync(self, record_id: int) -> Record | None:
        if record_id == 0:
            raise ValidationError("record id must be non-zero")
        with self._lock:
            try:
                row = self._conn.execute(
                    f"SELECT {', '.join(_COLUMNS.values())} FROM records WHERE id = ?",
                    (record_id,),
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"find of record {record_id} failed: {exc}") from exc
        if row is None:
            return None
        groups = {group: _decode(group, row[column]) for group, column in _COLUMNS.items()}
        return Record.from_groups(groups)

    def write_diff_sync(self, record_id: int, diff: RecordDiff) -> None:
        if not diff:
            return
        assignments = [f"{_COLUMNS[name]} = ?" for name in diff.groups]
        params = [_encode(name, value) for name, value in diff.groups.items()]
        with self._lock:
            try:
                cursor = self._conn.execute(
                    f"UPDATE records SET {', '.join(assignments)}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (*params, record_id),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageError(f"write for record {record_id} failed: {exc}") from exc
        if cursor.rowcount == 0:
            raise StorageError(f"write for unknown record {record_id}")

    def count(self, *, include_disabled: bool = True) -> int:
        query = "SELECT COUNT(*) AS n FROM records"
        if not include_disabled:
            query += " WHERE disabled = 0"
        with self._lock:
            row = self._conn.execute(query).fetchone()
        return int(row["n"])


class InMemoryRecordStore:
    """Dict-backed store; stored groups are detached JSON copies."""

    def __init__(self) -> None:
        self._rows: dict[int, dict[str, Any]] = {}

    async def insert(self, record: Record) -> None:
        if record.id == 0:
            raise ValidationError("record id must be non-zero")
        if record.id in self._rows:
            raise DuplicateRecordError(f"record {record.id} already exists")
        self._rows[record.id] = json.loads(json.dumps(record.to_groups()))

    async def find(self, record_id: int) -> Record | None:
        if record_id == 0:
            raise ValidationError("record id must be non-zero")
        groups = self._rows.get(record_id)
        if groups is None:
            return None
        return Record.from_groups(json.loads(json.dumps(groups)))

    async def write_diff(self, record_id: int, diff: RecordDiff) -> None:
        if record_id not in self._rows:
            raise StorageError(f"write for unknown record {record_id}")
        self._rows[record_id].update(json.loads(json.dumps(diff.groups)))

    def count(self, *, include_disabled: bool = True) -> int:
        if include_disabled:
            return len(self._rows)
        return sum(1 for groups in self._rows.values() if not groups.get(GROUP_DISABLED))
