"""Session cache and manager.

The cache index is split into shards, each an LRU ``OrderedDict`` with a
sliding TTL and its own lock. Every cached Record sits behind a
``SessionHandle`` that owns the record's exclusive lock; no code path ever
holds two record locks at once.
"""

from __future__ import annotations

import asyncio
import math
import time
import weakref
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

import structlog

from chatstate.errors import DuplicateRecordError, NotFoundError, ValidationError
from chatstate.memory.record_store import RecordStore
from chatstate.metrics import BotMetrics
from chatstate.record import Identity, MessageSlots, Record
from chatstate.state import State
from chatstate.writebehind import WriteBehindQueue

logger = structlog.get_logger(__name__)

DEFAULT_CAPACITY = 10000
DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_SHARDS = 16


class SessionHandle:
    """Live, lock-protected reference to one cached Record.

    Each method acquires the record lock for its own duration. Use
    ``transaction()`` to run several mutations as one critical section.
    Diffs produced under the lock are handed to the write-behind queue on exit.
    """

    def __init__(self, record: Record, writes: WriteBehindQueue) -> None:
        self._record = record
        self._writes = writes
        self._lock = asyncio.Lock()
        # Message ids whose keyboards are known to match this process.
        self._initialized: set[int] = set()

    @property
    def id(self) -> int:
        return self._record.id

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Record]:
        async with self._lock:
            try:
                yield self._record
            finally:
                diff = self._record.take_diff()
                if diff:
                    self._writes.apply_diff(self._record.id, diff)

    async def snapshot(self) -> Record:
        async with self._lock:
            return self._record.snapshot()

    async def language(self, default: str = "en") -> str:
        async with self._lock:
            return self._record.language(default)

    async def messages(self) -> MessageSlots:
        async with self._lock:
            return MessageSlots.from_dict(self._record.messages.to_dict())

    async def is_disabled(self) -> bool:
        async with self._lock:
            return self._record.disabled

    async def state_of(self, msg_id: int) -> tuple[State, bool]:
        async with self._lock:
            return self._record.state_of(msg_id)

    async def last_awaiting_text(self) -> tuple[int, bool]:
        async with self._lock:
            return self._record.last_awaiting_text()

    async def set_state(self, msg_id: int, state: State) -> None:
        async with self.transaction() as record:
            record.set_state(msg_id, state)

    async def commit_send(self, state: State, main_id: int, head_id: int = 0) -> None:
        async with self.transaction() as record:
            record.commit_send(state, main_id, head_id)
            self._initialized.update(i for i in (main_id, head_id) if i)

    async def needs_init(self, msg_id: int) -> bool:
        """True when ``msg_id`` is one of the record's messages and was not rendered by this process."""
        async with self._lock:
            if msg_id == 0 or not self._record.messages.has(msg_id):
                return False
            return msg_id not in self._initialized

    async def mark_initialized(self, *msg_ids: int) -> None:
        async with self._lock:
            self._initialized.update(i for i in msg_ids if i)

    async def set_error_message(self, msg_id: int) -> None:
        async with self.transaction() as record:
            record.set_error_message(msg_id)

    async def set_notification_message(self, msg_id: int) -> None:
        async with self.transaction() as record:
            record.set_notification_message(msg_id)

    async def forget_history_message(self, *msg_ids: int) -> None:
        async with self.transaction() as record:
            record.forget_history_message(*msg_ids)

    async def get_value(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            return self._record.get_value(key, default)

    async def set_value(self, key: str, value: Any) -> None:
        async with self.transaction() as record:
            record.set_value(key, value)

    async def delete_value(self, key: str) -> bool:
        async with self.transaction() as record:
            return record.delete_value(key)

    async def clear_values(self) -> None:
        async with self.transaction() as record:
            record.clear_values()

    async def force_language(self, code: str) -> None:
        async with self.transaction() as record:
            record.force_language(code)

    async def refresh(self, snapshot: Identity) -> None:
        """Apply a fresh identity snapshot and re-enable a disabled record."""
        async with self.transaction() as record:
            record.refresh_identity(snapshot)
            if record.disabled:
                record.enable()
                logger.info("record re-enabled", record_id=record.id)

    async def disable(self) -> None:
        async with self.transaction() as record:
            if not record.disabled:
                record.disable()


@dataclass
class _Entry:
    handle: SessionHandle
    expires_at: float


class _Shard:
    def __init__(self, capacity: int, ttl_seconds: float, clock: Callable[[], float]) -> None:
        self.lock = asyncio.Lock()
        self.loading: dict[int, asyncio.Task[SessionHandle]] = {}
        self._entries: OrderedDict[int, _Entry] = OrderedDict()
        # Handles still referenced after eviction; reloading those would fork the record.
        self._resident: weakref.WeakValueDictionary[int, SessionHandle] = weakref.WeakValueDictionary()
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, record_id: int) -> SessionHandle | None:
        entry = self._entries.get(record_id)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[record_id]
            logger.debug("session expired", record_id=record_id)
            return None
        return entry.handle

    def get(self, record_id: int) -> SessionHandle | None:
        handle = self.peek(record_id)
        if handle is not None:
            self._entries[record_id].expires_at = self._clock() + self._ttl
            self._entries.move_to_end(record_id)
        return handle

    def resident(self, record_id: int) -> SessionHandle | None:
        return self._resident.get(record_id)

    def revive(self, record_id: int) -> SessionHandle | None:
        handle = self._resident.get(record_id)
        if handle is not None:
            self.put(handle)
            logger.debug("session revived", record_id=record_id)
        return handle

    def put(self, handle: SessionHandle) -> None:
        self._resident[handle.id] = handle
        self._entries[handle.id] = _Entry(handle, self._clock() + self._ttl)
        self._entries.move_to_end(handle.id)
        while len(self._entries) > self._capacity:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.debug("session evicted", record_id=evicted_id, reason="capacity")

    def discard(self, record_id: int, handle: SessionHandle | None = None) -> bool:
        entry = self._entries.get(record_id)
        if entry is None or (handle is not None and entry.handle is not handle):
            return False
        del self._entries[record_id]
        return True

    def live(self) -> list[SessionHandle]:
        now = self._clock()
        for record_id in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[record_id]
        return [e.handle for e in self._entries.values()]


class SessionManager:
    """Owns the session cache and every mutation entry point."""

    def __init__(
        self,
        store: RecordStore,
        writes: WriteBehindQueue,
        *,
        capacity: int = DEFAULT_CAPACITY,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        shards: int = DEFAULT_SHARDS,
        clock: Callable[[], float] = time.monotonic,
        metrics: BotMetrics | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        shards = max(1, min(shards, capacity))
        per_shard = math.ceil(capacity / shards)
        self._store = store
        self._writes = writes
        self._shards = [_Shard(per_shard, ttl_seconds, clock) for _ in range(shards)]
        self._metrics = metrics or BotMetrics()

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def writes(self) -> WriteBehindQueue:
        return self._writes

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)

    def _shard(self, record_id: int) -> _Shard:
        return self._shards[record_id % len(self._shards)]

    async def obtain(self, snapshot: Identity) -> SessionHandle:
        """Return the cached session for ``snapshot.id``, loading or creating it on a miss."""
        if snapshot.id == 0:
            raise ValidationError("identity id must be non-zero")
        shard = self._shard(snapshot.id)
        task: asyncio.Task[SessionHandle] | None = None
        async with shard.lock:
            handle = shard.get(snapshot.id) or shard.revive(snapshot.id)
            if handle is None:
                task = shard.loading.get(snapshot.id)
                if task is None:
                    task = asyncio.get_running_loop().create_task(self._load(shard, snapshot))
                    shard.loading[snapshot.id] = task
        if handle is None:
            # Waiter cancellation (obtain timeout) must not abort the shared load.
            handle = await asyncio.shield(task)
        else:
            self._metrics.set_cache_size(len(self))
        await handle.refresh(snapshot)
        return handle

    async def _load(self, shard: _Shard, snapshot: Identity) -> SessionHandle:
        try:
            record = await self._fetch_or_create(snapshot)
        except BaseException:
            async with shard.lock:
                shard.loading.pop(snapshot.id, None)
            raise
        handle = SessionHandle(record, self._writes)
        async with shard.lock:
            shard.loading.pop(snapshot.id, None)
            shard.put(handle)
        self._metrics.set_cache_size(len(self))
        return handle

    async def _fetch_or_create(self, snapshot: Identity) -> Record:
        # Reload only after queued diffs for this id have settled.
        await self._writes.wait_idle(snapshot.id)
        record = await self._store.find(snapshot.id)
        if record is not None:
            logger.debug("record loaded", record_id=snapshot.id)
            return record
        record = Record.new(Identity.from_dict(snapshot.to_dict()))
        try:
            await self._store.insert(record)
        except DuplicateRecordError:
            existing = await self._store.find(snapshot.id)
            if existing is None:
                raise
            return existing
        logger.info("record created", record_id=snapshot.id)
        self._metrics.inc_new_user()
        return record

    async def lookup(self, record_id: int) -> SessionHandle | None:
        """Cache-only read; never touches the store and does not refresh recency."""
        shard = self._shard(record_id)
        async with shard.lock:
            return shard.peek(record_id)

    async def all(self) -> list[SessionHandle]:
        handles: list[SessionHandle] = []
        for shard in self._shards:
            async with shard.lock:
                handles.extend(shard.live())
        return handles

    async def evict(self, record_id: int) -> bool:
        shard = self._shard(record_id)
        async with shard.lock:
            evicted = shard.discard(record_id)
        self._metrics.set_cache_size(len(self))
        return evicted

    async def disable(self, record_id: int) -> None:
        """Mark the record disabled and drop it from the cache; the stored copy stays."""
        if record_id == 0:
            raise ValidationError("record id must be non-zero")
        shard = self._shard(record_id)
        async with shard.lock:
            handle = shard.peek(record_id) or shard.resident(record_id)
        if handle is not None:
            await handle.disable()
            async with shard.lock:
                shard.discard(record_id, handle)
            self._metrics.set_cache_size(len(self))
        else:
            await self._writes.wait_idle(record_id)
            record = await self._store.find(record_id)
            if record is None:
                raise NotFoundError(f"record {record_id} not found")
            if not record.disabled:
                record.disable()
                self._writes.apply_diff(record_id, record.take_diff())
        logger.info("record disabled", record_id=record_id)

    async def close(self, timeout: float | None = None) -> None:
        await self._writes.close(timeout)
