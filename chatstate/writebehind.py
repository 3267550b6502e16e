"""Write-behind persistence: one ordered lane per record id.

Diffs for the same id are written strictly in submission order by a single
drain task per lane. Different ids drain independently. Failed writes are
retried with exponential backoff and then dropped; the cached record stays
authoritative until it is evicted.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable

import structlog

from chatstate.errors import StorageWriteError
from chatstate.memory.record_store import RecordStore
from chatstate.metrics import ERROR_STORAGE, SEVERITY_HIGH, BotMetrics
from chatstate.record import RecordDiff

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 0.2
DEFAULT_MAX_PENDING = 64


class _Lane:
    __slots__ = ("pending", "task")

    def __init__(self) -> None:
        self.pending: deque[RecordDiff] = deque()
        self.task: asyncio.Task[None] | None = None


class WriteBehindQueue:
    def __init__(
        self,
        store: RecordStore,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        max_pending: int = DEFAULT_MAX_PENDING,
        on_drop: Callable[[StorageWriteError], Awaitable[None]] | None = None,
        metrics: BotMetrics | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if max_pending < 2:
            raise ValueError("max_pending must be >= 2")
        self._store = store
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._max_pending = max_pending
        self._on_drop = on_drop
        self._metrics = metrics or BotMetrics()
        self._lanes: dict[int, _Lane] = {}
        self._closed = False
        self.written = 0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self, record_id: int | None = None) -> int:
        if record_id is not None:
            lane = self._lanes.get(record_id)
            return 0 if lane is None else len(lane.pending)
        return sum(len(lane.pending) for lane in self._lanes.values())

    def apply_diff(self, record_id: int, diff: RecordDiff) -> None:
        """Queue a diff for asynchronous application. Must be called on the event loop."""
        if not diff:
            return
        if self._closed:
            logger.warning("write-behind closed, diff discarded", record_id=record_id, groups=sorted(diff.groups))
            return
        lane = self._lanes.get(record_id)
        if lane is None:
            lane = _Lane()
            self._lanes[record_id] = lane
        if len(lane.pending) >= self._max_pending:
            # Head is in flight; fold into the newest queued diff to keep order and final state.
            lane.pending[-1] = lane.pending[-1].merge(diff)
        else:
            lane.pending.append(diff)
        if lane.task is None:
            lane.task = asyncio.get_running_loop().create_task(self._drain(record_id, lane))

    async def wait_idle(self, record_id: int) -> None:
        """Wait until every diff queued for ``record_id`` has been written or dropped."""
        lane = self._lanes.get(record_id)
        while lane is not None and lane.task is not None:
            await asyncio.shield(lane.task)
            lane = self._lanes.get(record_id)

    async def flush(self) -> None:
        while True:
            tasks = [lane.task for lane in self._lanes.values() if lane.task is not None]
            if not tasks:
                return
            await asyncio.gather(*(asyncio.shield(t) for t in tasks))

    async def close(self, timeout: float | None = None) -> None:
        self._closed = True
        try:
            await asyncio.wait_for(self.flush(), timeout)
        except asyncio.TimeoutError:
            logger.error("write-behind flush timed out", pending=self.pending(), lanes=len(self._lanes))
            for lane in list(self._lanes.values()):
                if lane.task is not None:
                    lane.task.cancel()

    async def _drain(self, record_id: int, lane: _Lane) -> None:
        try:
            while lane.pending:
                await self._write(record_id, lane.pending[0])
                lane.pending.popleft()
        finally:
            lane.task = None
            if self._lanes.get(record_id) is lane:
                del self._lanes[record_id]

    async def _write(self, record_id: int, diff: RecordDiff) -> None:
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._store.write_diff(record_id, diff)
            except Exception as exc:
                if attempt < attempts:
                    delay = self._backoff_seconds * (2 ** (attempt - 1))
                    logger.warning(
                        "record write failed, retrying",
                        record_id=record_id,
                        attempt=attempt,
                        delay=delay,
                        error=str(exc),
                    )
                    await asyncio.sleep(delay)
                    continue
                await self._drop(StorageWriteError(record_id, attempt, exc), diff)
                return
            self.written += 1
            self._metrics.inc_written()
            return

    async def _drop(self, err: StorageWriteError, diff: RecordDiff) -> None:
        self.dropped += 1
        self._metrics.inc_dropped()
        self._metrics.inc_error(ERROR_STORAGE, SEVERITY_HIGH)
        logger.error(
            "record write dropped",
            record_id=err.record_id,
            attempts=err.attempts,
            groups=sorted(diff.groups),
            error=str(err.cause),
        )
        if self._on_drop is None:
            return
        try:
            await self._on_drop(err)
        except Exception:
            logger.exception("write drop callback failed", record_id=err.record_id)
