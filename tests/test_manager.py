from __future__ import annotations

import asyncio
import gc
import unittest

from chatstate.errors import NotFoundError, StorageError, ValidationError
from chatstate.manager import SessionManager
from chatstate.memory.record_store import InMemoryRecordStore
from chatstate.record import Identity, Record, RecordDiff
from chatstate.state import DISABLED, FIRST_REQUEST, State, text_state
from chatstate.writebehind import WriteBehindQueue

MENU = State("menu")


class CountingStore(InMemoryRecordStore):
    def __init__(self, *, find_delay: float = 0.0) -> None:
        super().__init__()
        self.inserts = 0
        self.finds = 0
        self.find_delay = find_delay
        self.fail_inserts = False

    async def find(self, record_id: int) -> Record | None:
        self.finds += 1
        if self.find_delay:
            await asyncio.sleep(self.find_delay)
        return await super().find(record_id)

    async def insert(self, record: Record) -> None:
        if self.fail_inserts:
            raise StorageError("disk full")
        self.inserts += 1
        await super().insert(record)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _identity(record_id: int, **fields: object) -> Identity:
    return Identity(id=record_id, **fields)


class SessionManagerTests(unittest.IsolatedAsyncioTestCase):
    def _manager(self, store: InMemoryRecordStore | None = None, **kwargs: object) -> SessionManager:
        self.store = store or CountingStore()
        self.writes = WriteBehindQueue(self.store)
        return SessionManager(self.store, self.writes, **kwargs)

    async def test_obtain_creates_record_once_under_concurrency(self) -> None:
        manager = self._manager(CountingStore(find_delay=0.01))
        handles = await asyncio.gather(*(manager.obtain(_identity(7)) for _ in range(10)))

        self.assertEqual(self.store.inserts, 1)
        self.assertTrue(all(h is handles[0] for h in handles))
        self.assertEqual((await handles[0].state_of(0)), (FIRST_REQUEST, True))
        self.assertIsNotNone(await self.store.find(7))

    async def test_obtain_returns_cached_handle_and_refreshes_identity(self) -> None:
        manager = self._manager()
        first = await manager.obtain(_identity(7, first_name="Ada"))
        second = await manager.obtain(_identity(7, first_name="Grace", username="gh"))

        self.assertIs(first, second)
        snapshot = await second.snapshot()
        self.assertEqual(snapshot.identity.first_name, "Grace")
        await self.writes.flush()
        self.assertEqual((await self.store.find(7)).identity.username, "gh")

    async def test_obtain_rejects_zero_id(self) -> None:
        manager = self._manager()
        with self.assertRaises(ValidationError):
            await manager.obtain(_identity(0))

    async def test_obtain_fails_when_creation_write_fails(self) -> None:
        store = CountingStore()
        store.fail_inserts = True
        manager = self._manager(store)
        with self.assertRaises(StorageError):
            await manager.obtain(_identity(7))
        self.assertIsNone(await manager.lookup(7))

        store.fail_inserts = False
        handle = await manager.obtain(_identity(7))
        self.assertEqual(handle.id, 7)

    async def test_waiter_timeout_does_not_cancel_shared_load(self) -> None:
        manager = self._manager(CountingStore(find_delay=0.05))
        with self.assertRaises(asyncio.TimeoutError):
            await asyncio.wait_for(manager.obtain(_identity(7)), 0.01)
        handle = await manager.obtain(_identity(7))
        self.assertEqual(self.store.inserts, 1)
        self.assertIs(await manager.lookup(7), handle)

    async def test_lookup_is_cache_only(self) -> None:
        store = CountingStore()
        await store.insert(Record.new(_identity(7)))
        manager = self._manager(store)

        self.assertIsNone(await manager.lookup(7))
        self.assertEqual(store.finds, 0)
        handle = await manager.obtain(_identity(7))
        self.assertIs(await manager.lookup(7), handle)

    async def test_capacity_eviction_reloads_latest_applied_state(self) -> None:
        manager = self._manager(capacity=2, shards=1)
        handle = await manager.obtain(_identity(1))
        await handle.commit_send(text_state("ask"), 10)
        await handle.set_value("name", "Ada")
        del handle
        gc.collect()

        await manager.obtain(_identity(2))
        await manager.obtain(_identity(3))
        self.assertIsNone(await manager.lookup(1))
        self.assertEqual(len(manager), 2)

        reloaded = await manager.obtain(_identity(1))
        self.assertEqual(self.store.finds, 4)
        self.assertEqual(await reloaded.last_awaiting_text(), (10, True))
        self.assertEqual(await reloaded.get_value("name"), "Ada")
        self.assertEqual((await reloaded.messages()).main_id, 10)

    async def test_ttl_expiry_reloads_from_store(self) -> None:
        clock = FakeClock()
        manager = self._manager(ttl_seconds=60, clock=clock)
        handle = await manager.obtain(_identity(1))
        await handle.set_state(0, MENU)

        clock.now += 30
        self.assertIs(await manager.obtain(_identity(1)), handle)
        clock.now += 61
        self.assertIsNone(await manager.lookup(1))
        del handle
        gc.collect()

        finds = self.store.finds
        reloaded = await manager.obtain(_identity(1))
        self.assertEqual(self.store.finds, finds + 1)
        self.assertEqual(await reloaded.state_of(0), (MENU, True))

    async def test_lru_keeps_recently_used_entry(self) -> None:
        manager = self._manager(capacity=2, shards=1)
        first = await manager.obtain(_identity(1))
        await manager.obtain(_identity(2))
        await manager.obtain(_identity(1))
        await manager.obtain(_identity(3))
        self.assertIs(await manager.lookup(1), first)
        self.assertIsNone(await manager.lookup(2))

    async def test_disable_evicts_and_obtain_re_enables(self) -> None:
        manager = self._manager()
        handle = await manager.obtain(_identity(7))
        await handle.commit_send(MENU, 3)

        await manager.disable(7)
        self.assertIsNone(await manager.lookup(7))
        await self.writes.flush()
        stored = await self.store.find(7)
        self.assertTrue(stored.disabled)
        self.assertEqual(stored.state.main, DISABLED)

        reloaded = await manager.obtain(_identity(7))
        snapshot = await reloaded.snapshot()
        self.assertFalse(snapshot.disabled)
        self.assertEqual(snapshot.state.main, FIRST_REQUEST)
        self.assertEqual(snapshot.messages.main_id, 3)
        await self.writes.flush()
        self.assertFalse((await self.store.find(7)).disabled)

    async def test_disable_uncached_record_writes_store(self) -> None:
        store = CountingStore()
        await store.insert(Record.new(_identity(7)))
        manager = self._manager(store)
        await manager.disable(7)
        await self.writes.flush()
        self.assertTrue((await store.find(7)).disabled)

        with self.assertRaises(NotFoundError):
            await manager.disable(8)
        with self.assertRaises(ValidationError):
            await manager.disable(0)

    async def test_concurrent_disjoint_mutations_are_not_lost(self) -> None:
        manager = self._manager()
        handle = await manager.obtain(_identity(7))

        async def states() -> None:
            for msg_id in range(1, 21):
                await handle.set_state(msg_id, text_state("ask") if msg_id % 2 else MENU)
                await asyncio.sleep(0)

        async def roles() -> None:
            for msg_id in range(100, 120):
                await handle.commit_send(State(""), msg_id, msg_id + 1000)
                await asyncio.sleep(0)

        await asyncio.gather(states(), roles())
        await self.writes.flush()

        for record in (await handle.snapshot(), await self.store.find(7)):
            self.assertEqual(record.messages.main_id, 119)
            self.assertEqual(record.messages.head_id, 1119)
            self.assertEqual(record.messages.history, list(range(100, 119)))
            self.assertEqual(len(record.state.per_message), 20)
            self.assertEqual(record.state.awaiting_text, list(range(1, 21, 2)))

    async def test_record_lock_is_only_reachable_through_handle_methods(self) -> None:
        manager = self._manager()
        handle = await manager.obtain(_identity(7))
        self.assertFalse(hasattr(handle, "lock"))
        async with handle.transaction() as record:
            record.set_value("k", 1)
        self.assertEqual(await handle.get_value("k"), 1)

    async def test_transaction_submits_one_diff(self) -> None:
        manager = self._manager()
        handle = await manager.obtain(_identity(7))
        await self.writes.flush()
        submitted: list[RecordDiff] = []
        original = self.writes.apply_diff

        def capture(record_id: int, diff: RecordDiff) -> None:
            submitted.append(diff)
            original(record_id, diff)

        self.writes.apply_diff = capture  # type: ignore[method-assign]
        async with handle.transaction() as record:
            record.commit_send(MENU, 5)
            record.set_value("k", 1)
            record.set_error_message(6)
        self.assertEqual(len(submitted), 1)
        self.assertEqual(set(submitted[0].groups), {"messages", "state", "stats", "values"})

    async def test_all_lists_live_sessions(self) -> None:
        clock = FakeClock()
        manager = self._manager(ttl_seconds=10, clock=clock)
        await manager.obtain(_identity(1))
        clock.now += 5
        await manager.obtain(_identity(2))
        clock.now += 6
        self.assertEqual(sorted(h.id for h in await manager.all()), [2])

    async def test_evict_then_obtain_waits_for_pending_writes(self) -> None:
        manager = self._manager()
        handle = await manager.obtain(_identity(7))
        await handle.set_value("k", "v1")
        await handle.set_value("k", "v2")
        del handle
        gc.collect()
        self.assertTrue(await manager.evict(7))

        reloaded = await manager.obtain(_identity(7))
        self.assertEqual(await reloaded.get_value("k"), "v2")

    async def test_evicted_handle_still_in_use_is_reused(self) -> None:
        manager = self._manager(capacity=1, shards=1)
        handle = await manager.obtain(_identity(1))
        await manager.obtain(_identity(2))
        self.assertIsNone(await manager.lookup(1))

        again = await manager.obtain(_identity(1))
        self.assertIs(again, handle)
        self.assertIs(await manager.lookup(1), handle)
        await handle.set_state(5, MENU)
        await again.set_state(6, text_state("ask"))
        await self.writes.flush()

        stored = await self.store.find(1)
        self.assertEqual(set(stored.state.per_message), {5, 6})
        self.assertEqual(stored.state.awaiting_text, [6])

    async def test_disable_reaches_evicted_handle_still_in_use(self) -> None:
        manager = self._manager(capacity=1, shards=1)
        handle = await manager.obtain(_identity(1))
        await manager.obtain(_identity(2))

        await manager.disable(1)
        self.assertTrue(await handle.is_disabled())
        await handle.set_value("k", "v")
        await self.writes.flush()
        stored = await self.store.find(1)
        self.assertTrue(stored.disabled)
        self.assertEqual(stored.get_value("k"), "v")

    async def test_close_flushes_queue(self) -> None:
        manager = self._manager()
        handle = await manager.obtain(_identity(7))
        await handle.set_value("k", "v")
        await manager.close()
        self.assertEqual((await self.store.find(7)).get_value("k"), "v")

    def test_invalid_limits(self) -> None:
        store = InMemoryRecordStore()
        writes = WriteBehindQueue(store)
        with self.assertRaises(ValueError):
            SessionManager(store, writes, capacity=0)
        with self.assertRaises(ValueError):
            SessionManager(store, writes, ttl_seconds=0)


if __name__ == "__main__":
    unittest.main()
