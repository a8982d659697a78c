"""Tests for the deferred action queue."""

import asyncio

import pytest

from rampart.core.settings import RampartSettings
from rampart.core.storage import MemoryStore, SqliteStore, UnavailableStore
from rampart.execution.deferred import DeferredActionQueue, QueuedAction


class TestEnqueue:
    """Tests for enqueue and persistence."""

    def test_enqueue_persists(self, memory_store, clock):
        """Actions are written through the scoped storage key."""
        queue = DeferredActionQueue("ai", memory_store, clock=clock)
        action = queue.enqueue({"id": "a", "effect": "anime"})

        assert action == QueuedAction(id="a", payload={"id": "a", "effect": "anime"}, enqueued_at=clock.now)
        assert queue.persistent is True
        assert memory_store.get_item("rampart:queue:ai:actions") is not None

    def test_generated_ids(self, memory_store):
        """Payloads without an id get a generated one."""
        queue = DeferredActionQueue("ai", memory_store)
        first = queue.enqueue("plain payload")
        second = queue.enqueue(None, action_id="explicit")
        assert first.id.startswith("req_")
        assert second.id == "explicit"
        assert [a.id for a in queue.pending()] == [first.id, "explicit"]

    def test_duplicate_id_returns_pending_action(self, memory_store):
        """Enqueueing the same id twice keeps one action."""
        queue = DeferredActionQueue("ai", memory_store)
        queue.enqueue({"id": "a", "v": 1})
        again = queue.enqueue({"id": "a", "v": 2})
        assert again.payload == {"id": "a", "v": 1}
        assert len(queue) == 1

    def test_survives_restart(self, tmp_path):
        """A new queue over the same file sees pending actions."""
        path = tmp_path / "q.db"
        DeferredActionQueue("ai", SqliteStore(path)).enqueue({"id": "a"})
        assert [a.id for a in DeferredActionQueue("ai", SqliteStore(path)).pending()] == ["a"]

    @pytest.mark.parametrize("store_fixture", ["exploding_store", "read_only_store"])
    def test_failing_store_degrades_to_memory(self, store_fixture, request):
        """A throwing store still yields a QueuedAction held in memory."""
        store = request.getfixturevalue(store_fixture)
        queue = DeferredActionQueue("ai", store)

        action = queue.enqueue({"id": "a"})

        assert isinstance(action, QueuedAction)
        assert action.id == "a"
        assert queue.persistent is False
        assert [a.id for a in queue.pending()] == ["a"]

    def test_empty_caller_store_is_used(self):
        """A fresh, empty store is used as given, not replaced."""
        store = MemoryStore()
        DeferredActionQueue("svc", store).enqueue({"id": "a"})
        assert store.keys() == ["rampart:queue:svc:actions"]

    def test_failed_read_does_not_overwrite(self, flaky_store):
        """An unreadable list is kept in memory and never written over."""
        queue = DeferredActionQueue("ai", flaky_store)
        queue.enqueue({"id": "a"})
        queue.enqueue({"id": "b"})
        stored = flaky_store.get_item("rampart:queue:ai:actions")

        flaky_store.failing_reads = 1
        queue.enqueue({"id": "c"})

        assert [a.id for a in queue.pending()] == ["a", "b", "c"]
        assert queue.persistent is False
        assert flaky_store.get_item("rampart:queue:ai:actions") == stored

    def test_corrupt_list_is_not_overwritten(self, memory_store):
        """Undecodable stored data survives an enqueue."""
        memory_store.set_item("rampart:queue:ai:actions", "{not json")
        queue = DeferredActionQueue("ai", memory_store)
        queue.enqueue({"id": "a"})
        assert memory_store.get_item("rampart:queue:ai:actions") == "{not json"
        assert [a.id for a in queue.pending()] == ["a"]

    def test_stays_in_memory_after_degrading(self):
        """Once degraded, the queue does not return to the store."""
        store = MemoryStore(quota_bytes=60)
        queue = DeferredActionQueue("q", store)
        queue.enqueue({"id": "a", "blob": "x" * 100})
        assert queue.persistent is False
        queue.clear()
        queue.enqueue({"id": "b"})
        assert store.get_item("rampart:queue:q:actions") is None
        assert [a.id for a in queue.pending()] == ["b"]

    def test_malformed_entries_are_skipped(self, memory_store):
        """Corrupt entries in the store do not break loading."""
        memory_store.set_item("rampart:queue:ai:actions", '[{"id": "ok"}, {"nope": 1}]')
        assert [a.id for a in DeferredActionQueue("ai", memory_store).pending()] == ["ok"]

    def test_remove_and_clear(self, memory_store):
        """Actions can be removed individually or all at once."""
        queue = DeferredActionQueue("ai", memory_store)
        for name in "abc":
            queue.enqueue({"id": name})
        assert queue.remove("b") is True
        assert queue.remove("b") is False
        assert [a.id for a in queue.pending()] == ["a", "c"]
        assert queue.clear() == 2
        assert len(queue) == 0


class TestDrain:
    """Tests for drain."""

    @pytest.mark.asyncio
    async def test_fifo_and_removal(self, memory_store):
        """Actions replay in order and successes are removed."""
        queue = DeferredActionQueue("ai", memory_store)
        for name in "abc":
            queue.enqueue({"id": name})
        seen = []

        async def replay(action):
            seen.append(action.id)
            return action.id != "b"

        result = await queue.drain(replay)

        assert seen == ["a", "b", "c"]
        assert result.processed == 2
        assert result.failed == 1
        assert [(a.id, a.attempts) for a in queue.pending()] == [("b", 1)]

    @pytest.mark.asyncio
    async def test_exceptions_count_as_failures(self, memory_store):
        """A raising replay is a failed attempt, not a crash."""
        queue = DeferredActionQueue("ai", memory_store)
        queue.enqueue({"id": "a"})

        def replay(action):
            raise ConnectionError("still down")

        result = await queue.drain(replay)
        assert result.failed == 1
        assert queue.pending()[0].attempts == 1

    @pytest.mark.asyncio
    async def test_discard_after_max_attempts(self, memory_store):
        """Actions are discarded and reported after max_attempts failures."""
        queue = DeferredActionQueue("ai", memory_store, max_attempts=2)
        queue.enqueue({"id": "poison"})

        first = await queue.drain(lambda action: False)
        assert first.discarded == []
        second = await queue.drain(lambda action: False)

        assert [a.id for a in second.discarded] == ["poison"]
        assert second.discarded[0].attempts == 2
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_expired_actions_discarded_first(self, memory_store, clock):
        """Actions older than max_age are dropped without replay."""
        queue = DeferredActionQueue("ai", memory_store, max_age=60.0, clock=clock)
        queue.enqueue({"id": "old"})
        clock.advance(120.0)
        queue.enqueue({"id": "new"})
        replayed = []

        result = await queue.drain(lambda action: replayed.append(action.id) or True)

        assert replayed == ["new"]
        assert [a.id for a in result.discarded] == ["old"]
        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_enqueue_during_drain_is_kept(self, memory_store):
        """Actions enqueued while a replay is suspended are not lost."""
        queue = DeferredActionQueue("ai", memory_store)
        queue.enqueue({"id": "a"})

        async def replay(action):
            queue.enqueue({"id": "late"})
            await asyncio.sleep(0)
            return True

        result = await queue.drain(replay)
        assert result.processed == 1
        assert [a.id for a in queue.pending()] == ["late"]

    @pytest.mark.asyncio
    async def test_failed_read_during_drain(self, flaky_store):
        """A read failure mid-drain finishes the pass in memory without truncating the store."""
        queue = DeferredActionQueue("ai", flaky_store)
        queue.enqueue({"id": "a"})
        queue.enqueue({"id": "b"})
        stored = flaky_store.get_item("rampart:queue:ai:actions")

        def replay(action):
            if action.id == "a":
                flaky_store.failing_reads = 1
            return True

        result = await queue.drain(replay)

        assert result.processed == 2
        assert queue.pending() == []
        assert flaky_store.get_item("rampart:queue:ai:actions") == stored

    @pytest.mark.asyncio
    async def test_removed_during_drain_is_skipped(self, memory_store):
        """Actions removed mid-drain are not replayed."""
        queue = DeferredActionQueue("ai", memory_store)
        queue.enqueue({"id": "a"})
        queue.enqueue({"id": "b"})
        seen = []

        def replay(action):
            seen.append(action.id)
            queue.remove("b")
            return True

        await queue.drain(replay)
        assert seen == ["a"]

    @pytest.mark.asyncio
    async def test_drain_in_memory_mode(self):
        """Draining works on a degraded queue."""
        queue = DeferredActionQueue("ai", UnavailableStore())
        queue.enqueue({"id": "a"})
        result = await queue.drain(lambda action: True)
        assert result.processed == 1
        assert len(queue) == 0

    def test_invalid_max_attempts(self):
        """max_attempts must be positive."""
        with pytest.raises(ValueError):
            DeferredActionQueue("ai", max_attempts=0)

    def test_from_settings(self, memory_store):
        """Limits and key prefix come from settings unless overridden."""
        settings = RampartSettings(queue_max_attempts=5, queue_max_age=30, key_prefix="app")
        queue = DeferredActionQueue.from_settings("ai", memory_store, settings, max_age=10)
        queue.enqueue({"id": "a"})

        assert queue.max_attempts == 5
        assert queue.max_age == 10
        assert memory_store.get_item("app:queue:ai:actions") is not None
