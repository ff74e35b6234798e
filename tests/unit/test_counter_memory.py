"""
Unit tests for the in-memory counter store.

Tests cover:
- Record lifecycle
- Linearizable concurrent decrements
- Per-task deduplication
- Expiry and failure injection
"""

import asyncio

import pytest

from workers.zip_archiver.counter import CounterStore, InMemoryCounterStore
from workers.zip_archiver.errors import (
    CounterExhaustedError,
    PersistenceError,
    RunNotFoundError,
)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestInMemoryCounterStore:
    """Tests for InMemoryCounterStore."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return InMemoryCounterStore(default_ttl_seconds=900, clock=clock)

    def test_implements_protocol(self, store):
        assert isinstance(store, CounterStore)

    @pytest.mark.asyncio
    async def test_create_sets_total_and_remaining(self, store, clock):
        record = await store.create_record("evt", "job", 3)

        assert record.total == 3
        assert record.remaining == 3
        assert record.expires_at == int(clock.now) + 900
        assert record.processed_tasks == frozenset()

    @pytest.mark.asyncio
    async def test_create_twice_rejected(self, store):
        await store.create_record("evt", "job", 3)

        with pytest.raises(PersistenceError):
            await store.create_record("evt", "job", 3)

    @pytest.mark.asyncio
    async def test_decrement_returns_new_value_and_total(self, store):
        await store.create_record("evt", "job", 2)

        first = await store.decrement_and_fetch("evt", "job")
        second = await store.decrement_and_fetch("evt", "job")

        assert (first.remaining, first.total, first.reached_zero) == (1, 2, False)
        assert (second.remaining, second.total, second.reached_zero) == (0, 2, True)

    @pytest.mark.asyncio
    async def test_concurrent_decrements_are_linearizable(self, store):
        """N concurrent decrements return exactly {0..N-1}."""
        n = 50
        await store.create_record("evt", "job", n)

        results = await asyncio.gather(
            *(store.decrement_and_fetch("evt", "job", task_number=i + 1) for i in range(n))
        )

        assert sorted(r.remaining for r in results) == list(range(n))
        assert sum(1 for r in results if r.reached_zero) == 1

    @pytest.mark.asyncio
    async def test_three_workers_permutation(self, store):
        await store.create_record("evt", "job", 3)

        results = await asyncio.gather(
            *(store.decrement_and_fetch("evt", "job", task_number=t) for t in (1, 2, 3))
        )

        assert sorted(r.remaining for r in results) == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_duplicate_task_not_counted_twice(self, store):
        await store.create_record("evt", "job", 2)

        first = await store.decrement_and_fetch("evt", "job", task_number=1)
        again = await store.decrement_and_fetch("evt", "job", task_number=1)

        assert first.remaining == 1
        assert again.duplicate
        assert again.remaining == 1
        assert not again.reached_zero
        record = await store.get_record("evt", "job")
        assert record.remaining == 1
        assert record.processed_tasks == frozenset({1})

    @pytest.mark.asyncio
    async def test_duplicate_of_last_task_does_not_signal_again(self, store):
        await store.create_record("evt", "job", 1)

        last = await store.decrement_and_fetch("evt", "job", task_number=1)
        replay = await store.decrement_and_fetch("evt", "job", task_number=1)

        assert last.reached_zero
        assert replay.duplicate
        assert not replay.reached_zero

    @pytest.mark.asyncio
    async def test_decrement_below_zero_rejected(self, store):
        await store.create_record("evt", "job", 1)
        await store.decrement_and_fetch("evt", "job")

        with pytest.raises(CounterExhaustedError):
            await store.decrement_and_fetch("evt", "job")

    @pytest.mark.asyncio
    async def test_decrement_missing_record(self, store):
        with pytest.raises(RunNotFoundError):
            await store.decrement_and_fetch("evt", "job", task_number=1)

    @pytest.mark.asyncio
    async def test_expired_record_is_absent(self, store, clock):
        await store.create_record("evt", "job", 2, ttl_seconds=60)

        clock.now += 61

        assert await store.get_record("evt", "job") is None
        with pytest.raises(RunNotFoundError):
            await store.decrement_and_fetch("evt", "job")

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, store):
        await store.create_record("evt", "job", 1)

        await store.delete_record("evt", "job")
        await store.delete_record("evt", "job")

        assert await store.get_record("evt", "job") is None

    @pytest.mark.asyncio
    async def test_runs_are_isolated(self, store):
        await store.create_record("evt-1", "job", 1)
        await store.create_record("evt-2", "job", 2)

        await store.decrement_and_fetch("evt-1", "job")

        assert (await store.get_record("evt-2", "job")).remaining == 2

    @pytest.mark.asyncio
    async def test_fail_next(self, store):
        await store.create_record("evt", "job", 2)
        store.fail_next("decrement_and_fetch", PersistenceError("throttled"))

        with pytest.raises(PersistenceError, match="throttled"):
            await store.decrement_and_fetch("evt", "job")

        # Only the next call fails and nothing was mutated
        result = await store.decrement_and_fetch("evt", "job")
        assert result.remaining == 1

    @pytest.mark.asyncio
    async def test_mark_signaled(self, store):
        await store.create_record("evt", "job", 1)
        await store.decrement_and_fetch("evt", "job", task_number=1)

        unsignaled = await store.decrement_and_fetch("evt", "job", task_number=1)
        await store.mark_signaled("evt", "job")
        signaled = await store.decrement_and_fetch("evt", "job", task_number=1)

        assert unsignaled.needs_signal
        assert not signaled.needs_signal
        assert signaled.signaled
        assert (await store.get_record("evt", "job")).signaled

    @pytest.mark.asyncio
    async def test_duplicate_before_zero_needs_no_signal(self, store):
        await store.create_record("evt", "job", 2)
        await store.decrement_and_fetch("evt", "job", task_number=1)

        replay = await store.decrement_and_fetch("evt", "job", task_number=1)

        assert replay.duplicate
        assert not replay.needs_signal

    @pytest.mark.asyncio
    async def test_mark_signaled_missing_record(self, store):
        await store.mark_signaled("evt", "job")

        assert await store.get_record("evt", "job") is None
