"""
Tests for the processed-event guard.
"""

import asyncio

import pytest

from app.telegram_bot.idempotency import (
    IdempotencyGuard,
    callback_event_key,
    event_key,
    media_event_key,
)
from conftest import MemoryStateBackend


async def wait_for_writes(backend: MemoryStateBackend, count: int, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while backend.writes < count and loop.time() < deadline:
        await asyncio.sleep(0.01)


class TestEventKeys:
    """Key formats match the persisted processed-messages snapshots."""

    def test_primary_key(self):
        assert event_key(42, 7) == "42_7"

    def test_media_key(self):
        assert media_event_key(42, 7) == "photo_42_7"

    def test_callback_key(self):
        assert callback_event_key("abc") == "callback_abc"


class TestAccept:
    """Tests for accept()."""

    def test_accept_twice(self):
        """Same key within the window: first accepted, second rejected."""
        guard = IdempotencyGuard()
        assert (guard.accept("42_1"), guard.accept("42_1")) == (True, False)

    def test_distinct_keys_accepted(self):
        guard = IdempotencyGuard()
        assert guard.accept("42_1")
        assert guard.accept("42_2")
        assert guard.accept("43_1")

    def test_never_exceeds_capacity(self):
        guard = IdempotencyGuard(capacity=5)
        for i in range(20):
            guard.accept(f"1_{i}")
            assert len(guard) <= 5

    def test_oldest_evicted_first(self):
        """After capacity+1 insertions the oldest key is new again."""
        guard = IdempotencyGuard(capacity=3)
        for key in ("a", "b", "c", "d"):
            assert guard.accept(key)

        assert guard.snapshot() == ["b", "c", "d"]
        assert guard.accept("a") is True
        assert guard.accept("d") is False

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            IdempotencyGuard(capacity=0)
        with pytest.raises(ValueError):
            IdempotencyGuard(flush_every=0)


class TestMediaGuard:
    """seen()/mark() let the media pipeline record completion late."""

    def test_seen_and_mark(self):
        guard = IdempotencyGuard(name="media")
        key = media_event_key(42, 9)

        assert guard.seen(key) is False
        guard.mark(key)
        assert guard.seen(key) is True
        assert guard.accept(key) is False

    def test_mark_is_idempotent(self):
        guard = IdempotencyGuard(name="media")
        guard.mark("photo_1_1")
        guard.mark("photo_1_1")
        assert len(guard) == 1


class TestPersistence:
    """Snapshots go to the backend every Nth insertion, off the reply path."""

    async def test_snapshot_every_nth_insert(self):
        backend = MemoryStateBackend()
        guard = IdempotencyGuard(backend, flush_every=10)

        for i in range(9):
            guard.accept(f"1_{i}")
        await asyncio.sleep(0.05)
        assert backend.writes == 0

        guard.accept("1_9")
        await wait_for_writes(backend, 1)
        assert backend.writes == 1
        assert backend.data == [f"1_{i}" for i in range(10)]

    async def test_duplicates_do_not_count_as_insertions(self):
        backend = MemoryStateBackend()
        guard = IdempotencyGuard(backend, flush_every=2)

        guard.accept("1_1")
        guard.accept("1_1")
        guard.accept("1_1")
        await asyncio.sleep(0.05)
        assert backend.writes == 0

    async def test_flush_writes_current_snapshot(self):
        backend = MemoryStateBackend()
        guard = IdempotencyGuard(backend, flush_every=100)
        guard.accept("1_1")
        guard.accept("1_2")

        await guard.flush()

        assert backend.data == ["1_1", "1_2"]

    async def test_load_restores_snapshot(self):
        backend = MemoryStateBackend(["42_1", "42_2"])
        guard = IdempotencyGuard(backend)

        loaded = await guard.load()

        assert loaded == 2
        assert guard.accept("42_1") is False
        assert guard.accept("42_3") is True

    async def test_load_keeps_newest_within_capacity(self):
        backend = MemoryStateBackend([f"1_{i}" for i in range(10)])
        guard = IdempotencyGuard(backend, capacity=3)

        await guard.load()

        assert guard.snapshot() == ["1_7", "1_8", "1_9"]

    async def test_load_ignores_unreadable_backend(self):
        class BrokenBackend:
            def read_all(self):
                raise OSError("disk gone")

            def write_all(self, data):
                raise OSError("disk gone")

        guard = IdempotencyGuard(BrokenBackend())

        assert await guard.load() == 0
        assert guard.accept("1_1") is True
        # Write failures are logged, never raised
        await guard.flush()

    async def test_no_backend(self):
        guard = IdempotencyGuard(None)
        assert await guard.load() == 0
        guard.accept("1_1")
        await guard.flush()
