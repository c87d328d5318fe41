"""Tests for the chain builder."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from auditchain.audit.builder import ChainBuilder, backoff_delay, build_entry
from auditchain.audit.config import GENESIS_HASH
from auditchain.audit.exceptions import AppendConflict, AppendPersistFailure
from auditchain.audit.integrity import verify_entry_hash
from auditchain.audit.store import ChainTail, InMemoryChainStore


class YieldingStore(InMemoryChainStore):
    """In-memory store that yields after reading the tail, forcing interleaved appends."""

    async def read_tail(self) -> ChainTail:
        tail = await super().read_tail()
        await asyncio.sleep(0)
        return tail


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_exponential_without_jitter(self):
        """Delay should double per attempt."""
        assert backoff_delay(1, 0.1, 10, jitter=False) == pytest.approx(0.1)
        assert backoff_delay(2, 0.1, 10, jitter=False) == pytest.approx(0.2)
        assert backoff_delay(4, 0.1, 10, jitter=False) == pytest.approx(0.8)

    def test_capped(self):
        """Delay should not exceed max_delay before jitter."""
        assert backoff_delay(20, 0.1, 1.0, jitter=False) == 1.0

    def test_jitter_range(self):
        """Jitter should stay within half to one and a half of the delay."""
        for _ in range(50):
            delay = backoff_delay(3, 0.1, 10)
            assert 0.2 <= delay < 0.6


class TestBuildEntry:
    """Tests for build_entry."""

    def test_first_entry_links_to_genesis(self, event_factory):
        """The first entry should have sequence 1 and the genesis prev_hash."""
        entry = build_entry(event_factory(), ChainTail.genesis())

        assert entry.sequence == 1
        assert entry.prev_hash == GENESIS_HASH
        assert verify_entry_hash(entry, GENESIS_HASH)

    def test_extends_given_tail(self, event_factory):
        """The entry should follow the tail it was built from."""
        tail = ChainTail(sequence=41, hash="a" * 64)

        entry = build_entry(event_factory(), tail)

        assert entry.sequence == 42
        assert entry.prev_hash == "a" * 64

    def test_keyed_entry(self, event_factory):
        """A hash key should produce an HMAC hash."""
        plain = build_entry(event_factory(), ChainTail.genesis())
        keyed = build_entry(event_factory(), ChainTail.genesis(), hash_key=b"secret")

        assert plain.hash != keyed.hash
        assert verify_entry_hash(keyed, GENESIS_HASH, key=b"secret")


class TestChainBuilder:
    """Tests for ChainBuilder.append."""

    def test_rejects_zero_attempts(self, memory_store):
        """max_attempts below 1 should be rejected."""
        with pytest.raises(ValueError):
            ChainBuilder(memory_store, max_attempts=0)

    @pytest.mark.asyncio
    async def test_sequential_appends_are_contiguous(self, memory_store, event_factory):
        """Sequential appends should get sequences 1..N linked together."""
        builder = ChainBuilder(memory_store)

        results = [await builder.append(event_factory(offset_seconds=i)) for i in range(5)]

        assert [r.sequence for r in results] == [1, 2, 3, 4, 5]
        for previous, current in zip(results, results[1:]):
            assert current.entry.prev_hash == previous.hash

    @pytest.mark.asyncio
    async def test_concurrent_appends_without_local_lock(self, event_factory):
        """Racing appends should resolve through CAS retries into a gap-free chain."""
        store = YieldingStore()
        builder = ChainBuilder(store, max_attempts=50, base_delay=0, local_lock=False)

        results = await asyncio.gather(
            *(builder.append(event_factory(ip=f"10.0.0.{i}")) for i in range(20))
        )

        assert sorted(r.sequence for r in results) == list(range(1, 21))
        assert len({r.hash for r in results}) == 20

        previous_hash = GENESIS_HASH
        async for entry in store.iter_entries(1, 20):
            assert entry.prev_hash == previous_hash
            assert verify_entry_hash(entry, previous_hash)
            previous_hash = entry.hash

    @pytest.mark.asyncio
    async def test_concurrent_appends_with_local_lock(self, event_factory):
        """The local lock should serialize appends without conflicts."""
        store = YieldingStore()
        builder = ChainBuilder(store, max_attempts=1)

        results = await asyncio.gather(*(builder.append(event_factory()) for _ in range(10)))

        assert sorted(r.sequence for r in results) == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, event_factory):
        """Persistent conflicts should end in AppendPersistFailure."""
        store = AsyncMock()
        store.read_tail.return_value = ChainTail.genesis()
        store.append_if_tail.side_effect = AppendConflict("tail moved", expected_sequence=0)
        builder = ChainBuilder(store, max_attempts=3, base_delay=0)

        with pytest.raises(AppendPersistFailure) as exc_info:
            await builder.append(event_factory())

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, AppendConflict)
        assert store.append_if_tail.await_count == 3

    @pytest.mark.asyncio
    async def test_conflict_then_success(self, event_factory):
        """A single conflict should be retried after a backoff sleep."""
        store = AsyncMock()
        store.read_tail.return_value = ChainTail.genesis()
        store.append_if_tail.side_effect = [AppendConflict("tail moved"), None]
        builder = ChainBuilder(store, max_attempts=3, base_delay=0.05)

        with patch("auditchain.audit.builder.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            result = await builder.append(event_factory())

        assert result.sequence == 1
        mock_sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_persist_failure_not_retried(self, event_factory):
        """A storage failure should propagate immediately with the attempt number."""
        store = AsyncMock()
        store.read_tail.return_value = ChainTail.genesis()
        store.append_if_tail.side_effect = AppendPersistFailure("disk full")
        builder = ChainBuilder(store, max_attempts=5, base_delay=0)

        with pytest.raises(AppendPersistFailure) as exc_info:
            await builder.append(event_factory())

        assert exc_info.value.attempts == 1
        assert store.append_if_tail.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_append_leaves_tail_unchanged(self, memory_store, event_factory):
        """A failed append should not advance the tail."""
        builder = ChainBuilder(memory_store)
        await builder.append(event_factory())
        tail_before = await memory_store.read_tail()

        with patch.object(
            memory_store, "append_if_tail", AsyncMock(side_effect=AppendPersistFailure("boom"))
        ):
            with pytest.raises(AppendPersistFailure):
                await builder.append(event_factory())

        assert await memory_store.read_tail() == tail_before
        assert memory_store.count() == 1

        result = await builder.append(event_factory())
        assert result.sequence == 2
