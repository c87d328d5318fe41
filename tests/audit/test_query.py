"""Tests for the query service."""

from datetime import timedelta

import pytest

from auditchain.audit.builder import ChainBuilder
from auditchain.audit.models import SecurityEventType, Severity
from auditchain.audit.query import MAX_PAGE_SIZE, AuditQueryService
from auditchain.audit.store import AuditQueryFilters


async def seed(store, event_factory):
    """Seed a small chain with mixed types, IPs and actors."""
    builder = ChainBuilder(store)
    events = [
        event_factory(ip="10.0.0.1", user_id="alice", offset_seconds=0),
        event_factory(ip="10.0.0.1", user_id="alice", offset_seconds=10),
        event_factory(SecurityEventType.XSS_ATTEMPT, ip="10.0.0.2", offset_seconds=20),
        event_factory(SecurityEventType.SQL_INJECTION, ip="10.0.0.2", user_id="bob", offset_seconds=30),
        event_factory(SecurityEventType.XSS_ATTEMPT, ip="10.0.0.3", offset_seconds=40),
        event_factory(SecurityEventType.CSP_VIOLATION, ip="10.0.0.4", offset_seconds=50),
    ]
    for event in events:
        await builder.append(event)


class TestListEntries:
    """Tests for paginated listing."""

    @pytest.mark.asyncio
    async def test_pagination(self, memory_store, event_factory):
        """Pages should be newest first with a consistent total."""
        await seed(memory_store, event_factory)
        service = AuditQueryService(memory_store)

        page1 = await service.list_entries(page=1, page_size=4)
        page2 = await service.list_entries(page=2, page_size=4)

        assert [e.sequence for e in page1.entries] == [6, 5, 4, 3]
        assert [e.sequence for e in page2.entries] == [2, 1]
        assert page1.total_count == 6
        assert page1.total_pages == 2
        assert page1.snapshot_sequence == 6

    @pytest.mark.asyncio
    async def test_filters(self, memory_store, event_factory):
        """Filters should restrict both entries and total."""
        await seed(memory_store, event_factory)
        service = AuditQueryService(memory_store)

        page = await service.list_entries(AuditQueryFilters(severity=Severity.HIGH))

        assert [e.sequence for e in page.entries] == [5, 3]
        assert page.total_count == 2

    @pytest.mark.asyncio
    async def test_invalid_paging(self, memory_store):
        """Out-of-range page parameters should be rejected."""
        service = AuditQueryService(memory_store)

        with pytest.raises(ValueError):
            await service.list_entries(page=0)
        with pytest.raises(ValueError):
            await service.list_entries(page_size=MAX_PAGE_SIZE + 1)

    @pytest.mark.asyncio
    async def test_empty(self, memory_store):
        """An empty chain should produce an empty page."""
        page = await AuditQueryService(memory_store).list_entries()

        assert page.entries == []
        assert page.total_count == 0
        assert page.total_pages == 0


class TestAggregates:
    """Tests for summary, top lists and statistics."""

    @pytest.mark.asyncio
    async def test_summary(self, memory_store, event_factory, base_time):
        """summary should count by type and severity."""
        await seed(memory_store, event_factory)

        rows = await AuditQueryService(memory_store).summary(7, now=base_time + timedelta(hours=1))

        counts = {(r.event_type, r.severity): r.count for r in rows}
        assert counts == {
            ("AUTH_FAILURE", "LOW"): 2,
            ("XSS_ATTEMPT", "HIGH"): 2,
            ("SQL_INJECTION", "CRITICAL"): 1,
            ("CSP_VIOLATION", "LOW"): 1,
        }
        xss = next(r for r in rows if r.event_type == "XSS_ATTEMPT")
        assert xss.last_occurrence == base_time + timedelta(seconds=40)

    @pytest.mark.asyncio
    async def test_summary_window(self, memory_store, event_factory, base_time):
        """Entries older than the window should not be summarized."""
        await seed(memory_store, event_factory)

        rows = await AuditQueryService(memory_store).summary(7, now=base_time + timedelta(days=30))

        assert rows == []

    @pytest.mark.asyncio
    async def test_invalid_days(self, memory_store):
        """days below 1 should be rejected."""
        with pytest.raises(ValueError):
            await AuditQueryService(memory_store).summary(0)

    @pytest.mark.asyncio
    async def test_top_ips_counts_elevated_only(self, memory_store, event_factory, base_time):
        """top_ips should rank HIGH/CRITICAL sources with their event types."""
        await seed(memory_store, event_factory)

        top = await AuditQueryService(memory_store).top_ips(7, now=base_time + timedelta(hours=1))

        assert [(t.subject, t.count) for t in top] == [("10.0.0.2", 2), ("10.0.0.3", 1)]
        assert top[0].event_types == ["SQL_INJECTION", "XSS_ATTEMPT"]

    @pytest.mark.asyncio
    async def test_top_ips_all_severities(self, memory_store, event_factory, base_time):
        """severities=None should count everything."""
        await seed(memory_store, event_factory)

        top = await AuditQueryService(memory_store).top_ips(
            7, severities=None, now=base_time + timedelta(hours=1)
        )

        assert {t.subject for t in top} == {"10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4"}

    @pytest.mark.asyncio
    async def test_top_actors_skip_anonymous(self, memory_store, event_factory, base_time):
        """top_actors should ignore entries without an actor."""
        await seed(memory_store, event_factory)

        top = await AuditQueryService(memory_store).top_actors(7, now=base_time + timedelta(hours=1))

        assert [(t.subject, t.count) for t in top] == [("alice", 2), ("bob", 1)]

    @pytest.mark.asyncio
    async def test_statistics(self, memory_store, event_factory, base_time):
        """statistics should combine every view."""
        await seed(memory_store, event_factory)

        stats = await AuditQueryService(memory_store).statistics(7, now=base_time + timedelta(hours=1))

        assert stats.total_events == 6
        assert len(stats.summary) == 4
        assert stats.top_threats[0].subject == "10.0.0.2"
        assert stats.top_actors[0].subject == "alice"
        assert stats.recent_events[0].sequence == 6
