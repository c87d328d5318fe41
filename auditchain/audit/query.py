"""Read-only filtering and aggregate views over the audit chain.

Every call captures the tail sequence first and bounds all of its
queries by it. Entries committed before the call began are visible;
entries committed while it runs are not, so a paginated list and its
total count always agree.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from auditchain.audit.models import AuditLogEntry, Severity
from auditchain.audit.store import AuditQueryFilters, ChainStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500
RECENT_EVENTS_LIMIT = 50

_ELEVATED = frozenset({Severity.HIGH, Severity.CRITICAL})


@dataclass
class Page:
    """One page of entries, newest sequence first."""

    entries: list[AuditLogEntry]
    total_count: int
    page: int
    page_size: int
    snapshot_sequence: int = 0

    @property
    def total_pages(self) -> int:
        if self.total_count == 0:
            return 0
        return (self.total_count + self.page_size - 1) // self.page_size


@dataclass
class SummaryRow:
    event_type: str
    severity: str
    count: int
    last_occurrence: datetime | None


@dataclass
class TopSubject:
    """A frequently seen IP or actor."""

    subject: str
    count: int
    last_seen: datetime | None
    event_types: list[str] = field(default_factory=list)


@dataclass
class SecurityStatistics:
    """Dashboard view over the last ``days`` days."""

    days: int
    summary: list[SummaryRow]
    top_threats: list[TopSubject]
    top_actors: list[TopSubject]
    recent_events: list[AuditLogEntry]
    total_events: int


def _since(days: int, now: datetime | None = None) -> datetime:
    if days < 1:
        raise ValueError("days must be at least 1")
    return (now or datetime.now(tz=timezone.utc)) - timedelta(days=days)


class AuditQueryService:
    """Paginated queries and aggregate reporting.

    Args:
        store: The chain store (read only).
    """

    def __init__(self, store: ChainStore) -> None:
        self._store = store

    async def list_entries(
        self,
        filters: AuditQueryFilters | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Page:
        """List entries matching ``filters``, newest first.

        Args:
            filters: Filter parameters (default: everything).
            page: 1-based page number.
            page_size: Entries per page (1..MAX_PAGE_SIZE).

        Returns:
            Page of entries and the total match count.

        Raises:
            ValueError: If page or page_size is out of range.
        """
        if page < 1:
            raise ValueError("page must be at least 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

        tail = await self._store.read_tail()
        bounded = (filters or AuditQueryFilters()).bounded(tail.sequence)

        total = await self._store.count_entries(bounded)
        entries = await self._store.find_entries(
            bounded, offset=(page - 1) * page_size, limit=page_size
        )
        return Page(
            entries=entries,
            total_count=total,
            page=page,
            page_size=page_size,
            snapshot_sequence=tail.sequence,
        )

    async def summary(self, days: int = 7, now: datetime | None = None) -> list[SummaryRow]:
        """Counts per (event type, severity) with the last occurrence."""
        tail = await self._store.read_tail()
        filters = AuditQueryFilters(start_time=_since(days, now)).bounded(tail.sequence)
        groups = await self._store.count_grouped(filters, group_by=["event_type", "severity"])
        return [
            SummaryRow(
                event_type=g.key[0],
                severity=g.key[1],
                count=g.count,
                last_occurrence=g.last_timestamp,
            )
            for g in groups
        ]

    async def top_ips(
        self,
        days: int = 7,
        limit: int = 10,
        severities: frozenset[Severity] | None = _ELEVATED,
        now: datetime | None = None,
    ) -> list[TopSubject]:
        """Top IPs by event count, each with the event types it produced.

        Args:
            days: Look-back period.
            limit: Maximum number of IPs.
            severities: Only count these severities (default HIGH/CRITICAL,
                None for all).
        """
        tail = await self._store.read_tail()
        filters = AuditQueryFilters(start_time=_since(days, now), severities=severities).bounded(
            tail.sequence
        )
        groups = await self._store.count_grouped(filters, group_by=["ip"], limit=limit)
        if not groups:
            return []

        by_type = await self._store.count_grouped(filters, group_by=["ip", "event_type"])
        types: dict[str, list[str]] = {}
        for g in by_type:
            types.setdefault(g.key[0], []).append(g.key[1])

        return [
            TopSubject(
                subject=g.key[0],
                count=g.count,
                last_seen=g.last_timestamp,
                event_types=sorted(types.get(g.key[0], [])),
            )
            for g in groups
        ]

    async def top_actors(
        self, days: int = 7, limit: int = 10, now: datetime | None = None
    ) -> list[TopSubject]:
        """Top actors by event count. Entries without an actor are ignored."""
        tail = await self._store.read_tail()
        filters = AuditQueryFilters(start_time=_since(days, now)).bounded(tail.sequence)
        # One extra row in case the anonymous group is among the top
        groups = await self._store.count_grouped(filters, group_by=["actor_user_id"], limit=limit + 1)
        return [
            TopSubject(subject=g.key[0], count=g.count, last_seen=g.last_timestamp)
            for g in groups
            if g.key[0] is not None
        ][:limit]

    async def statistics(self, days: int = 7, now: datetime | None = None) -> SecurityStatistics:
        """Summary, top threat IPs, top actors and the most recent entries."""
        tail = await self._store.read_tail()
        filters = AuditQueryFilters(start_time=_since(days, now)).bounded(tail.sequence)

        summary = await self.summary(days, now=now)
        top_threats = await self.top_ips(days, now=now)
        top_actors = await self.top_actors(days, now=now)
        recent = await self._store.find_entries(filters, limit=RECENT_EVENTS_LIMIT)
        total = await self._store.count_entries(filters)

        return SecurityStatistics(
            days=days,
            summary=summary,
            top_threats=top_threats,
            top_actors=top_actors,
            recent_events=recent,
            total_events=total,
        )
