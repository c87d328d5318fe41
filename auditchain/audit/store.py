"""Chain storage contract and the in-memory implementation.

The ChainStore protocol makes the "current tail" explicit: writers read
the tail, build the next entry, and ask the store to append it only if
the tail is still the one they read (compare-and-swap). Readers capture
the tail sequence at call start and bound every query by it, so entries
committed after the call began are never half-visible.

Classes:
    ChainTail: (sequence, hash) of the newest entry
    AuditQueryFilters: Filter parameters shared by queries and scans
    GroupCount: One row of a grouped count
    ChainStore: Storage protocol used by every component
    InMemoryChainStore: Thread-safe in-memory store for tests and single-process use
"""

import logging
import threading
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol

from auditchain.audit.config import GENESIS_HASH
from auditchain.audit.exceptions import AppendConflict, AppendPersistFailure
from auditchain.audit.models import AuditLogEntry, Resolution, SecurityEventType, Severity, to_utc

logger = logging.getLogger(__name__)

GROUPABLE_FIELDS: frozenset[str] = frozenset({"event_type", "severity", "actor_user_id", "ip"})


@dataclass(frozen=True)
class ChainTail:
    """The newest committed entry, or (0, GENESIS_HASH) for an empty chain."""

    sequence: int
    hash: str

    @classmethod
    def genesis(cls) -> "ChainTail":
        return cls(sequence=0, hash=GENESIS_HASH)


@dataclass
class AuditQueryFilters:
    """Filter parameters for querying audit entries.

    Attributes:
        event_type: Filter by event type
        severity: Filter by a single severity
        severities: Filter by any of several severities
        actor_id: Filter by actor user ID
        ip: Filter by client IP
        start_time: Entries at or after this time
        end_time: Entries at or before this time
        archived: Filter by archive flag
        resolved: Filter by resolution flag
        min_sequence: Entries at or after this sequence
        max_sequence: Entries at or before this sequence (read snapshot bound)
    """

    event_type: SecurityEventType | None = None
    severity: Severity | None = None
    severities: frozenset[Severity] | None = None
    actor_id: str | None = None
    ip: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    archived: bool | None = None
    resolved: bool | None = None
    min_sequence: int | None = None
    max_sequence: int | None = None

    def __post_init__(self) -> None:
        if self.start_time is not None:
            self.start_time = to_utc(self.start_time)
        if self.end_time is not None:
            self.end_time = to_utc(self.end_time)

    def bounded(self, max_sequence: int) -> "AuditQueryFilters":
        """Return a copy capped at a snapshot sequence."""
        if self.max_sequence is not None:
            max_sequence = min(self.max_sequence, max_sequence)
        return replace(self, max_sequence=max_sequence)

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.event_type is not None and entry.event_type != self.event_type:
            return False
        if self.severity is not None and entry.severity != self.severity:
            return False
        if self.severities is not None and entry.severity not in self.severities:
            return False
        if self.actor_id is not None and entry.actor.user_id != self.actor_id:
            return False
        if self.ip is not None and entry.ip != self.ip:
            return False
        if self.start_time is not None and entry.timestamp < self.start_time:
            return False
        if self.end_time is not None and entry.timestamp > self.end_time:
            return False
        if self.archived is not None and entry.archived != self.archived:
            return False
        if self.resolved is not None and entry.resolution.resolved != self.resolved:
            return False
        if self.min_sequence is not None and entry.sequence < self.min_sequence:
            return False
        if self.max_sequence is not None and entry.sequence > self.max_sequence:
            return False
        return True


@dataclass
class GroupCount:
    """Count of entries sharing the same values for a set of fields."""

    key: tuple[Any, ...]
    count: int
    last_timestamp: datetime | None = None
    fields: tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict[str, Any]:
        return dict(zip(self.fields, self.key))


class ChainStore(Protocol):
    """Durable append-only storage keyed by sequence."""

    async def read_tail(self) -> ChainTail:
        """Atomically read the current tail."""
        ...

    async def append_if_tail(self, expected: ChainTail, entry: AuditLogEntry) -> None:
        """Persist ``entry`` and advance the tail, only if the tail is still ``expected``.

        Raises:
            AppendConflict: The tail moved; nothing was written.
            AppendPersistFailure: Storage failed; nothing was written.
        """
        ...

    async def get_entry(self, sequence: int) -> AuditLogEntry | None: ...

    def iter_entries(
        self, from_sequence: int, to_sequence: int, batch_size: int = 500
    ) -> AsyncIterator[AuditLogEntry]:
        """Stream entries in ascending sequence order within [from, to]."""
        ...

    async def find_entries(
        self, filters: AuditQueryFilters, offset: int = 0, limit: int = 100
    ) -> list[AuditLogEntry]:
        """Matching entries, newest sequence first."""
        ...

    async def count_entries(self, filters: AuditQueryFilters) -> int: ...

    async def count_grouped(
        self,
        filters: AuditQueryFilters,
        group_by: Sequence[str],
        limit: int | None = None,
    ) -> list[GroupCount]:
        """Counts per distinct value tuple, highest count first."""
        ...

    async def update_resolution(
        self, sequence: int, resolution: Resolution
    ) -> AuditLogEntry | None: ...

    async def archive_entries(
        self,
        sequences: Sequence[int],
        cutoff: datetime,
        archived_at: datetime,
        compact_details: bool,
    ) -> list[int]:
        """Archive the given entries that are still eligible.

        Eligibility (resolved, unarchived, older than ``cutoff``) is
        re-checked atomically per row. Returns the sequences archived.
        """
        ...


def _group_value(entry: AuditLogEntry, name: str) -> Any:
    if name == "event_type":
        return entry.event_type.value
    if name == "severity":
        return entry.severity.value
    if name == "actor_user_id":
        return entry.actor.user_id
    return entry.ip


def check_group_fields(group_by: Sequence[str]) -> None:
    unknown = set(group_by) - GROUPABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot group by {sorted(unknown)}")


class InMemoryChainStore:
    """Thread-safe in-memory chain store.

    Entries live in a list indexed by ``sequence - 1``; the tail is the
    last element. A threading lock guards every read-modify-write, which
    is the in-process mutex variant of the tail CAS.

    Attributes:
        _entries: Entries in sequence order.
        _hashes: Secondary unique index on hash.
        _lock: Threading lock for thread-safe access.
    """

    def __init__(self) -> None:
        self._entries: list[AuditLogEntry] = []
        self._hashes: set[str] = set()
        self._lock = threading.Lock()

    def _tail(self) -> ChainTail:
        if not self._entries:
            return ChainTail.genesis()
        last = self._entries[-1]
        return ChainTail(sequence=last.sequence, hash=last.hash)

    async def read_tail(self) -> ChainTail:
        with self._lock:
            return self._tail()

    async def append_if_tail(self, expected: ChainTail, entry: AuditLogEntry) -> None:
        with self._lock:
            current = self._tail()
            if current != expected:
                raise AppendConflict(
                    f"Tail moved: expected {expected.sequence}, found {current.sequence}",
                    expected_sequence=expected.sequence,
                )
            if entry.sequence != expected.sequence + 1 or entry.prev_hash != expected.hash:
                raise AppendPersistFailure(
                    f"Entry {entry.sequence} does not extend tail {expected.sequence}"
                )
            if entry.hash in self._hashes:
                raise AppendPersistFailure(f"Duplicate hash for entry {entry.sequence}")

            self._entries.append(entry)
            self._hashes.add(entry.hash)

        logger.debug("Appended audit entry: sequence=%s", entry.sequence)

    async def get_entry(self, sequence: int) -> AuditLogEntry | None:
        with self._lock:
            if 1 <= sequence <= len(self._entries):
                return self._entries[sequence - 1]
            return None

    async def iter_entries(
        self, from_sequence: int, to_sequence: int, batch_size: int = 500
    ) -> AsyncIterator[AuditLogEntry]:
        start = max(from_sequence, 1)
        while start <= to_sequence:
            stop = min(start + batch_size - 1, to_sequence)
            with self._lock:
                batch = self._entries[start - 1 : stop]
            if not batch:
                return
            for entry in batch:
                yield entry
            start = stop + 1

    def _snapshot(self, filters: AuditQueryFilters) -> list[AuditLogEntry]:
        with self._lock:
            entries = list(self._entries)
        return [e for e in entries if filters.matches(e)]

    async def find_entries(
        self, filters: AuditQueryFilters, offset: int = 0, limit: int = 100
    ) -> list[AuditLogEntry]:
        results = self._snapshot(filters)
        results.reverse()
        return results[offset : offset + limit]

    async def count_entries(self, filters: AuditQueryFilters) -> int:
        return len(self._snapshot(filters))

    async def count_grouped(
        self,
        filters: AuditQueryFilters,
        group_by: Sequence[str],
        limit: int | None = None,
    ) -> list[GroupCount]:
        check_group_fields(group_by)
        fields = tuple(group_by)
        groups: dict[tuple[Any, ...], GroupCount] = {}
        for entry in self._snapshot(filters):
            key = tuple(_group_value(entry, name) for name in fields)
            group = groups.get(key)
            if group is None:
                group = groups[key] = GroupCount(key=key, count=0, fields=fields)
            group.count += 1
            if group.last_timestamp is None or entry.timestamp > group.last_timestamp:
                group.last_timestamp = entry.timestamp

        results = sorted(groups.values(), key=lambda g: (g.count, g.last_timestamp), reverse=True)
        if limit is not None:
            results = results[:limit]
        return results

    async def update_resolution(
        self, sequence: int, resolution: Resolution
    ) -> AuditLogEntry | None:
        with self._lock:
            if not 1 <= sequence <= len(self._entries):
                return None
            updated = self._entries[sequence - 1].with_resolution(resolution)
            self._entries[sequence - 1] = updated
            return updated

    async def archive_entries(
        self,
        sequences: Sequence[int],
        cutoff: datetime,
        archived_at: datetime,
        compact_details: bool,
    ) -> list[int]:
        archived: list[int] = []
        with self._lock:
            for sequence in sequences:
                if not 1 <= sequence <= len(self._entries):
                    continue
                entry = self._entries[sequence - 1]
                if entry.archived or not entry.resolution.resolved or entry.timestamp >= cutoff:
                    continue
                self._entries[sequence - 1] = replace(
                    entry,
                    archived=True,
                    archived_at=archived_at,
                    details=None if compact_details else entry.details,
                )
                archived.append(sequence)
        return archived

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        """Clear all entries.

        Used primarily for testing.
        """
        with self._lock:
            self._entries.clear()
            self._hashes.clear()
