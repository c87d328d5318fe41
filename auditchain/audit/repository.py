"""SQL-backed chain store.

This module provides the SqlChainStore class for database operations:
- read_tail / append_if_tail: compare-and-swap append on audit_chain_tail
- get_entry / iter_entries: point and range reads by sequence
- find_entries / count_entries / count_grouped: filtered queries and aggregates
- update_resolution: the only post-write mutation of an entry
- archive_entries: conditional archive of resolved, old rows

Append serialization works without holding a lock across the caller's
hash computation:
1. The caller reads the tail (sequence, hash)
2. The caller computes the next entry from it
3. Inside one transaction, the tail row is UPDATEd WHERE it still holds the
   values read in step 1, and the entry row is INSERTed
4. Zero updated rows, or a unique violation, means another writer won:
   the transaction rolls back and AppendConflict is raised

Every operation uses its own short-lived session from the factory, so
readers never share a transaction with the append path.
"""

import logging
from collections.abc import AsyncIterator, Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.audit.exceptions import AppendConflict, AppendPersistFailure
from auditchain.audit.models import (
    Actor,
    AuditLogEntry,
    HttpMethod,
    Resolution,
    SecurityEventType,
    Severity,
    Target,
    to_utc,
)
from auditchain.audit.store import AuditQueryFilters, ChainTail, GroupCount, check_group_fields
from auditchain.models.audit_log import AuditLogRow, ChainTailRow

logger = logging.getLogger(__name__)


def entry_to_row(entry: AuditLogEntry, chain_key: str) -> AuditLogRow:
    """Convert an entry to an ORM row."""
    return AuditLogRow(
        chain_key=chain_key,
        sequence=entry.sequence,
        event_type=entry.event_type.value,
        severity=entry.severity.value,
        actor_user_id=entry.actor.user_id,
        actor_email=entry.actor.email,
        actor_role=entry.actor.role,
        ip=entry.ip,
        user_agent=entry.user_agent,
        path=entry.path,
        method=entry.method.value,
        target_type=entry.target.target_type,
        target_id=entry.target.target_id,
        details=entry.details,
        details_digest=entry.details_digest,
        timestamp=entry.timestamp,
        success=entry.success,
        error_message=entry.error_message,
        hash=entry.hash,
        prev_hash=entry.prev_hash,
        resolved=entry.resolution.resolved,
        resolved_at=entry.resolution.resolved_at,
        resolved_by=entry.resolution.resolved_by,
        notes=entry.resolution.notes,
        archived=entry.archived,
        archived_at=entry.archived_at,
    )


def row_to_entry(row: AuditLogRow) -> AuditLogEntry:
    """Convert an ORM row to an entry.

    Timestamps are normalized to aware UTC (SQLite returns naive values).
    """
    return AuditLogEntry(
        sequence=row.sequence,
        event_type=SecurityEventType(row.event_type),
        severity=Severity(row.severity),
        ip=row.ip,
        user_agent=row.user_agent,
        path=row.path,
        method=HttpMethod(row.method),
        timestamp=to_utc(row.timestamp),
        details=row.details,
        details_digest=row.details_digest,
        success=row.success,
        error_message=row.error_message,
        hash=row.hash,
        prev_hash=row.prev_hash,
        actor=Actor(user_id=row.actor_user_id, email=row.actor_email, role=row.actor_role),
        target=Target(target_type=row.target_type, target_id=row.target_id),
        resolution=Resolution(
            resolved=row.resolved,
            resolved_at=to_utc(row.resolved_at) if row.resolved_at else None,
            resolved_by=row.resolved_by,
            notes=row.notes,
        ),
        archived=row.archived,
        archived_at=to_utc(row.archived_at) if row.archived_at else None,
    )


_GROUP_COLUMNS = {
    "event_type": AuditLogRow.event_type,
    "severity": AuditLogRow.severity,
    "actor_user_id": AuditLogRow.actor_user_id,
    "ip": AuditLogRow.ip,
}


class SqlChainStore:
    """ChainStore over SQLAlchemy async sessions.

    Args:
        session_factory: Factory producing AsyncSession instances
        chain_key: Name of the chain (selects the tail row and entry partition)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chain_key: str = "default",
    ) -> None:
        self._session_factory = session_factory
        self._chain_key = chain_key

    @property
    def chain_key(self) -> str:
        return self._chain_key

    async def read_tail(self) -> ChainTail:
        """Read the chain tail, or genesis for an empty chain.

        Raises:
            AppendPersistFailure: The database could not be read.
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ChainTailRow).where(ChainTailRow.chain_key == self._chain_key)
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise AppendPersistFailure(
                f"Failed to read chain tail for {self._chain_key}: {e}",
                last_exception=e,
            ) from e

        if row is None:
            return ChainTail.genesis()
        return ChainTail(sequence=row.sequence, hash=row.hash)

    async def append_if_tail(self, expected: ChainTail, entry: AuditLogEntry) -> None:
        """Insert the entry and advance the tail in one transaction.

        Raises:
            AppendConflict: The tail no longer matches ``expected``.
            AppendPersistFailure: Any other database failure.
        """
        now = datetime.now(tz=timezone.utc)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if expected.sequence == 0:
                        # First append creates the tail row; a concurrent
                        # creator surfaces as a primary key violation
                        session.add(
                            ChainTailRow(
                                chain_key=self._chain_key,
                                sequence=entry.sequence,
                                hash=entry.hash,
                                updated_at=now,
                            )
                        )
                        await session.flush()
                    else:
                        result = await session.execute(
                            update(ChainTailRow)
                            .where(ChainTailRow.chain_key == self._chain_key)
                            .where(ChainTailRow.sequence == expected.sequence)
                            .where(ChainTailRow.hash == expected.hash)
                            .values(sequence=entry.sequence, hash=entry.hash, updated_at=now)
                        )
                        if result.rowcount != 1:
                            raise AppendConflict(
                                f"Tail moved past sequence {expected.sequence}",
                                expected_sequence=expected.sequence,
                            )

                    session.add(entry_to_row(entry, self._chain_key))
                    await session.flush()
        except AppendConflict:
            raise
        except IntegrityError as e:
            raise AppendConflict(
                f"Concurrent append at sequence {entry.sequence}",
                expected_sequence=expected.sequence,
            ) from e
        except SQLAlchemyError as e:
            raise AppendPersistFailure(
                f"Failed to persist audit entry {entry.sequence}: {e}",
                last_exception=e,
            ) from e

        logger.debug("Persisted audit entry: chain=%s, sequence=%s", self._chain_key, entry.sequence)

    async def get_entry(self, sequence: int) -> AuditLogEntry | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AuditLogRow)
                .where(AuditLogRow.chain_key == self._chain_key)
                .where(AuditLogRow.sequence == sequence)
            )
            row = result.scalar_one_or_none()
        return row_to_entry(row) if row is not None else None

    async def iter_entries(
        self, from_sequence: int, to_sequence: int, batch_size: int = 500
    ) -> AsyncIterator[AuditLogEntry]:
        """Stream entries in ascending order using keyset pagination."""
        start = from_sequence
        while start <= to_sequence:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AuditLogRow)
                    .where(AuditLogRow.chain_key == self._chain_key)
                    .where(AuditLogRow.sequence >= start)
                    .where(AuditLogRow.sequence <= to_sequence)
                    .order_by(AuditLogRow.sequence.asc())
                    .limit(batch_size)
                )
                rows = list(result.scalars().all())

            if not rows:
                return
            for row in rows:
                yield row_to_entry(row)
            start = rows[-1].sequence + 1

    def _where(self, filters: AuditQueryFilters) -> list[Any]:
        """Build WHERE conditions from filters."""
        conditions: list[Any] = [AuditLogRow.chain_key == self._chain_key]

        if filters.event_type is not None:
            conditions.append(AuditLogRow.event_type == filters.event_type.value)
        if filters.severity is not None:
            conditions.append(AuditLogRow.severity == filters.severity.value)
        if filters.severities is not None:
            conditions.append(AuditLogRow.severity.in_([s.value for s in filters.severities]))
        if filters.actor_id is not None:
            conditions.append(AuditLogRow.actor_user_id == filters.actor_id)
        if filters.ip is not None:
            conditions.append(AuditLogRow.ip == filters.ip)
        if filters.start_time is not None:
            conditions.append(AuditLogRow.timestamp >= to_utc(filters.start_time))
        if filters.end_time is not None:
            conditions.append(AuditLogRow.timestamp <= to_utc(filters.end_time))
        if filters.archived is not None:
            conditions.append(AuditLogRow.archived.is_(filters.archived))
        if filters.resolved is not None:
            conditions.append(AuditLogRow.resolved.is_(filters.resolved))
        if filters.min_sequence is not None:
            conditions.append(AuditLogRow.sequence >= filters.min_sequence)
        if filters.max_sequence is not None:
            conditions.append(AuditLogRow.sequence <= filters.max_sequence)

        return conditions

    async def find_entries(
        self, filters: AuditQueryFilters, offset: int = 0, limit: int = 100
    ) -> list[AuditLogEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AuditLogRow)
                .where(*self._where(filters))
                .order_by(AuditLogRow.sequence.desc())
                .offset(offset)
                .limit(limit)
            )
            rows = list(result.scalars().all())
        return [row_to_entry(row) for row in rows]

    async def count_entries(self, filters: AuditQueryFilters) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(AuditLogRow).where(*self._where(filters))
            )
            return result.scalar() or 0

    async def count_grouped(
        self,
        filters: AuditQueryFilters,
        group_by: Sequence[str],
        limit: int | None = None,
    ) -> list[GroupCount]:
        check_group_fields(group_by)
        columns = [_GROUP_COLUMNS[name] for name in group_by]
        count_col = func.count().label("count")
        last_col = func.max(AuditLogRow.timestamp).label("last_timestamp")

        query = (
            select(*columns, count_col, last_col)
            .where(*self._where(filters))
            .group_by(*columns)
            .order_by(count_col.desc(), last_col.desc())
        )
        if limit is not None:
            query = query.limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            rows = result.fetchall()

        width = len(columns)
        groups = []
        for row in rows:
            values = tuple(row)
            last = values[width + 1]
            groups.append(
                GroupCount(
                    key=values[:width],
                    count=values[width],
                    last_timestamp=to_utc(last) if last is not None else None,
                    fields=tuple(group_by),
                )
            )
        return groups

    async def update_resolution(
        self, sequence: int, resolution: Resolution
    ) -> AuditLogEntry | None:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(AuditLogRow)
                    .where(AuditLogRow.chain_key == self._chain_key)
                    .where(AuditLogRow.sequence == sequence)
                    .with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return None

                row.resolved = resolution.resolved
                row.resolved_at = resolution.resolved_at
                row.resolved_by = resolution.resolved_by
                row.notes = resolution.notes
                await session.flush()
                return row_to_entry(row)

    async def archive_entries(
        self,
        sequences: Sequence[int],
        cutoff: datetime,
        archived_at: datetime,
        compact_details: bool,
    ) -> list[int]:
        """Archive eligible rows among ``sequences``.

        Rows currently locked by another transaction (e.g. a concurrent
        resolution) are skipped rather than waited on.
        """
        if not sequences:
            return []

        values: dict[str, Any] = {"archived": True, "archived_at": archived_at}
        if compact_details:
            values["details"] = None

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(AuditLogRow.sequence)
                    .where(AuditLogRow.chain_key == self._chain_key)
                    .where(AuditLogRow.sequence.in_(list(sequences)))
                    .where(AuditLogRow.archived.is_(False))
                    .where(AuditLogRow.resolved.is_(True))
                    .where(AuditLogRow.timestamp < to_utc(cutoff))
                    .with_for_update(skip_locked=True)
                )
                eligible = sorted(result.scalars().all())

                if eligible:
                    await session.execute(
                        update(AuditLogRow)
                        .where(AuditLogRow.chain_key == self._chain_key)
                        .where(AuditLogRow.sequence.in_(eligible))
                        .values(**values)
                    )

        return eligible
