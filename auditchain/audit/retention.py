"""Retention: archiving of old, resolved entries.

An entry is eligible only if it is resolved AND older than the cutoff.
Archiving sets ``archived`` and may compact ``details``; sequence, hash,
prev_hash and details_digest are kept forever because later entries need
them for verification.

Ineligible candidates are reported in the ArchiveReport, never dropped
silently:
- A sweep (no explicit sequences) reports old entries still unresolved
- An explicit request also reports recent, missing and already-archived
  entries, and can be made strict so any exclusion raises
  ArchiveIneligibleError before anything is written

The eligibility check is repeated by the store inside the archiving
transaction, so an entry changed after selection is reported as CHANGED
instead of being archived on stale information.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from auditchain.audit.exceptions import ArchiveIneligibleError
from auditchain.audit.models import AuditLogEntry
from auditchain.audit.store import AuditQueryFilters, ChainStore

logger = logging.getLogger(__name__)

PAGE_SIZE = 500


class ExclusionReason(str, Enum):
    """Why a candidate entry was not archived."""

    UNRESOLVED = "UNRESOLVED"
    TOO_RECENT = "TOO_RECENT"
    ALREADY_ARCHIVED = "ALREADY_ARCHIVED"
    NOT_FOUND = "NOT_FOUND"
    CHANGED = "CHANGED"


@dataclass(frozen=True)
class ExcludedEntry:
    sequence: int
    reason: ExclusionReason


@dataclass
class ArchiveReport:
    """Outcome of an archive run.

    Attributes:
        cutoff: Entries strictly older than this were considered
        archived_sequences: Sequences archived by this run
        excluded: Candidates that were not archived, with the reason
        archived_prefix_through: Highest sequence s such that every entry
            1..s is archived after this run (0 if entry 1 is not)
    """

    cutoff: datetime
    archived_sequences: list[int] = field(default_factory=list)
    excluded: list[ExcludedEntry] = field(default_factory=list)
    archived_prefix_through: int = 0

    @property
    def archived_count(self) -> int:
        return len(self.archived_sequences)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cutoff": self.cutoff.isoformat(),
            "archived_count": self.archived_count,
            "archived_sequences": self.archived_sequences,
            "excluded": [{"sequence": e.sequence, "reason": e.reason.value} for e in self.excluded],
            "archived_prefix_through": self.archived_prefix_through,
        }


def classify(entry: AuditLogEntry | None, cutoff: datetime) -> ExclusionReason | None:
    """Return why an entry may not be archived, or None if it may."""
    if entry is None:
        return ExclusionReason.NOT_FOUND
    if entry.archived:
        return ExclusionReason.ALREADY_ARCHIVED
    if not entry.resolution.resolved:
        return ExclusionReason.UNRESOLVED
    if entry.timestamp >= cutoff:
        return ExclusionReason.TOO_RECENT
    return None


class Archiver:
    """Marks eligible entries as archived.

    Every eligible entry is archived, not only a contiguous prefix. The
    report's ``archived_prefix_through`` is the checkpoint boundary: every
    entry up to it is archived, and its retained hash can seed verification
    of the rest of the chain.

    Args:
        store: The chain store.
        compact_details: Drop ``details`` of archived entries (the digest
            stays in place for verification).
    """

    def __init__(self, store: ChainStore, compact_details: bool = True) -> None:
        self._store = store
        self._compact_details = compact_details

    async def archive(
        self,
        older_than_days: int,
        sequences: list[int] | None = None,
        strict: bool = False,
        now: datetime | None = None,
    ) -> ArchiveReport:
        """Archive resolved entries older than ``older_than_days``.

        Args:
            older_than_days: Age threshold in days.
            sequences: Restrict the run to these entries. Without it every
                eligible entry is archived.
            strict: With explicit sequences, raise if any is ineligible
                instead of archiving the rest.
            now: Reference time (default: current UTC time).

        Returns:
            ArchiveReport listing archived and excluded entries.

        Raises:
            ValueError: If older_than_days is negative.
            ArchiveIneligibleError: If strict and any requested entry is ineligible.
        """
        if older_than_days < 0:
            raise ValueError("older_than_days must not be negative")

        now = now or datetime.now(tz=timezone.utc)
        cutoff = now - timedelta(days=older_than_days)
        tail = await self._store.read_tail()
        report = ArchiveReport(cutoff=cutoff)

        if sequences is not None:
            candidates = await self._classify_requested(sequences, cutoff, tail.sequence, report)
            if strict and report.excluded:
                logger.warning(
                    "Archive request rejected: %s of %s entries ineligible",
                    len(report.excluded),
                    len(set(sequences)),
                )
                raise ArchiveIneligibleError(report.excluded)
        else:
            candidates = await self._sweep(cutoff, tail.sequence, report)

        if candidates:
            archived = await self._store.archive_entries(
                candidates,
                cutoff=cutoff,
                archived_at=now,
                compact_details=self._compact_details,
            )
            report.archived_sequences = sorted(archived)
            for sequence in sorted(set(candidates) - set(archived)):
                report.excluded.append(ExcludedEntry(sequence, ExclusionReason.CHANGED))

        report.excluded.sort(key=lambda e: e.sequence)
        report.archived_prefix_through = await self._archived_prefix(tail.sequence)

        if report.excluded:
            logger.warning(
                "Archive excluded %s entries: %s",
                len(report.excluded),
                ", ".join(f"{e.sequence}={e.reason.value}" for e in report.excluded[:20]),
            )
        logger.info(
            "Archived %s audit entries older than %s (prefix through %s)",
            report.archived_count,
            cutoff.isoformat(),
            report.archived_prefix_through,
        )
        return report

    async def _classify_requested(
        self,
        sequences: list[int],
        cutoff: datetime,
        max_sequence: int,
        report: ArchiveReport,
    ) -> list[int]:
        candidates: list[int] = []
        for sequence in sorted(set(sequences)):
            entry = await self._store.get_entry(sequence) if sequence <= max_sequence else None
            reason = classify(entry, cutoff)
            if reason is None:
                candidates.append(sequence)
            else:
                report.excluded.append(ExcludedEntry(sequence, reason))
        return candidates

    async def _sweep(self, cutoff: datetime, max_sequence: int, report: ArchiveReport) -> list[int]:
        """Collect eligible entries and report old unresolved ones."""
        filters = AuditQueryFilters(archived=False, end_time=cutoff).bounded(max_sequence)
        candidates: list[int] = []
        offset = 0
        while True:
            page = await self._store.find_entries(filters, offset=offset, limit=PAGE_SIZE)
            for entry in page:
                if entry.timestamp >= cutoff:
                    continue
                if entry.resolution.resolved:
                    candidates.append(entry.sequence)
                else:
                    report.excluded.append(ExcludedEntry(entry.sequence, ExclusionReason.UNRESOLVED))
            if len(page) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        candidates.sort()
        return candidates

    async def _archived_prefix(self, max_sequence: int) -> int:
        """Highest sequence below which everything is archived."""
        filters = AuditQueryFilters(archived=False).bounded(max_sequence)
        remaining = await self._store.count_entries(filters)
        if remaining == 0:
            return max_sequence
        # find_entries is newest first, so the last match is the oldest
        oldest = await self._store.find_entries(filters, offset=remaining - 1, limit=1)
        if not oldest:
            return 0
        return oldest[0].sequence - 1
