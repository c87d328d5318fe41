"""Chain verification.

Streams entries in ascending sequence order and, for each one:
1. Checks that its sequence follows the previous one (no gaps)
2. Recomputes its hash from its own fields and the previous stored hash
3. Checks that its prev_hash points at the previous stored hash

The first failing check is the break point and scanning stops there.
A later entry that happens to match is not evidence of anything.

Partial ranges are seeded from the retained hash of entry ``from - 1``.
Archived entries keep their hash, so they remain valid seeds.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any

from auditchain.audit.config import GENESIS_HASH
from auditchain.audit.exceptions import ChainBrokenError, InsufficientContextError, ScanCancelledError
from auditchain.audit.integrity import compute_entry_hash
from auditchain.audit.store import ChainStore

logger = logging.getLogger(__name__)

REASON_HASH_MISMATCH = "hash_mismatch"
REASON_LINK_MISMATCH = "link_mismatch"
REASON_SEQUENCE_GAP = "sequence_gap"


@dataclass
class VerificationReport:
    """Result of verifying a sequence range.

    Attributes:
        valid: True if no break was found in the range
        from_sequence: First sequence checked
        to_sequence: Last sequence in the requested range
        entries_checked: Number of entries examined
        broken_at_sequence: Sequence of the first inconsistent entry
        expected_hash: The recomputed (or expected link) value at the break
        actual_hash: The stored value at the break
        reason: Which check failed (hash_mismatch, link_mismatch, sequence_gap)
    """

    valid: bool
    from_sequence: int
    to_sequence: int
    entries_checked: int = 0
    broken_at_sequence: int | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ChainVerifier:
    """Recomputes and compares hashes over a sequence range.

    Args:
        store: The chain store.
        hash_key: HMAC secret the chain was written with, if any.
        batch_size: Entries fetched per storage round trip.
        alert_sink: Optional sink notified of every detected break.
    """

    def __init__(
        self,
        store: ChainStore,
        hash_key: bytes | None = None,
        batch_size: int = 500,
        alert_sink: Any | None = None,
    ) -> None:
        self._store = store
        self._hash_key = hash_key
        self._batch_size = batch_size
        self._alert_sink = alert_sink

    async def _seed_hash(self, from_sequence: int) -> str:
        if from_sequence == 1:
            return GENESIS_HASH
        seed = await self._store.get_entry(from_sequence - 1)
        if seed is None or not seed.hash:
            raise InsufficientContextError(from_sequence - 1)
        return seed.hash

    async def verify_chain(
        self,
        from_sequence: int | None = None,
        to_sequence: int | None = None,
        cancel_event: asyncio.Event | None = None,
        raise_on_break: bool = False,
    ) -> VerificationReport:
        """Verify the chain over [from_sequence, to_sequence].

        Args:
            from_sequence: First sequence to check (default 1).
            to_sequence: Last sequence to check (default: the tail at call start).
            cancel_event: When set, the scan stops between entries.
            raise_on_break: Raise ChainBrokenError instead of returning an
                invalid report.

        Returns:
            VerificationReport for the range.

        Raises:
            ValueError: If the range is malformed.
            InsufficientContextError: If no seed hash exists for from_sequence - 1.
            ScanCancelledError: If cancel_event was set during the scan.
            ChainBrokenError: If raise_on_break and a break was found.
        """
        start = from_sequence if from_sequence is not None else 1
        if start < 1:
            raise ValueError("from_sequence must be at least 1")

        # Snapshot bound so appends racing with the scan are never half-read
        tail = await self._store.read_tail()
        end = to_sequence if to_sequence is not None else tail.sequence
        end = min(end, tail.sequence)

        report = VerificationReport(valid=True, from_sequence=start, to_sequence=end)
        if end < start:
            return report

        prev_hash = await self._seed_hash(start)
        expected_sequence = start
        last_sequence: int | None = None

        async for entry in self._store.iter_entries(start, end, self._batch_size):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Chain verification cancelled after sequence %s", last_sequence)
                raise ScanCancelledError(last_sequence)

            report.entries_checked += 1

            if entry.sequence != expected_sequence:
                self._mark_broken(
                    report,
                    expected_sequence,
                    REASON_SEQUENCE_GAP,
                    expected=str(expected_sequence),
                    actual=str(entry.sequence),
                )
                break

            recomputed = compute_entry_hash(entry, prev_hash, self._hash_key)
            if recomputed != entry.hash:
                self._mark_broken(
                    report, entry.sequence, REASON_HASH_MISMATCH, expected=recomputed, actual=entry.hash
                )
                break

            if entry.prev_hash != prev_hash:
                self._mark_broken(
                    report, entry.sequence, REASON_LINK_MISMATCH, expected=prev_hash, actual=entry.prev_hash
                )
                break

            prev_hash = entry.hash
            last_sequence = entry.sequence
            expected_sequence += 1

            # Yield to other tasks once per batch
            if report.entries_checked % self._batch_size == 0:
                await asyncio.sleep(0)

        else:
            if report.valid and expected_sequence <= end:
                # Range ended early: entries missing at the tail of the range
                self._mark_broken(
                    report,
                    expected_sequence,
                    REASON_SEQUENCE_GAP,
                    expected=str(expected_sequence),
                    actual=None,
                )

        if report.valid:
            logger.info(
                "Audit chain verified: sequences %s-%s (%s entries)",
                report.from_sequence,
                report.to_sequence,
                report.entries_checked,
            )
            return report

        logger.error(
            "Audit chain broken at sequence %s (%s): expected %s, actual %s",
            report.broken_at_sequence,
            report.reason,
            report.expected_hash,
            report.actual_hash,
        )
        if self._alert_sink is not None:
            await self._alert_sink.chain_broken(report)
        if raise_on_break:
            raise ChainBrokenError(report)
        return report

    @staticmethod
    def _mark_broken(
        report: VerificationReport,
        sequence: int,
        reason: str,
        expected: str | None,
        actual: str | None,
    ) -> None:
        report.valid = False
        report.broken_at_sequence = sequence
        report.reason = reason
        report.expected_hash = expected
        report.actual_hash = actual
