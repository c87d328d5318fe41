"""Audit engine error types."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from auditchain.audit.verifier import VerificationReport


class AuditError(Exception):
    """Base exception for audit engine errors."""
    pass


class AppendConflict(AuditError):
    """The chain tail moved between read and write. Retryable."""

    def __init__(self, message: str, expected_sequence: int | None = None):
        super().__init__(message)
        self.expected_sequence = expected_sequence


class AppendPersistFailure(AuditError):
    """An event could not be recorded. The event is NOT in the chain."""

    def __init__(
        self,
        message: str,
        attempts: int = 1,
        last_exception: Exception | None = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


class ChainBrokenError(AuditError):
    """Tampering was detected. Requires operator attention."""

    def __init__(self, report: "VerificationReport"):
        super().__init__(
            f"Audit chain broken at sequence {report.broken_at_sequence} "
            f"({report.reason})"
        )
        self.report = report


class InsufficientContextError(AuditError):
    """Range verification could not resolve a seed hash."""

    def __init__(self, seed_sequence: int):
        super().__init__(
            f"Cannot verify from sequence {seed_sequence + 1}: "
            f"no retained hash for sequence {seed_sequence}"
        )
        self.seed_sequence = seed_sequence


class ArchiveIneligibleError(AuditError):
    """One or more requested entries may not be archived."""

    def __init__(self, excluded: list[Any]):
        sequences = ", ".join(str(item.sequence) for item in excluded)
        super().__init__(f"Entries not eligible for archiving: {sequences}")
        self.excluded = excluded


class EntryNotFoundError(AuditError):
    """No entry exists with the requested sequence."""

    def __init__(self, sequence: int):
        super().__init__(f"Audit entry {sequence} not found")
        self.sequence = sequence


class ScanCancelledError(AuditError):
    """A long-running scan was cancelled cooperatively."""

    def __init__(self, last_sequence: int | None):
        super().__init__(f"Scan cancelled after sequence {last_sequence}")
        self.last_sequence = last_sequence
