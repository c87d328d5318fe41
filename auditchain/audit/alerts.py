"""Security alert emission for the audit engine.

The engine never delivers notifications itself. It builds SecurityAlert
records and hands them to an AlertSink supplied by the host application.
The default LoggingAlertSink writes them to the log.

Alerts are raised for:
- Committed entries whose event type is alert-worthy
- Anomaly flags from the detector
- Chain breaks found by the verifier

Usage:
    sink = LoggingAlertSink()
    await sink.emit(SecurityAlert.from_entry(entry))
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from auditchain.audit.models import AuditLogEntry, Severity

if TYPE_CHECKING:
    from auditchain.audit.anomaly import AnomalyFlag
    from auditchain.audit.verifier import VerificationReport

logger = logging.getLogger(__name__)


class SecurityAlertType(str, Enum):
    """Kind of condition an alert reports."""

    SECURITY_EVENT = "SECURITY_EVENT"
    ANOMALY_DETECTED = "ANOMALY_DETECTED"
    CHAIN_BROKEN = "CHAIN_BROKEN"


@dataclass(frozen=True)
class SecurityAlert:
    """A notification for the alerting collaborator.

    Attributes:
        type: Kind of alert
        severity: Alert severity
        summary: One-line human readable description
        sequence: Related entry sequence, if any
        details: Structured context
        created_at: When the alert was built
    """

    type: SecurityAlertType
    severity: Severity
    summary: str
    sequence: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def fingerprint(self) -> str:
        """Stable key for deduplicating repeats of the same condition."""
        return f"{self.type.value}:{self.summary}"

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "SecurityAlert":
        return cls(
            type=SecurityAlertType.SECURITY_EVENT,
            severity=entry.severity,
            summary=f"{entry.event_type.value} from {entry.ip} on {entry.method.value} {entry.path}",
            sequence=entry.sequence,
            details={
                "event_type": entry.event_type.value,
                "ip": entry.ip,
                "actor_user_id": entry.actor.user_id,
                "path": entry.path,
            },
        )

    @classmethod
    def from_flag(cls, flag: "AnomalyFlag") -> "SecurityAlert":
        return cls(
            type=SecurityAlertType.ANOMALY_DETECTED,
            severity=Severity.HIGH,
            summary=f"{flag.type.value} for {flag.subject_kind} {flag.subject}",
            sequence=flag.trigger_sequence,
            details=flag.to_dict(),
        )

    @classmethod
    def from_report(cls, report: "VerificationReport") -> "SecurityAlert":
        return cls(
            type=SecurityAlertType.CHAIN_BROKEN,
            severity=Severity.CRITICAL,
            summary=f"Audit chain broken at sequence {report.broken_at_sequence}",
            sequence=report.broken_at_sequence,
            details=report.to_dict(),
        )


class AlertSink(Protocol):
    """Receiver for security alerts."""

    async def emit(self, alert: SecurityAlert) -> bool:
        """Deliver an alert. Must not raise; returns False on failure."""
        ...

    async def chain_broken(self, report: "VerificationReport") -> bool: ...


class LoggingAlertSink:
    """Alert sink that writes alerts to the log.

    Also keeps the most recent alerts in memory for inspection by
    callers and tests.
    """

    def __init__(self, history_size: int = 100) -> None:
        self._history_size = history_size
        self.history: list[SecurityAlert] = []

    async def emit(self, alert: SecurityAlert) -> bool:
        try:
            level = logging.ERROR if alert.severity in (Severity.HIGH, Severity.CRITICAL) else logging.WARNING
            logger.log(
                level,
                "SECURITY ALERT [%s/%s] %s (sequence=%s)",
                alert.type.value,
                alert.severity.value,
                alert.summary,
                alert.sequence,
            )
            self.history.append(alert)
            if len(self.history) > self._history_size:
                del self.history[: len(self.history) - self._history_size]
            return True
        except Exception as e:
            logger.error("Error emitting security alert (type=%s): %s", alert.type.value, e)
            return False

    async def chain_broken(self, report: "VerificationReport") -> bool:
        return await self.emit(SecurityAlert.from_report(report))
