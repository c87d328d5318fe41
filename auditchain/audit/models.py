"""Core data structures for the security audit chain.

This module defines the enums and immutable records that flow through
the audit engine:

- SecurityEventType / Severity / HttpMethod: closed enumerations
- Actor / Target: optional identity sub-records of an event
- Resolution: the mutable sub-record, excluded from the hash input
- AuditEvent: an event as submitted by a collaborator, before chaining
- AuditLogEntry: an event once it holds a sequence number and hash link
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SecurityEventType(str, Enum):
    """Security-relevant event categories recorded in the chain."""

    AUTH_FAILURE = "AUTH_FAILURE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    XSS_ATTEMPT = "XSS_ATTEMPT"
    CSRF_VIOLATION = "CSRF_VIOLATION"
    RATE_LIMIT = "RATE_LIMIT"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    SQL_INJECTION = "SQL_INJECTION"
    FILE_ACCESS_VIOLATION = "FILE_ACCESS_VIOLATION"
    BRUTE_FORCE = "BRUTE_FORCE"
    ACCOUNT_LOCKOUT = "ACCOUNT_LOCKOUT"
    UNUSUAL_ACCESS_PATTERN = "UNUSUAL_ACCESS_PATTERN"
    CSP_VIOLATION = "CSP_VIOLATION"
    ADMIN_ACTION = "ADMIN_ACTION"


class Severity(str, Enum):
    """How critical an event is."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """Numeric rank, LOW=0 through CRITICAL=3."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class HttpMethod(str, Enum):
    """HTTP method of the request that triggered an event."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to timezone-aware UTC.

    Naive values are assumed to already be UTC (SQLite drops tzinfo).
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Actor:
    """Who performed the action, when known."""

    user_id: str | None = None
    email: str | None = None
    role: str | None = None


@dataclass(frozen=True)
class Target:
    """What the action was aimed at, when applicable."""

    target_type: str | None = None
    target_id: str | None = None


@dataclass(frozen=True)
class Resolution:
    """Operator resolution of an entry.

    This is the only part of an entry that may change after it is written,
    and it never feeds the hash.
    """

    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class AuditEvent:
    """A security event as submitted for recording.

    Attributes:
        event_type: Category of the event
        severity: How critical the event is
        ip: Client IP address
        user_agent: Client user agent
        path: Request path
        method: Request HTTP method
        timestamp: Submission time (informational, never used for ordering)
        details: Structured payload
        success: Whether the audited action succeeded
        error_message: Failure description, if any
        actor: Acting identity
        target: Affected resource
    """

    event_type: SecurityEventType
    severity: Severity
    ip: str
    user_agent: str
    path: str
    method: HttpMethod
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)
    success: bool = False
    error_message: str | None = None
    actor: Actor = field(default_factory=Actor)
    target: Target = field(default_factory=Target)


@dataclass(frozen=True)
class AuditLogEntry:
    """A chained, persisted audit record.

    ``details`` is None once the entry has been archived with compaction;
    ``details_digest`` is retained so the entry hash stays recomputable.
    """

    sequence: int
    event_type: SecurityEventType
    severity: Severity
    ip: str
    user_agent: str
    path: str
    method: HttpMethod
    timestamp: datetime
    details: dict[str, Any] | None
    details_digest: str
    success: bool
    error_message: str | None
    hash: str
    prev_hash: str
    actor: Actor = field(default_factory=Actor)
    target: Target = field(default_factory=Target)
    resolution: Resolution = field(default_factory=Resolution)
    archived: bool = False
    archived_at: datetime | None = None

    @property
    def details_compacted(self) -> bool:
        return self.details is None

    def with_resolution(self, resolution: Resolution) -> "AuditLogEntry":
        return replace(self, resolution=resolution)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["severity"] = self.severity.value
        data["method"] = self.method.value
        data["timestamp"] = self.timestamp.isoformat()
        if self.archived_at is not None:
            data["archived_at"] = self.archived_at.isoformat()
        if self.resolution.resolved_at is not None:
            data["resolution"]["resolved_at"] = self.resolution.resolved_at.isoformat()
        return data
