"""Audit chain configuration and policy rules.

This module defines the static configuration of the audit engine:
- Genesis hash and the ordered list of fields feeding the entry hash
- Default severity per event type
- Event types that raise an immediate security alert
- Severity-driven failure policy (fail-closed vs fail-open)
- Severity-driven anomaly scan routing (synchronous vs queued)
- Redaction rules and size limits for event payloads
- Threat scoring weights

Fail-closed: the originating action is blocked when the audit write fails.
Fail-open: the failure is logged locally and the action proceeds.
"""

from auditchain.audit.models import SecurityEventType, Severity

# =============================================================================
# CHAIN CONFIGURATION
# =============================================================================

GENESIS_HASH: str = "0" * 64
"""prev_hash of the first entry in every chain."""

HASHED_FIELDS: list[str] = [
    "sequence",
    "event_type",
    "severity",
    "actor_user_id",
    "actor_email",
    "actor_role",
    "ip",
    "user_agent",
    "path",
    "method",
    "target_type",
    "target_id",
    "details_digest",
    "timestamp",
    "success",
    "error_message",
]
"""Field names included in the entry hash.

The resolution sub-record and the archive flags are deliberately absent.
``details`` enters through its digest so that compaction on archive keeps
the entry verifiable.
"""


# =============================================================================
# SEVERITY CONFIGURATION
# =============================================================================

DEFAULT_SEVERITY: dict[SecurityEventType, Severity] = {
    SecurityEventType.AUTH_FAILURE: Severity.LOW,
    SecurityEventType.PERMISSION_DENIED: Severity.MEDIUM,
    SecurityEventType.XSS_ATTEMPT: Severity.HIGH,
    SecurityEventType.CSRF_VIOLATION: Severity.HIGH,
    SecurityEventType.RATE_LIMIT: Severity.MEDIUM,
    SecurityEventType.SUSPICIOUS_ACTIVITY: Severity.HIGH,
    SecurityEventType.SQL_INJECTION: Severity.CRITICAL,
    SecurityEventType.FILE_ACCESS_VIOLATION: Severity.HIGH,
    SecurityEventType.BRUTE_FORCE: Severity.HIGH,
    SecurityEventType.ACCOUNT_LOCKOUT: Severity.MEDIUM,
    SecurityEventType.UNUSUAL_ACCESS_PATTERN: Severity.MEDIUM,
    SecurityEventType.CSP_VIOLATION: Severity.LOW,
    SecurityEventType.ADMIN_ACTION: Severity.MEDIUM,
}
"""Severity used when a collaborator does not supply one."""

ALERT_EVENT_TYPES: frozenset[SecurityEventType] = frozenset(
    {
        SecurityEventType.XSS_ATTEMPT,
        SecurityEventType.CSRF_VIOLATION,
        SecurityEventType.SQL_INJECTION,
        SecurityEventType.SUSPICIOUS_ACTIVITY,
        SecurityEventType.BRUTE_FORCE,
    }
)
"""Event types that raise a security alert as soon as they are committed."""

FAIL_CLOSED_SEVERITIES: frozenset[Severity] = frozenset({Severity.HIGH, Severity.CRITICAL})
"""Severities whose append failures must block the originating action."""

SYNC_SCAN_SEVERITIES: frozenset[Severity] = frozenset({Severity.CRITICAL})
"""Severities evaluated by the anomaly detector before submit returns.

Other severities are queued and scanned by background workers.
"""


# =============================================================================
# PAYLOAD LIMITS AND REDACTION
# =============================================================================

USER_AGENT_MAX_LENGTH: int = 500
PATH_MAX_LENGTH: int = 200
NOTES_MAX_LENGTH: int = 1000

MAX_DETAILS_SIZE_BYTES: int = 32768
"""Maximum canonical size of ``details`` (32 KB) before reference mode."""

REDACTION_RULES: list[str] = [
    "password",
    "passwd",
    "token",
    "access_token",
    "refresh_token",
    "secret",
    "api_key",
    "authorization",
    "cookie",
    "session_token",
]
"""Keys in ``details`` whose values are masked before hashing."""


# =============================================================================
# THREAT SCORING
# =============================================================================

SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 3,
    Severity.HIGH: 7,
    Severity.CRITICAL: 15,
}

THREAT_LEVEL_THRESHOLDS: list[tuple[int, Severity]] = [
    (50, Severity.CRITICAL),
    (20, Severity.HIGH),
    (5, Severity.MEDIUM),
]
"""Minimum score for each threat level, highest first. Below all: LOW."""


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def get_default_severity(event_type: SecurityEventType) -> Severity:
    """Get the default severity for an event type.

    Args:
        event_type: The security event type.

    Returns:
        The configured severity, or MEDIUM for unmapped types.
    """
    return DEFAULT_SEVERITY.get(event_type, Severity.MEDIUM)


def is_fail_closed(severity: Severity) -> bool:
    """Check whether an append failure at this severity must propagate."""
    return severity in FAIL_CLOSED_SEVERITIES


def is_sync_scan_required(severity: Severity) -> bool:
    """Check whether the anomaly scan must run before submit returns."""
    return severity in SYNC_SCAN_SEVERITIES


def requires_alert(event_type: SecurityEventType) -> bool:
    """Check whether committing this event type raises an immediate alert."""
    return event_type in ALERT_EVENT_TYPES


def threat_level_for_score(score: int) -> Severity:
    """Map a threat score to a level.

    Args:
        score: Sum of severity weights.

    Returns:
        The threat level for the score.
    """
    for minimum, level in THREAT_LEVEL_THRESHOLDS:
        if score >= minimum:
            return level
    return Severity.LOW
