"""Tamper-evident security audit engine.

This package records security events as a hash-linked chain with:
- Strictly monotonic, gap-free sequence numbers as the only ordering authority
- Compare-and-swap appends with bounded retry
- Range verification that stops at the first broken link
- Windowed anomaly rules (brute force, distinct IPs, severity bursts)
- Retention that archives resolved entries without breaking the chain

Usage:
    from auditchain.audit import (
        init_audit_service,
        get_audit_service,
        SecurityEventType,
        Severity,
        Actor,
    )

    service = init_audit_service()
    service.start_workers()

    result = await service.submit_event(
        SecurityEventType.AUTH_FAILURE,
        ip="203.0.113.7",
        user_agent="Mozilla/5.0",
        path="/api/auth/login",
        method="POST",
        actor=Actor(email="alice@example.com"),
    )
    report = await service.verify_chain()
"""

from auditchain.audit.alerts import AlertSink, LoggingAlertSink, SecurityAlert, SecurityAlertType
from auditchain.audit.anomaly import AnomalyDetector, AnomalyFlag, AnomalyRules, ThreatAssessment
from auditchain.audit.builder import AppendResult, ChainBuilder
from auditchain.audit.config import (
    ALERT_EVENT_TYPES,
    DEFAULT_SEVERITY,
    GENESIS_HASH,
    HASHED_FIELDS,
    get_default_severity,
    is_fail_closed,
)
from auditchain.audit.exceptions import (
    AppendConflict,
    AppendPersistFailure,
    ArchiveIneligibleError,
    AuditError,
    ChainBrokenError,
    EntryNotFoundError,
    InsufficientContextError,
    ScanCancelledError,
)
from auditchain.audit.integrity import compute_entry_hash, compute_hash, verify_entry_hash
from auditchain.audit.models import (
    Actor,
    AuditEvent,
    AuditLogEntry,
    HttpMethod,
    Resolution,
    SecurityEventType,
    Severity,
    Target,
)
from auditchain.audit.query import AuditQueryService, Page
from auditchain.audit.repository import SqlChainStore
from auditchain.audit.retention import ArchiveReport, Archiver, ExcludedEntry, ExclusionReason
from auditchain.audit.service import AuditService
from auditchain.audit.setup import build_audit_service, get_audit_service, init_audit_service
from auditchain.audit.store import AuditQueryFilters, ChainStore, ChainTail, InMemoryChainStore
from auditchain.audit.verifier import ChainVerifier, VerificationReport

__all__ = [
    # Models
    "Actor",
    "AuditEvent",
    "AuditLogEntry",
    "HttpMethod",
    "Resolution",
    "SecurityEventType",
    "Severity",
    "Target",
    # Config
    "ALERT_EVENT_TYPES",
    "DEFAULT_SEVERITY",
    "GENESIS_HASH",
    "HASHED_FIELDS",
    "get_default_severity",
    "is_fail_closed",
    # Exceptions
    "AppendConflict",
    "AppendPersistFailure",
    "ArchiveIneligibleError",
    "AuditError",
    "ChainBrokenError",
    "EntryNotFoundError",
    "InsufficientContextError",
    "ScanCancelledError",
    # Hashing
    "compute_entry_hash",
    "compute_hash",
    "verify_entry_hash",
    # Storage
    "AuditQueryFilters",
    "ChainStore",
    "ChainTail",
    "InMemoryChainStore",
    "SqlChainStore",
    # Components
    "AppendResult",
    "ChainBuilder",
    "ChainVerifier",
    "VerificationReport",
    "AnomalyDetector",
    "AnomalyFlag",
    "AnomalyRules",
    "ThreatAssessment",
    "Archiver",
    "ArchiveReport",
    "ExcludedEntry",
    "ExclusionReason",
    "AuditQueryService",
    "Page",
    # Alerts
    "AlertSink",
    "LoggingAlertSink",
    "SecurityAlert",
    "SecurityAlertType",
    # Service
    "AuditService",
    "build_audit_service",
    "get_audit_service",
    "init_audit_service",
]
