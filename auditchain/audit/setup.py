"""Audit engine initialization.

This module provides functions to initialize and access the global
AuditService instance. Collaborators that emit security events use it to
reach the service without threading it through every call site.

Usage:
    from auditchain.audit.setup import init_audit_service, get_audit_service

    # During startup:
    service = init_audit_service()
    service.start_workers()

    # Later, anywhere in the app:
    service = get_audit_service()
    if service:
        await service.submit_event(
            SecurityEventType.PERMISSION_DENIED,
            ip=request.client.host,
            user_agent=request.headers.get("user-agent", ""),
            path=request.url.path,
            method=request.method,
            actor=Actor(user_id=user.id, role=user.role),
        )
"""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.audit.alerts import AlertSink, LoggingAlertSink
from auditchain.audit.anomaly import AnomalyDetector, AnomalyRules
from auditchain.audit.builder import ChainBuilder
from auditchain.audit.query import AuditQueryService
from auditchain.audit.repository import SqlChainStore
from auditchain.audit.retention import Archiver
from auditchain.audit.service import AuditService
from auditchain.audit.store import ChainStore
from auditchain.audit.verifier import ChainVerifier
from auditchain.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_audit_service: AuditService | None = None


def rules_from_settings(config: Settings) -> AnomalyRules:
    return AnomalyRules(
        brute_force_threshold=config.brute_force_threshold,
        brute_force_window=timedelta(minutes=config.brute_force_window_minutes),
        distinct_ip_threshold=config.distinct_ip_threshold,
        distinct_ip_window=timedelta(minutes=config.distinct_ip_window_minutes),
        severity_burst_threshold=config.severity_burst_threshold,
        severity_burst_window=timedelta(minutes=config.severity_burst_window_minutes),
    )


def build_audit_service(
    store: ChainStore,
    config: Settings | None = None,
    alert_sink: AlertSink | None = None,
) -> AuditService:
    """Wire an AuditService and its components around a chain store.

    Args:
        store: The chain store
        config: Settings (default: process settings)
        alert_sink: Alert receiver (default: LoggingAlertSink)

    Returns:
        A new AuditService. Workers are not started.
    """
    config = config or default_settings
    sink = alert_sink or LoggingAlertSink()
    hash_key = config.audit_hash_key.encode("utf-8") if config.audit_hash_key else None

    builder = ChainBuilder(
        store,
        max_attempts=config.audit_append_max_attempts,
        base_delay=config.audit_append_base_delay,
        max_delay=config.audit_append_max_delay,
        hash_key=hash_key,
        local_lock=config.audit_local_lock,
    )
    return AuditService(
        builder=builder,
        detector=AnomalyDetector(store, rules_from_settings(config), alert_sink=sink),
        verifier=ChainVerifier(store, hash_key=hash_key, alert_sink=sink),
        archiver=Archiver(store, compact_details=config.retention_compact_details),
        query=AuditQueryService(store),
        alert_sink=sink,
        scan_queue=asyncio.Queue(maxsize=config.anomaly_queue_size),
    )


def init_audit_service(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    store: ChainStore | None = None,
    config: Settings | None = None,
    alert_sink: AlertSink | None = None,
) -> AuditService:
    """Initialize the global audit service.

    Uses ``store`` when given, otherwise a SqlChainStore over
    ``session_factory`` (default: the application session factory).

    Returns:
        Configured AuditService instance
    """
    global _audit_service

    config = config or default_settings
    if store is None:
        if session_factory is None:
            from auditchain.db.database import async_session

            session_factory = async_session
        store = SqlChainStore(session_factory, chain_key=config.audit_chain_key)

    _audit_service = build_audit_service(store, config=config, alert_sink=alert_sink)
    logger.info("AuditService initialized (chain=%s)", config.audit_chain_key)

    return _audit_service


def get_audit_service() -> AuditService | None:
    """Get the global audit service instance.

    Returns:
        The initialized AuditService, or None if not yet initialized.
        Callers should check for None before using.
    """
    return _audit_service


async def shutdown_audit_service() -> None:
    """Stop workers of the global service and clear it."""
    global _audit_service

    if _audit_service is not None:
        await _audit_service.stop()
        _audit_service = None
        logger.info("AuditService shut down")
