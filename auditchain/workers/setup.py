"""Scheduled jobs for audit retention and chain verification."""

import asyncio
import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from auditchain.config import Settings, settings as default_settings

if TYPE_CHECKING:
    from auditchain.audit.service import AuditService

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None


async def _run_retention(service: "AuditService", retention_days: int) -> None:
    """Scheduled job: archive resolved entries past the retention period."""
    try:
        report = await service.archive_older_than(retention_days)
        if report.archived_count > 0:
            logger.info("Retention archived %s audit entries", report.archived_count)
    except Exception as e:
        logger.exception("Audit retention failed: %s", e)


async def _run_chain_verification(service: "AuditService") -> None:
    """Scheduled job: verify the full chain. Breaks are alerted by the verifier."""
    try:
        report = await service.verify_chain()
        if not report.valid:
            logger.error("Scheduled verification found a break at sequence %s", report.broken_at_sequence)
    except Exception as e:
        logger.exception("Audit chain verification failed: %s", e)


async def _run_anomaly_scan(service: "AuditService") -> None:
    """Scheduled job: batch anomaly scan over the trailing windows."""
    try:
        flags = await service.scan_anomalies()
        if flags:
            logger.info("Anomaly scan raised %s flags", len(flags))
    except Exception as e:
        logger.exception("Anomaly scan failed: %s", e)


async def init_workers(service: "AuditService", config: Settings | None = None) -> None:
    """Initialize scheduled audit jobs.

    Args:
        service: AuditService the jobs operate on
        config: Settings (default: process settings)
    """
    global _scheduler

    config = config or default_settings
    logger.info("Initializing audit workers...")

    _scheduler = AsyncIOScheduler()

    # Retention: daily at the configured hour
    _scheduler.add_job(
        lambda: asyncio.create_task(_run_retention(service, config.retention_days)),
        CronTrigger(hour=config.retention_cron_hour, minute=0),
        id="audit_retention",
        name="Archive resolved audit entries",
    )

    # Full-chain verification
    _scheduler.add_job(
        lambda: asyncio.create_task(_run_chain_verification(service)),
        IntervalTrigger(minutes=config.verify_interval_minutes),
        id="audit_chain_verification",
        name="Verify audit chain integrity",
    )

    # Batch anomaly scan: every 5 minutes
    _scheduler.add_job(
        lambda: asyncio.create_task(_run_anomaly_scan(service)),
        IntervalTrigger(minutes=5),
        id="audit_anomaly_scan",
        name="Scan audit chain for anomalies",
    )

    _scheduler.start()
    logger.info("Audit workers initialized")


async def shutdown_workers() -> None:
    """Shutdown all scheduled jobs."""
    global _scheduler

    logger.info("Shutting down audit workers...")

    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None

    logger.info("Audit workers shutdown complete")
