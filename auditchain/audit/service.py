"""Audit service: the ingestion and admin entry point.

This module provides the AuditService class, which collaborators (auth,
RBAC middleware, admin handlers) call to record security events, and
which the admin API calls for queries, verification, archiving and
resolution.

Submission path:
1. Normalize the event (default severity, truncation, redaction, size limit)
2. Append it through the ChainBuilder
3. On failure apply the severity policy:
   - Fail-closed (HIGH/CRITICAL): the failure propagates to the caller
   - Fail-open (LOW/MEDIUM): the failure is logged and None is returned
4. On success raise an alert for alert-worthy event types
5. Route the entry to the anomaly detector:
   - CRITICAL: evaluated before submit_event returns
   - Others: queued for background workers

submit_from_request takes the request context from a FastAPI Request, and
the record_* helpers wrap common event types.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request

from auditchain.audit.alerts import AlertSink, SecurityAlert
from auditchain.audit.anomaly import AnomalyDetector, AnomalyFlag, ThreatAssessment
from auditchain.audit.builder import AppendResult, ChainBuilder
from auditchain.audit.config import (
    NOTES_MAX_LENGTH,
    PATH_MAX_LENGTH,
    USER_AGENT_MAX_LENGTH,
    get_default_severity,
    is_fail_closed,
    is_sync_scan_required,
    requires_alert,
)
from auditchain.audit.exceptions import AppendPersistFailure, EntryNotFoundError
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
from auditchain.audit.query import AuditQueryService, Page, SecurityStatistics, SummaryRow
from auditchain.audit.retention import ArchiveReport, Archiver
from auditchain.audit.sanitize import compute_change_patch, sanitize_details, truncate
from auditchain.audit.store import AuditQueryFilters, ChainStore
from auditchain.audit.verifier import ChainVerifier, VerificationReport

logger = logging.getLogger(__name__)

DATA_OPERATION_METHODS = {"CREATE": HttpMethod.POST, "DELETE": HttpMethod.DELETE}


def client_ip(request: Request) -> str:
    """Extract the client IP, preferring proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


class AuditService:
    """Service for recording and administering security audit events.

    Args:
        builder: ChainBuilder used for every append
        detector: AnomalyDetector evaluating committed entries
        verifier: ChainVerifier for integrity checks
        archiver: Archiver for retention
        query: AuditQueryService for reads
        alert_sink: Receiver of security alerts
        scan_queue: Optional queue for deferred anomaly evaluation
            (default: internal queue with maxsize=10000)

    Example:
        >>> service = AuditService(builder, detector, verifier, archiver, query, sink)
        >>> service.start_workers()
        >>> result = await service.submit_event(
        ...     SecurityEventType.AUTH_FAILURE,
        ...     ip="203.0.113.7",
        ...     user_agent="curl/8.0",
        ...     path="/api/auth/login",
        ...     method=HttpMethod.POST,
        ...     details={"reason": "bad password"},
        ... )
        >>> await service.stop()
    """

    def __init__(
        self,
        builder: ChainBuilder,
        detector: AnomalyDetector,
        verifier: ChainVerifier,
        archiver: Archiver,
        query: AuditQueryService,
        alert_sink: AlertSink,
        scan_queue: asyncio.Queue | None = None,
    ) -> None:
        self._builder = builder
        self._detector = detector
        self._verifier = verifier
        self._archiver = archiver
        self._query = query
        self._alert_sink = alert_sink
        self._queue = scan_queue if scan_queue is not None else asyncio.Queue(maxsize=10000)
        self._workers: list[asyncio.Task] = []
        self._overflow_tasks: set[asyncio.Task] = set()
        self._running = False

    @property
    def store(self) -> ChainStore:
        return self._builder.store

    @property
    def detector(self) -> AnomalyDetector:
        return self._detector

    @property
    def alert_sink(self) -> AlertSink:
        return self._alert_sink

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def submit_event(
        self,
        event_type: SecurityEventType,
        severity: Severity | None = None,
        *,
        ip: str,
        user_agent: str,
        path: str,
        method: HttpMethod | str,
        actor: Actor | None = None,
        target: Target | None = None,
        details: dict[str, Any] | None = None,
        success: bool = False,
        error_message: str | None = None,
        timestamp: datetime | None = None,
        fail_closed: bool | None = None,
    ) -> AppendResult | None:
        """Record a security event in the chain.

        Args:
            event_type: Category of the event
            severity: Severity (default: derived from event_type)
            ip: Client IP address
            user_agent: Client user agent (truncated to 500 chars)
            path: Request path (truncated to 200 chars)
            method: Request HTTP method
            actor: Acting identity, if known
            target: Affected resource, if any
            details: Structured payload (redacted and size-limited)
            success: Whether the audited action succeeded
            error_message: Failure description, if any
            timestamp: Event time (default: now)
            fail_closed: Override the severity-driven failure policy

        Returns:
            AppendResult with sequence and hash, or None if the append
            failed under the fail-open policy.

        Raises:
            AppendPersistFailure: If the append failed under the
                fail-closed policy. The originating action must not proceed.
        """
        severity = severity or get_default_severity(event_type)
        closed = is_fail_closed(severity) if fail_closed is None else fail_closed

        try:
            event = AuditEvent(
                event_type=event_type,
                severity=severity,
                ip=ip,
                user_agent=truncate(user_agent, USER_AGENT_MAX_LENGTH) or "",
                path=truncate(path, PATH_MAX_LENGTH) or "",
                method=HttpMethod(method.upper()) if isinstance(method, str) else method,
                timestamp=timestamp or datetime.now(tz=timezone.utc),
                details=sanitize_details(details),
                success=success,
                error_message=error_message,
                actor=actor or Actor(),
                target=target or Target(),
            )
            result = await self._builder.append(event)
        except (AppendPersistFailure, ValueError) as e:
            failure = e
            if isinstance(e, ValueError):
                failure = AppendPersistFailure(
                    f"Invalid audit event: {e}", attempts=0, last_exception=e
                )
            if closed:
                logger.error(
                    "Audit append failed (fail-closed, type=%s, severity=%s): %s",
                    event_type.value,
                    severity.value,
                    failure,
                )
                if failure is e:
                    raise
                raise failure from e
            logger.warning(
                "Audit append failed (fail-open, type=%s, severity=%s): %s",
                event_type.value,
                severity.value,
                failure,
            )
            return None

        if requires_alert(result.entry.event_type):
            await self._alert_sink.emit(SecurityAlert.from_entry(result.entry))

        if is_sync_scan_required(result.entry.severity):
            await self._evaluate(result.entry)
        else:
            self._enqueue_scan(result.entry)

        return result

    async def record_admin_action(
        self,
        action: str,
        *,
        actor: Actor,
        ip: str,
        user_agent: str,
        path: str,
        method: HttpMethod | str,
        target: Target | None = None,
        before: dict | None = None,
        after: dict | None = None,
        severity: Severity | None = None,
        success: bool = True,
    ) -> AppendResult | None:
        """Record an ADMIN_ACTION event with a JSON Patch of the change.

        Args:
            action: Short name of the action (e.g. "role_granted")
            actor: The administrator
            before: State before the change
            after: State after the change

        Returns:
            Same as submit_event.
        """
        details: dict[str, Any] = {"action": action}
        changes = compute_change_patch(before, after)
        if changes is not None:
            details["changes"] = changes
        return await self.submit_event(
            SecurityEventType.ADMIN_ACTION,
            severity,
            ip=ip,
            user_agent=user_agent,
            path=path,
            method=method,
            actor=actor,
            target=target,
            details=details,
            success=success,
        )

    async def submit_from_request(
        self,
        request: Request,
        event_type: SecurityEventType,
        severity: Severity | None = None,
        *,
        actor: Actor | None = None,
        target: Target | None = None,
        details: dict[str, Any] | None = None,
        success: bool = False,
        error_message: str | None = None,
        fail_closed: bool | None = None,
    ) -> AppendResult | None:
        """Record a security event, taking the request context from ``request``.

        IP comes from X-Forwarded-For, then X-Real-IP, then the socket
        peer. A missing User-Agent is recorded as "Unknown". An HTTP method
        outside HttpMethod is an invalid event and follows the failure
        policy.
        """
        return await self.submit_event(
            event_type,
            severity,
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent") or "Unknown",
            path=request.url.path,
            method=request.method,
            actor=actor,
            target=target,
            details=details,
            success=success,
            error_message=error_message,
            fail_closed=fail_closed,
        )

    async def record_xss_attempt(
        self, request: Request, malicious_content: str, actor: Actor | None = None
    ) -> AppendResult | None:
        return await self.submit_from_request(
            request,
            SecurityEventType.XSS_ATTEMPT,
            actor=actor,
            details={
                "malicious_content": malicious_content[:500],
                "detected": True,
                "blocked": True,
            },
        )

    async def record_csrf_violation(
        self, request: Request, reason: str, actor: Actor | None = None
    ) -> AppendResult | None:
        return await self.submit_from_request(
            request,
            SecurityEventType.CSRF_VIOLATION,
            actor=actor,
            details={
                "reason": reason,
                "origin": request.headers.get("origin"),
                "referer": request.headers.get("referer"),
                "blocked": True,
            },
        )

    async def record_rate_limit_exceeded(
        self, request: Request, limit: str, actor: Actor | None = None
    ) -> AppendResult | None:
        return await self.submit_from_request(
            request,
            SecurityEventType.RATE_LIMIT,
            actor=actor,
            details={"limit": limit, "blocked": True},
        )

    async def record_login_failure(
        self,
        email: str,
        *,
        ip: str,
        user_agent: str,
        reason: str,
        path: str = "/api/auth/callback/credentials",
    ) -> AppendResult | None:
        """Record a failed credential login as a MEDIUM AUTH_FAILURE."""
        return await self.submit_event(
            SecurityEventType.AUTH_FAILURE,
            Severity.MEDIUM,
            ip=ip,
            user_agent=user_agent,
            path=path,
            method=HttpMethod.POST,
            actor=Actor(email=email),
            details={"reason": reason},
            success=False,
            error_message=reason,
        )

    async def record_data_operation(
        self,
        operation: str,
        *,
        actor: Actor,
        target: Target,
        ip: str,
        user_agent: str,
        success: bool,
        details: dict[str, Any] | None = None,
    ) -> AppendResult | None:
        """Record a data operation checked by access control.

        Recorded as PERMISSION_DENIED: LOW when the operation succeeded,
        MEDIUM when it was refused. CREATE maps to POST, DELETE to DELETE
        and anything else to PUT.

        Args:
            operation: Operation name (CREATE, UPDATE, DELETE, ...)
            actor: Acting user
            target: Resource operated on
            success: Whether the operation was allowed
            details: Extra payload merged after the operation name
        """
        return await self.submit_event(
            SecurityEventType.PERMISSION_DENIED,
            Severity.LOW if success else Severity.MEDIUM,
            ip=ip,
            user_agent=user_agent,
            path=f"/api/{target.target_type}/{target.target_id}",
            method=DATA_OPERATION_METHODS.get(operation.upper(), HttpMethod.PUT),
            actor=actor,
            target=target,
            details={"operation": operation, **(details or {})},
            success=success,
        )

    # ------------------------------------------------------------------
    # Anomaly routing
    # ------------------------------------------------------------------

    async def _evaluate(self, entry: AuditLogEntry) -> list[AnomalyFlag]:
        try:
            return await self._detector.evaluate(entry)
        except Exception as e:
            # Entry is already committed; scan failures are logged only
            logger.error("Anomaly evaluation failed for sequence %s: %s", entry.sequence, e)
            return []

    def _enqueue_scan(self, entry: AuditLogEntry) -> None:
        """Queue an entry for background evaluation.

        If the queue is full the entry is evaluated on a detached task.
        """
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            logger.warning("Anomaly scan queue full, evaluating sequence %s inline", entry.sequence)
            task = asyncio.create_task(self._evaluate(entry))
            self._overflow_tasks.add(task)
            task.add_done_callback(self._overflow_tasks.discard)

    def start_workers(self, num_workers: int = 2) -> None:
        """Start worker tasks that evaluate queued entries.

        Args:
            num_workers: Number of worker tasks to start (default: 2)
        """
        self._running = True
        for _ in range(num_workers):
            self._workers.append(asyncio.create_task(self._worker_loop()))
        logger.info("Started %s anomaly scan workers", num_workers)

    async def _worker_loop(self) -> None:
        while self._running:
            try:
                try:
                    entry = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                except TimeoutError:
                    continue

                try:
                    await self._evaluate(entry)
                finally:
                    self._queue.task_done()

            except asyncio.CancelledError:
                break

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait until every queued entry has been evaluated."""
        if self._queue.empty():
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except TimeoutError:
            logger.warning("Anomaly scan queue did not drain within %.1fs", timeout)

    async def stop(self) -> None:
        """Gracefully shutdown: drain the scan queue, then stop workers."""
        if self._workers:
            await self.drain()
        if self._overflow_tasks:
            await asyncio.gather(*self._overflow_tasks, return_exceptions=True)
        self._running = False

        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)

        self._workers.clear()
        logger.info("Anomaly scan workers stopped")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_entries(
        self,
        filters: AuditQueryFilters | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Page:
        return await self._query.list_entries(filters, page=page, page_size=page_size)

    async def get_entry(self, sequence: int) -> AuditLogEntry:
        """Get one entry.

        Raises:
            EntryNotFoundError: If no entry has this sequence.
        """
        entry = await self.store.get_entry(sequence)
        if entry is None:
            raise EntryNotFoundError(sequence)
        return entry

    async def summary(self, days: int = 7) -> list[SummaryRow]:
        return await self._query.summary(days)

    async def statistics(self, days: int = 7) -> SecurityStatistics:
        return await self._query.statistics(days)

    async def assess_threat_level(self, ip: str, hours: int = 24) -> ThreatAssessment:
        return await self._detector.assess_threat_level(ip, hours)

    async def scan_anomalies(self, cancel_event: asyncio.Event | None = None) -> list[AnomalyFlag]:
        return await self._detector.scan(cancel_event=cancel_event)

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def verify_chain(
        self,
        from_sequence: int | None = None,
        to_sequence: int | None = None,
        cancel_event: asyncio.Event | None = None,
        raise_on_break: bool = False,
    ) -> VerificationReport:
        return await self._verifier.verify_chain(
            from_sequence,
            to_sequence,
            cancel_event=cancel_event,
            raise_on_break=raise_on_break,
        )

    async def archive_older_than(
        self,
        days: int,
        sequences: list[int] | None = None,
        strict: bool = False,
    ) -> ArchiveReport:
        return await self._archiver.archive(days, sequences=sequences, strict=strict)

    async def resolve_entry(
        self,
        sequence: int,
        resolved_by: str,
        notes: str | None = None,
    ) -> AuditLogEntry:
        """Mark an entry as resolved. Never touches hashed fields.

        Resolving again with the same resolver and notes is a no-op and
        keeps the original resolved_at. Any other value overwrites the
        resolution and stamps a new resolved_at.

        Args:
            sequence: Entry to resolve
            resolved_by: Operator identity
            notes: Free-text notes (truncated to 1000 chars)

        Returns:
            The entry with its current resolution.

        Raises:
            EntryNotFoundError: If no entry has this sequence.
        """
        entry = await self.get_entry(sequence)
        notes = truncate(notes, NOTES_MAX_LENGTH)

        current = entry.resolution
        if current.resolved and current.resolved_by == resolved_by and current.notes == notes:
            logger.debug("Audit entry %s already resolved by %s", sequence, resolved_by)
            return entry

        resolution = Resolution(
            resolved=True,
            resolved_at=datetime.now(tz=timezone.utc),
            resolved_by=resolved_by,
            notes=notes,
        )
        updated = await self.store.update_resolution(sequence, resolution)
        if updated is None:
            raise EntryNotFoundError(sequence)

        logger.info("Audit entry %s resolved by %s", sequence, resolved_by)
        return updated
