"""Audit API endpoints for ingesting, querying, verifying and archiving."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from auditchain.audit.exceptions import (
    AppendPersistFailure,
    ArchiveIneligibleError,
    EntryNotFoundError,
    InsufficientContextError,
)
from auditchain.audit.models import (
    Actor,
    AuditLogEntry,
    HttpMethod,
    SecurityEventType,
    Severity,
    Target,
)
from auditchain.audit.service import AuditService
from auditchain.audit.setup import get_audit_service
from auditchain.audit.store import AuditQueryFilters


# Request schemas
class ActorModel(BaseModel):
    user_id: str | None = None
    email: str | None = None
    role: str | None = None


class TargetModel(BaseModel):
    target_type: str | None = None
    target_id: str | None = None


class SubmitEventRequest(BaseModel):
    """Request body for recording a security event."""

    event_type: SecurityEventType
    severity: Severity | None = None
    ip: str
    user_agent: str = ""
    path: str
    method: HttpMethod
    actor: ActorModel | None = None
    target: TargetModel | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    success: bool = False
    error_message: str | None = None


class VerifyRequest(BaseModel):
    from_sequence: int | None = Field(default=None, ge=1)
    to_sequence: int | None = Field(default=None, ge=1)


class ArchiveRequest(BaseModel):
    """Request body for an archive run."""

    older_than_days: int = Field(default=90, ge=0)
    sequences: list[int] | None = None
    strict: bool = False


class ResolveRequest(BaseModel):
    resolved_by: str = Field(min_length=1)
    notes: str | None = None


# Response schemas
class AuditEntryResponse(BaseModel):
    """Response model for a single audit entry."""

    sequence: int
    event_type: str
    severity: str
    actor_user_id: str | None
    actor_email: str | None
    actor_role: str | None
    ip: str
    user_agent: str
    path: str
    method: str
    target_type: str | None
    target_id: str | None
    details: dict | None
    details_digest: str
    timestamp: datetime
    success: bool
    error_message: str | None
    hash: str
    prev_hash: str
    resolved: bool
    resolved_at: datetime | None
    resolved_by: str | None
    notes: str | None
    archived: bool
    archived_at: datetime | None


class AuditListResponse(BaseModel):
    """Response model for a paginated entry list."""

    entries: list[AuditEntryResponse]
    total_count: int
    page: int
    page_size: int
    total_pages: int


class SubmitEventResponse(BaseModel):
    recorded: bool
    sequence: int | None = None
    hash: str | None = None


class VerificationResponse(BaseModel):
    """Response model for a chain verification report."""

    valid: bool
    from_sequence: int
    to_sequence: int
    entries_checked: int
    broken_at_sequence: int | None
    expected_hash: str | None
    actual_hash: str | None
    reason: str | None


class ExcludedEntryResponse(BaseModel):
    sequence: int
    reason: str


class ArchiveResponse(BaseModel):
    cutoff: datetime
    archived_count: int
    archived_sequences: list[int]
    excluded: list[ExcludedEntryResponse]
    archived_prefix_through: int


class SummaryRowResponse(BaseModel):
    event_type: str
    severity: str
    count: int
    last_occurrence: datetime | None


class TopThreatResponse(BaseModel):
    ip: str
    count: int
    last_seen: datetime | None
    event_types: list[str]


class TopActorResponse(BaseModel):
    actor_user_id: str
    count: int
    last_seen: datetime | None


class AuditStatsResponse(BaseModel):
    """Response model for the security statistics view."""

    days: int
    total_events: int
    summary: list[SummaryRowResponse]
    top_threats: list[TopThreatResponse]
    top_actors: list[TopActorResponse]
    recent_events: list[AuditEntryResponse]


class ThreatAssessmentResponse(BaseModel):
    ip: str
    level: str
    score: int
    events: int
    details: list[dict[str, Any]]


def get_service() -> AuditService:
    """Dependency returning the global audit service."""
    service = get_audit_service()
    if service is None:
        raise HTTPException(status_code=503, detail="Audit service not initialized")
    return service


# Router
router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("/stats", response_model=AuditStatsResponse)
async def get_audit_stats(
    days: int = Query(default=7, ge=1, le=365),
    service: AuditService = Depends(get_service),
) -> AuditStatsResponse:
    """Get security statistics over the last ``days`` days.

    Returns:
        Summary by type and severity, top threat IPs, top actors and the most
        recent entries
    """
    stats = await service.statistics(days)
    return AuditStatsResponse(
        days=stats.days,
        total_events=stats.total_events,
        summary=[SummaryRowResponse(**vars(row)) for row in stats.summary],
        top_threats=[
            TopThreatResponse(
                ip=t.subject, count=t.count, last_seen=t.last_seen, event_types=t.event_types
            )
            for t in stats.top_threats
        ],
        top_actors=[
            TopActorResponse(actor_user_id=a.subject, count=a.count, last_seen=a.last_seen)
            for a in stats.top_actors
        ],
        recent_events=[_entry_to_response(e) for e in stats.recent_events],
    )


@router.get("/summary", response_model=list[SummaryRowResponse])
async def get_audit_summary(
    days: int = Query(default=7, ge=1, le=365),
    service: AuditService = Depends(get_service),
) -> list[SummaryRowResponse]:
    """Counts by event type and severity with the last occurrence."""
    rows = await service.summary(days)
    return [SummaryRowResponse(**vars(row)) for row in rows]


@router.get("/threats/{ip}", response_model=ThreatAssessmentResponse)
async def get_threat_assessment(
    ip: str,
    hours: int = Query(default=24, ge=1, le=24 * 30),
    service: AuditService = Depends(get_service),
) -> ThreatAssessmentResponse:
    """Assess the threat level of an IP over the last ``hours`` hours."""
    assessment = await service.assess_threat_level(ip, hours)
    return ThreatAssessmentResponse(**assessment.to_dict())


@router.get("", response_model=AuditListResponse)
async def list_audit_entries(
    event_type: SecurityEventType | None = Query(default=None),
    severity: Severity | None = Query(default=None),
    actor_id: str | None = Query(default=None),
    ip: str | None = Query(default=None),
    start_time: datetime | None = Query(default=None),
    end_time: datetime | None = Query(default=None),
    archived: bool | None = Query(default=None),
    resolved: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=100),
    service: AuditService = Depends(get_service),
) -> AuditListResponse:
    """List audit entries with optional filtering and pagination.

    Args:
        event_type: Filter by event type (e.g., "AUTH_FAILURE")
        severity: Filter by severity
        actor_id: Filter by actor user ID
        ip: Filter by client IP
        start_time: Filter entries at or after this time
        end_time: Filter entries at or before this time
        archived: Filter by archive flag
        resolved: Filter by resolution flag
        page: 1-based page number
        page_size: Entries per page (default 50, max 100)

    Returns:
        Page of entries, newest sequence first, with the total count
    """
    filters = AuditQueryFilters(
        event_type=event_type,
        severity=severity,
        actor_id=actor_id,
        ip=ip,
        start_time=start_time,
        end_time=end_time,
        archived=archived,
        resolved=resolved,
    )
    result = await service.list_entries(filters, page=page, page_size=page_size)
    return AuditListResponse(
        entries=[_entry_to_response(e) for e in result.entries],
        total_count=result.total_count,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )


@router.post("/events", response_model=SubmitEventResponse)
async def submit_event(
    request: SubmitEventRequest,
    service: AuditService = Depends(get_service),
) -> SubmitEventResponse:
    """Record a security event.

    Raises:
        HTTPException: 503 if the event could not be recorded under the
            fail-closed policy
    """
    try:
        result = await service.submit_event(
            request.event_type,
            request.severity,
            ip=request.ip,
            user_agent=request.user_agent,
            path=request.path,
            method=request.method,
            actor=Actor(**request.actor.model_dump()) if request.actor else None,
            target=Target(**request.target.model_dump()) if request.target else None,
            details=request.details,
            success=request.success,
            error_message=request.error_message,
        )
    except AppendPersistFailure:
        raise HTTPException(status_code=503, detail="Audit event could not be recorded")

    if result is None:
        return SubmitEventResponse(recorded=False)
    return SubmitEventResponse(recorded=True, sequence=result.sequence, hash=result.hash)


@router.post("/verify", response_model=VerificationResponse)
async def verify_chain(
    request: VerifyRequest,
    service: AuditService = Depends(get_service),
) -> VerificationResponse:
    """Verify chain integrity over a sequence range.

    Raises:
        HTTPException: 409 if the range has no resolvable seed hash,
            422 if the range is malformed
    """
    try:
        report = await service.verify_chain(request.from_sequence, request.to_sequence)
    except InsufficientContextError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return VerificationResponse(**report.to_dict())


@router.post("/archive", response_model=ArchiveResponse)
async def archive_entries(
    request: ArchiveRequest,
    service: AuditService = Depends(get_service),
) -> ArchiveResponse:
    """Archive resolved entries older than ``older_than_days``.

    Raises:
        HTTPException: 422 if strict and any requested entry is ineligible
    """
    try:
        report = await service.archive_older_than(
            request.older_than_days, sequences=request.sequences, strict=request.strict
        )
    except ArchiveIneligibleError as e:
        raise HTTPException(
            status_code=422,
            detail={
                "message": "Entries not eligible for archiving",
                "excluded": [{"sequence": x.sequence, "reason": x.reason.value} for x in e.excluded],
            },
        )
    return ArchiveResponse(**report.to_dict())


@router.get("/{sequence}", response_model=AuditEntryResponse)
async def get_audit_entry(
    sequence: int,
    service: AuditService = Depends(get_service),
) -> AuditEntryResponse:
    """Get a single audit entry by sequence.

    Raises:
        HTTPException: 404 if the entry does not exist
    """
    try:
        entry = await service.get_entry(sequence)
    except EntryNotFoundError:
        raise HTTPException(status_code=404, detail="Audit entry not found")
    return _entry_to_response(entry)


@router.post("/{sequence}/resolve", response_model=AuditEntryResponse)
async def resolve_entry(
    sequence: int,
    request: ResolveRequest,
    service: AuditService = Depends(get_service),
) -> AuditEntryResponse:
    """Mark an entry as resolved.

    Raises:
        HTTPException: 404 if the entry does not exist
    """
    try:
        entry = await service.resolve_entry(sequence, request.resolved_by, request.notes)
    except EntryNotFoundError:
        raise HTTPException(status_code=404, detail="Audit entry not found")
    return _entry_to_response(entry)


def _entry_to_response(entry: AuditLogEntry) -> AuditEntryResponse:
    """Convert an AuditLogEntry to an AuditEntryResponse."""
    return AuditEntryResponse(
        sequence=entry.sequence,
        event_type=entry.event_type.value,
        severity=entry.severity.value,
        actor_user_id=entry.actor.user_id,
        actor_email=entry.actor.email,
        actor_role=entry.actor.role,
        ip=entry.ip,
        user_agent=entry.user_agent,
        path=entry.path,
        method=entry.method.value,
        target_type=entry.target.target_type,
        target_id=entry.target.target_id,
        details=entry.details,
        details_digest=entry.details_digest,
        timestamp=entry.timestamp,
        success=entry.success,
        error_message=entry.error_message,
        hash=entry.hash,
        prev_hash=entry.prev_hash,
        resolved=entry.resolution.resolved,
        resolved_at=entry.resolution.resolved_at,
        resolved_by=entry.resolution.resolved_by,
        notes=entry.resolution.notes,
        archived=entry.archived,
        archived_at=entry.archived_at,
    )
