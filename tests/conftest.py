from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import auditchain.models  # noqa: F401
from auditchain.audit.models import (
    Actor,
    AuditEvent,
    HttpMethod,
    SecurityEventType,
    Severity,
    Target,
)
from auditchain.audit.config import get_default_severity
from auditchain.audit.store import InMemoryChainStore
from auditchain.db.database import Base

BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def base_time():
    """Fixed reference time for deterministic tests."""
    return BASE_TIME


@pytest.fixture
def event_factory():
    """Factory building AuditEvent instances with sensible defaults."""

    def _make(
        event_type: SecurityEventType = SecurityEventType.AUTH_FAILURE,
        severity: Severity | None = None,
        ip: str = "203.0.113.7",
        timestamp: datetime | None = None,
        offset_seconds: int = 0,
        user_id: str | None = None,
        details: dict | None = None,
        path: str = "/api/auth/login",
        method: HttpMethod = HttpMethod.POST,
        target: Target | None = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            severity=severity or get_default_severity(event_type),
            ip=ip,
            user_agent="Mozilla/5.0",
            path=path,
            method=method,
            timestamp=(timestamp or BASE_TIME) + timedelta(seconds=offset_seconds),
            details=details if details is not None else {"reason": "bad password"},
            actor=Actor(user_id=user_id),
            target=target or Target(),
        )

    return _make


@pytest.fixture
def memory_store():
    """Empty in-memory chain store."""
    return InMemoryChainStore()


@pytest_asyncio.fixture
async def session_factory():
    """Session factory over an in-memory SQLite database with the audit tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()
