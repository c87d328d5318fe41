"""Tests for Audit API endpoints."""

from dataclasses import replace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from auditchain.api.audit import get_service
from auditchain.audit import setup
from auditchain.audit.exceptions import AppendPersistFailure, InsufficientContextError
from auditchain.audit.setup import build_audit_service
from auditchain.audit.store import InMemoryChainStore
from auditchain.config import Settings
from auditchain.main import app


class FailingStore(InMemoryChainStore):
    """Store whose appends always fail."""

    async def append_if_tail(self, expected, entry):
        raise AppendPersistFailure("database unavailable")


@pytest.fixture
def audit_store():
    return InMemoryChainStore()


@pytest.fixture
def audit_service(audit_store):
    return build_audit_service(audit_store, config=Settings())


@pytest_asyncio.fixture
async def audit_client(audit_service):
    """HTTP client with the audit service dependency overridden."""
    app.dependency_overrides[get_service] = lambda: audit_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def event_payload(**overrides) -> dict:
    """Build a submit-event request body."""
    payload = {
        "event_type": "AUTH_FAILURE",
        "ip": "203.0.113.7",
        "user_agent": "Mozilla/5.0",
        "path": "/api/auth/login",
        "method": "POST",
        "actor": {"user_id": "u1"},
        "details": {"reason": "bad password", "password": "hunter2hunter2"},
    }
    payload.update(overrides)
    return payload


async def submit_events(client, count, **overrides):
    for _ in range(count):
        response = await client.post("/api/audit/events", json=event_payload(**overrides))
        assert response.status_code == 200


class TestSubmitEvent:
    """Tests for POST /api/audit/events."""

    @pytest.mark.asyncio
    async def test_records_event(self, audit_client):
        """A valid event should be recorded with a sequence and hash."""
        response = await audit_client.post("/api/audit/events", json=event_payload())

        assert response.status_code == 200
        data = response.json()
        assert data["recorded"] is True
        assert data["sequence"] == 1
        assert len(data["hash"]) == 64

    @pytest.mark.asyncio
    async def test_unknown_event_type(self, audit_client):
        """An event type outside the catalogue should be rejected."""
        response = await audit_client.post(
            "/api/audit/events", json=event_payload(event_type="TELEPORT")
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_fail_closed_returns_503(self):
        """A HIGH severity event that cannot be recorded should return 503."""
        service = build_audit_service(FailingStore(), config=Settings())
        app.dependency_overrides[get_service] = lambda: service
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                response = await ac.post(
                    "/api/audit/events", json=event_payload(event_type="XSS_ATTEMPT")
                )
                open_response = await ac.post("/api/audit/events", json=event_payload())
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503
        assert open_response.status_code == 200
        assert open_response.json()["recorded"] is False


class TestListAndGet:
    """Tests for GET /api/audit and GET /api/audit/{sequence}."""

    @pytest.mark.asyncio
    async def test_list_newest_first(self, audit_client):
        """Entries should be listed newest first with pagination metadata."""
        await submit_events(audit_client, 3)

        response = await audit_client.get("/api/audit", params={"page_size": 2})

        assert response.status_code == 200
        data = response.json()
        assert [e["sequence"] for e in data["entries"]] == [3, 2]
        assert data["total_count"] == 3
        assert data["total_pages"] == 2

    @pytest.mark.asyncio
    async def test_list_filters(self, audit_client):
        """Query parameters should filter the list."""
        await submit_events(audit_client, 2)
        await submit_events(audit_client, 1, ip="198.51.100.1", event_type="CSP_VIOLATION")

        response = await audit_client.get(
            "/api/audit", params={"ip": "198.51.100.1", "event_type": "CSP_VIOLATION"}
        )

        assert [e["sequence"] for e in response.json()["entries"]] == [3]

    @pytest.mark.asyncio
    async def test_page_size_limit(self, audit_client):
        """page_size above 100 should be rejected."""
        response = await audit_client.get("/api/audit", params={"page_size": 101})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_entry(self, audit_client):
        """A stored entry should be returned with redacted details."""
        await submit_events(audit_client, 1)

        response = await audit_client.get("/api/audit/1")

        assert response.status_code == 200
        data = response.json()
        assert data["event_type"] == "AUTH_FAILURE"
        assert data["actor_user_id"] == "u1"
        assert data["details"]["password"] == "hu****r2"
        assert data["resolved"] is False

    @pytest.mark.asyncio
    async def test_get_missing_entry(self, audit_client):
        """An unknown sequence should return 404."""
        response = await audit_client.get("/api/audit/42")

        assert response.status_code == 404


class TestVerify:
    """Tests for POST /api/audit/verify."""

    @pytest.mark.asyncio
    async def test_valid_chain(self, audit_client):
        """An untampered chain should verify."""
        await submit_events(audit_client, 4)

        response = await audit_client.post("/api/audit/verify", json={})

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["entries_checked"] == 4

    @pytest.mark.asyncio
    async def test_tampered_chain(self, audit_client, audit_store):
        """A tampered entry should be reported as the break point."""
        await submit_events(audit_client, 4)
        audit_store._entries[1] = replace(audit_store._entries[1], ip="192.0.2.1")

        response = await audit_client.post("/api/audit/verify", json={"from_sequence": 1})

        data = response.json()
        assert data["valid"] is False
        assert data["broken_at_sequence"] == 2
        assert data["reason"] == "hash_mismatch"

    @pytest.mark.asyncio
    async def test_invalid_range(self, audit_client):
        """from_sequence below 1 should be rejected."""
        response = await audit_client.post("/api/audit/verify", json={"from_sequence": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_seed_returns_409(self):
        """A range without a retained seed hash should return 409."""
        service = AsyncMock()
        service.verify_chain.side_effect = InsufficientContextError(9)
        app.dependency_overrides[get_service] = lambda: service
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                response = await ac.post("/api/audit/verify", json={"from_sequence": 10})
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 409


class TestResolveAndArchive:
    """Tests for resolution and archiving endpoints."""

    @pytest.mark.asyncio
    async def test_resolve(self, audit_client):
        """Resolving should set the resolution fields."""
        await submit_events(audit_client, 1)

        response = await audit_client.post(
            "/api/audit/1/resolve", json={"resolved_by": "analyst", "notes": "benign"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["resolved"] is True
        assert data["resolved_by"] == "analyst"
        assert data["notes"] == "benign"

    @pytest.mark.asyncio
    async def test_resolve_missing(self, audit_client):
        """Resolving an unknown sequence should return 404."""
        response = await audit_client.post("/api/audit/5/resolve", json={"resolved_by": "analyst"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_resolve_requires_resolver(self, audit_client):
        """An empty resolver should be rejected."""
        await submit_events(audit_client, 1)

        response = await audit_client.post("/api/audit/1/resolve", json={"resolved_by": ""})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_archive_reports_exclusions(self, audit_client):
        """Unresolved entries should be reported, resolved ones archived."""
        await submit_events(audit_client, 2)
        await audit_client.post("/api/audit/1/resolve", json={"resolved_by": "analyst"})

        response = await audit_client.post("/api/audit/archive", json={"older_than_days": 0})

        assert response.status_code == 200
        data = response.json()
        assert data["archived_sequences"] == [1]
        assert data["excluded"] == [{"sequence": 2, "reason": "UNRESOLVED"}]
        assert data["archived_prefix_through"] == 1

    @pytest.mark.asyncio
    async def test_strict_archive_rejected(self, audit_client):
        """A strict request with ineligible entries should return 422."""
        await submit_events(audit_client, 1)

        response = await audit_client.post(
            "/api/audit/archive", json={"older_than_days": 0, "sequences": [1], "strict": True}
        )

        assert response.status_code == 422
        assert response.json()["detail"]["excluded"] == [{"sequence": 1, "reason": "UNRESOLVED"}]


class TestReporting:
    """Tests for statistics, summary and threat endpoints."""

    @pytest.mark.asyncio
    async def test_stats(self, audit_client):
        """Statistics should include totals, summary and top lists."""
        await submit_events(audit_client, 2)
        await submit_events(audit_client, 1, event_type="SQL_INJECTION", ip="198.51.100.9")

        response = await audit_client.get("/api/audit/stats", params={"days": 7})

        assert response.status_code == 200
        data = response.json()
        assert data["total_events"] == 3
        assert data["top_threats"][0]["ip"] == "198.51.100.9"
        assert data["top_actors"][0]["actor_user_id"] == "u1"
        assert len(data["recent_events"]) == 3

    @pytest.mark.asyncio
    async def test_stats_days_bounds(self, audit_client):
        """days outside 1..365 should be rejected."""
        response = await audit_client.get("/api/audit/stats", params={"days": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_summary(self, audit_client):
        """Summary should group by type and severity."""
        await submit_events(audit_client, 2)

        response = await audit_client.get("/api/audit/summary")

        rows = response.json()
        assert len(rows) == 1
        assert (rows[0]["event_type"], rows[0]["severity"], rows[0]["count"]) == ("AUTH_FAILURE", "LOW", 2)
        assert rows[0]["last_occurrence"] is not None

    @pytest.mark.asyncio
    async def test_threat_assessment(self, audit_client):
        """Threat assessment should score the IP's recent events."""
        await submit_events(audit_client, 3, event_type="XSS_ATTEMPT")

        response = await audit_client.get("/api/audit/threats/203.0.113.7")

        data = response.json()
        assert data["score"] == 21
        assert data["level"] == "HIGH"
        assert data["events"] == 3


class TestServiceUnavailable:
    """Tests for requests before the service is initialized."""

    @pytest.mark.asyncio
    async def test_returns_503(self):
        """Without an initialized service every route should return 503."""
        setup._audit_service = None
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/api/audit")

        assert response.status_code == 503
