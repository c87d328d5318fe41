"""Tests for audit models and policy configuration."""

from datetime import datetime, timedelta, timezone

from auditchain.audit.config import (
    ALERT_EVENT_TYPES,
    DEFAULT_SEVERITY,
    get_default_severity,
    is_fail_closed,
    is_sync_scan_required,
    requires_alert,
    threat_level_for_score,
)
from auditchain.audit.models import (
    AuditLogEntry,
    HttpMethod,
    Resolution,
    SecurityEventType,
    Severity,
    to_utc,
)


class TestEnums:
    """Tests for the closed enumerations."""

    def test_event_type_values_are_names(self):
        """Event type values should equal their names."""
        for member in SecurityEventType:
            assert member.value == member.name

    def test_severity_rank_orders_levels(self):
        """rank should order LOW < MEDIUM < HIGH < CRITICAL."""
        ranks = [s.rank for s in (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)]

        assert ranks == [0, 1, 2, 3]

    def test_http_methods(self):
        """HttpMethod should cover the standard verbs."""
        assert {m.value for m in HttpMethod} == {
            "GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"
        }


class TestToUtc:
    """Tests for to_utc."""

    def test_naive_gets_utc(self):
        """Naive datetimes should be tagged UTC without shifting."""
        result = to_utc(datetime(2026, 1, 1, 8, 0))

        assert result.tzinfo == timezone.utc
        assert result.hour == 8

    def test_aware_is_converted(self):
        """Aware datetimes should be converted to UTC."""
        value = datetime(2026, 1, 1, 9, 0, tzinfo=timezone(timedelta(hours=9)))

        assert to_utc(value) == datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)


class TestAuditLogEntry:
    """Tests for AuditLogEntry helpers."""

    def _entry(self) -> AuditLogEntry:
        return AuditLogEntry(
            sequence=3,
            event_type=SecurityEventType.CSP_VIOLATION,
            severity=Severity.LOW,
            ip="203.0.113.7",
            user_agent="ua",
            path="/",
            method=HttpMethod.GET,
            timestamp=datetime(2026, 3, 1, tzinfo=timezone.utc),
            details=None,
            details_digest="d" * 64,
            success=False,
            error_message=None,
            hash="a" * 64,
            prev_hash="b" * 64,
        )

    def test_details_compacted(self):
        """An entry without details should report compaction."""
        assert self._entry().details_compacted

    def test_with_resolution_keeps_chain_fields(self):
        """with_resolution should only replace the resolution."""
        entry = self._entry()
        resolved = entry.with_resolution(Resolution(resolved=True, resolved_by="admin"))

        assert resolved.resolution.resolved
        assert (resolved.sequence, resolved.hash, resolved.prev_hash) == (3, "a" * 64, "b" * 64)

    def test_to_dict_serializes_enums_and_dates(self):
        """to_dict should emit plain values."""
        data = self._entry().to_dict()

        assert data["event_type"] == "CSP_VIOLATION"
        assert data["method"] == "GET"
        assert data["timestamp"] == "2026-03-01T00:00:00+00:00"
        assert data["resolution"]["resolved"] is False


class TestPolicyConfig:
    """Tests for the static policy helpers."""

    def test_every_event_type_has_a_default_severity(self):
        """DEFAULT_SEVERITY should cover the whole catalogue."""
        assert set(DEFAULT_SEVERITY) == set(SecurityEventType)

    def test_default_severities(self):
        """Spot-check default severities."""
        assert get_default_severity(SecurityEventType.SQL_INJECTION) == Severity.CRITICAL
        assert get_default_severity(SecurityEventType.AUTH_FAILURE) == Severity.LOW
        assert get_default_severity(SecurityEventType.XSS_ATTEMPT) == Severity.HIGH

    def test_fail_closed_for_high_and_critical(self):
        """Only HIGH and CRITICAL should be fail-closed."""
        assert is_fail_closed(Severity.CRITICAL)
        assert is_fail_closed(Severity.HIGH)
        assert not is_fail_closed(Severity.MEDIUM)
        assert not is_fail_closed(Severity.LOW)

    def test_sync_scan_only_for_critical(self):
        """Only CRITICAL entries should be scanned synchronously."""
        assert is_sync_scan_required(Severity.CRITICAL)
        assert not is_sync_scan_required(Severity.HIGH)

    def test_alert_types(self):
        """Alert-worthy types should match the catalogue."""
        assert requires_alert(SecurityEventType.BRUTE_FORCE)
        assert not requires_alert(SecurityEventType.AUTH_FAILURE)
        assert len(ALERT_EVENT_TYPES) == 5

    def test_threat_levels(self):
        """Scores should map onto levels at the thresholds."""
        assert threat_level_for_score(0) == Severity.LOW
        assert threat_level_for_score(4) == Severity.LOW
        assert threat_level_for_score(5) == Severity.MEDIUM
        assert threat_level_for_score(20) == Severity.HIGH
        assert threat_level_for_score(50) == Severity.CRITICAL
