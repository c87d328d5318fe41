"""Tests for payload normalization and redaction."""

import math
from datetime import datetime, timezone
from uuid import UUID

import pytest

from auditchain.audit.config import MAX_DETAILS_SIZE_BYTES
from auditchain.audit.models import Severity
from auditchain.audit.sanitize import (
    compute_change_patch,
    enforce_size_limit,
    normalize_details,
    redact_sensitive_fields,
    sanitize_details,
    truncate,
)


class TestNormalizeDetails:
    """Tests for normalize_details."""

    def test_none_becomes_empty(self):
        """None should normalize to an empty dict."""
        assert normalize_details(None) == {}

    def test_non_json_values_are_coerced(self):
        """Datetimes, UUIDs, enums and sets should become JSON values."""
        result = normalize_details(
            {
                "at": datetime(2026, 3, 1, tzinfo=timezone.utc),
                "id": UUID("12345678-1234-5678-1234-567812345678"),
                "severity": Severity.HIGH,
                "tags": {"b", "a"},
            }
        )

        assert result == {
            "at": "2026-03-01T00:00:00+00:00",
            "id": "12345678-1234-5678-1234-567812345678",
            "severity": "HIGH",
            "tags": ["a", "b"],
        }

    def test_nan_is_rejected(self):
        """Non-finite floats cannot be hashed canonically."""
        with pytest.raises(ValueError):
            normalize_details({"score": math.nan})


class TestRedactSensitiveFields:
    """Tests for redact_sensitive_fields."""

    def test_masks_long_values(self):
        """Long sensitive values should keep two chars at each end."""
        assert redact_sensitive_fields({"password": "hunter2hunter2"}) == {"password": "hu****r2"}

    def test_masks_short_values_completely(self):
        """Short sensitive values should be fully masked."""
        assert redact_sensitive_fields({"token": "abc"}) == {"token": "****"}

    def test_key_match_is_case_insensitive(self):
        """Key matching should ignore case."""
        assert redact_sensitive_fields({"Authorization": 12345}) == {"Authorization": "****"}

    def test_nested_values(self):
        """Sensitive keys should be masked at any depth."""
        result = redact_sensitive_fields(
            {"request": {"headers": {"cookie": "session=abcdefgh"}}, "items": [{"api_key": "x"}]}
        )

        assert result["request"]["headers"]["cookie"] == "se****gh"
        assert result["items"][0]["api_key"] == "****"

    def test_other_keys_untouched(self):
        """Non-sensitive keys should pass through."""
        assert redact_sensitive_fields({"reason": "bad password"}) == {"reason": "bad password"}


class TestEnforceSizeLimit:
    """Tests for enforce_size_limit."""

    def test_small_payload_unchanged(self):
        """Payloads within the limit should be returned as is."""
        details = {"reason": "x"}

        assert enforce_size_limit(details) is details

    def test_large_payload_becomes_reference(self):
        """Oversized payloads should be replaced with a digest reference."""
        result = enforce_size_limit({"blob": "x" * (MAX_DETAILS_SIZE_BYTES + 1)})

        assert set(result) == {"_reference", "_size_bytes"}
        assert len(result["_reference"]) == 64
        assert result["_size_bytes"] > MAX_DETAILS_SIZE_BYTES


class TestTruncateAndSanitize:
    """Tests for truncate and sanitize_details."""

    def test_truncate(self):
        """truncate should clip and pass None through."""
        assert truncate("abcdef", 3) == "abc"
        assert truncate(None, 3) is None

    def test_sanitize_pipeline(self):
        """sanitize_details should normalize then redact."""
        assert sanitize_details({"secret": "abcdefghij", "n": 1}) == {"secret": "ab****ij", "n": 1}


class TestComputeChangePatch:
    """Tests for compute_change_patch."""

    def test_patch_for_change(self):
        """A changed field should produce a replace operation."""
        patch = compute_change_patch({"role": "user"}, {"role": "admin"})

        assert patch == [{"op": "replace", "path": "/role", "value": "admin"}]

    def test_no_change_returns_none(self):
        """Identical states should produce no patch."""
        assert compute_change_patch({"a": 1}, {"a": 1}) is None

    def test_both_none_returns_none(self):
        """Nothing before and after should produce no patch."""
        assert compute_change_patch(None, None) is None

    def test_creation(self):
        """A creation should add fields."""
        patch = compute_change_patch(None, {"role": "admin"})

        assert patch == [{"op": "add", "path": "/role", "value": "admin"}]
