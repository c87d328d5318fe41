"""Payload normalization and redaction for audit events.

Everything that feeds the entry hash must be exactly what gets stored,
so events are normalized once, before hashing:
- normalize_details: coerce the payload to plain JSON types
- redact_sensitive_fields: mask credentials and tokens
- enforce_size_limit: swap oversized payloads for a digest reference
- truncate: clip free-text fields to their column limits
- compute_change_patch: JSON Patch between before/after states of an admin change
"""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

import jsonpatch

from auditchain.audit.config import MAX_DETAILS_SIZE_BYTES, REDACTION_RULES
from auditchain.audit.models import to_utc


def _json_default(value: Any) -> Any:
    """Serialize non-JSON values found in event payloads."""
    if isinstance(value, datetime):
        return to_utc(value).isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def normalize_details(details: dict[str, Any] | None) -> dict[str, Any]:
    """Coerce a payload to plain JSON types via a serialization round trip.

    Args:
        details: The raw payload (None becomes an empty dict).

    Returns:
        A dict that survives JSON storage unchanged.

    Raises:
        ValueError: If the payload contains NaN or infinite floats.
    """
    if not details:
        return {}
    return json.loads(json.dumps(details, default=_json_default, allow_nan=False))


def _mask_value(value: str) -> str:
    """Mask a sensitive string value, keeping first 2 and last 2 chars.

    Args:
        value: The string value to mask.

    Returns:
        Masked string, or "****" if the value is too short to reveal anything.
    """
    if len(value) < 8:
        return "****"
    return f"{value[:2]}****{value[-2:]}"


def _redact_value(value: Any, key: str) -> Any:
    if isinstance(value, dict):
        return {k: _redact_value(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact_value(item, key) for item in value]
    if key.lower() in REDACTION_RULES:
        if isinstance(value, str):
            return _mask_value(value)
        return "****"
    return value


def redact_sensitive_fields(details: dict[str, Any]) -> dict[str, Any]:
    """Mask values stored under sensitive keys, at any depth.

    Args:
        details: A normalized payload.

    Returns:
        A redacted copy of the payload.
    """
    return {k: _redact_value(v, k) for k, v in details.items()}


def enforce_size_limit(details: dict[str, Any]) -> dict[str, Any]:
    """Replace a payload larger than MAX_DETAILS_SIZE_BYTES with a reference.

    Args:
        details: A normalized payload.

    Returns:
        The payload unchanged if within the limit, otherwise a dict holding
        the SHA-256 of the original canonical payload and its size.
    """
    serialized = json.dumps(details, sort_keys=True, separators=(",", ":")).encode("utf-8")
    if len(serialized) <= MAX_DETAILS_SIZE_BYTES:
        return details
    return {
        "_reference": hashlib.sha256(serialized).hexdigest(),
        "_size_bytes": len(serialized),
    }


def truncate(value: str | None, max_length: int) -> str | None:
    if value is None:
        return None
    return value[:max_length]


def sanitize_details(details: dict[str, Any] | None) -> dict[str, Any]:
    """Normalize, redact and size-limit an event payload."""
    return enforce_size_limit(redact_sensitive_fields(normalize_details(details)))


def compute_change_patch(before: dict | None, after: dict | None) -> list[dict] | None:
    """Compute an RFC 6902 JSON Patch describing an admin change.

    Args:
        before: State prior to the change (None for creation).
        after: State after the change (None for deletion).

    Returns:
        The list of patch operations, or None if nothing changed.
    """
    if before is None and after is None:
        return None
    patch = jsonpatch.make_patch(before or {}, after or {})
    if not patch.patch:
        return None
    return patch.patch
