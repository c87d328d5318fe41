"""Entry hashing for the audit chain.

Hashing is a pure function of an entry's hashed fields and the previous
entry's hash. It has no dependency on storage, so the builder calls it
before persisting and the verifier calls it while scanning.

Functions:
    canonicalize: Deterministic bytes for a mapping (sorted-key JSON)
    compute_details_digest: SHA-256 of a canonical payload
    hashed_fields: The HASHED_FIELDS view of an entry
    compute_hash: H(canonical(fields) || prev_hash)
    compute_entry_hash: compute_hash for an AuditLogEntry
    verify_entry_hash: Compare a stored hash with its recomputed value
"""

import hashlib
import hmac
import json
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from auditchain.audit.config import HASHED_FIELDS
from auditchain.audit.models import AuditLogEntry, to_utc


def format_timestamp(value: datetime) -> str:
    """Render a timestamp in the single canonical form used for hashing."""
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def canonicalize(data: Mapping[str, Any]) -> bytes:
    """Serialize a mapping to deterministic bytes.

    Keys are sorted at every depth, separators carry no whitespace and
    non-finite floats are rejected.

    Args:
        data: JSON-compatible mapping.

    Returns:
        UTF-8 encoded canonical JSON.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def compute_details_digest(details: Mapping[str, Any]) -> str:
    return hashlib.sha256(canonicalize(details)).hexdigest()


def _effective_details_digest(entry: AuditLogEntry) -> str:
    # Compacted entries only have the retained digest to offer
    if entry.details is None:
        return entry.details_digest
    return compute_details_digest(entry.details)


def hashed_fields(entry: AuditLogEntry) -> dict[str, Any]:
    """Build the canonical field dict for an entry.

    ``details_digest`` is recomputed from ``details`` whenever the payload
    is present, so tampering with the payload cannot hide behind a stored
    digest.

    Args:
        entry: The entry to extract fields from.

    Returns:
        Dict keyed by HASHED_FIELDS.
    """
    values: dict[str, Any] = {
        "sequence": entry.sequence,
        "event_type": entry.event_type.value,
        "severity": entry.severity.value,
        "actor_user_id": entry.actor.user_id,
        "actor_email": entry.actor.email,
        "actor_role": entry.actor.role,
        "ip": entry.ip,
        "user_agent": entry.user_agent,
        "path": entry.path,
        "method": entry.method.value,
        "target_type": entry.target.target_type,
        "target_id": entry.target.target_id,
        "details_digest": _effective_details_digest(entry),
        "timestamp": format_timestamp(entry.timestamp),
        "success": entry.success,
        "error_message": entry.error_message,
    }
    return {name: values[name] for name in HASHED_FIELDS}


def compute_hash(fields: Mapping[str, Any], prev_hash: str, key: bytes | None = None) -> str:
    """Compute the chain hash for a set of entry fields.

    Args:
        fields: The hashed fields of the entry.
        prev_hash: Hash of the previous entry (genesis constant for the first).
        key: Optional secret; when given the digest is HMAC-SHA256.

    Returns:
        Hex digest.
    """
    message = canonicalize(fields) + prev_hash.encode("ascii")
    if key is not None:
        return hmac.new(key, message, hashlib.sha256).hexdigest()
    return hashlib.sha256(message).hexdigest()


def compute_entry_hash(entry: AuditLogEntry, prev_hash: str, key: bytes | None = None) -> str:
    return compute_hash(hashed_fields(entry), prev_hash, key)


def verify_entry_hash(entry: AuditLogEntry, prev_hash: str, key: bytes | None = None) -> bool:
    """Check an entry's stored hash against a recomputation.

    Args:
        entry: The stored entry.
        prev_hash: The previous entry's stored hash.
        key: Optional HMAC secret.

    Returns:
        True if the stored hash matches.
    """
    return hmac.compare_digest(entry.hash, compute_entry_hash(entry, prev_hash, key))
