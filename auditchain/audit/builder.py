"""Chain builder: serializes event submission into hash-linked entries.

Each append reads the tail, derives the next entry from it with the pure
hash function, and hands both to the store's compare-and-swap primitive.
A lost race (AppendConflict) is retried with bounded exponential backoff.
When the retry budget runs out the append fails loudly with
AppendPersistFailure; an event is never dropped silently.

Nothing is written before the CAS succeeds, so a crash anywhere before
that point leaves the tail untouched.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, replace

from auditchain.audit.exceptions import AppendConflict, AppendPersistFailure
from auditchain.audit.integrity import compute_details_digest, compute_entry_hash
from auditchain.audit.models import AuditEvent, AuditLogEntry, to_utc
from auditchain.audit.store import ChainStore, ChainTail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppendResult:
    """Outcome of a successful append."""

    sequence: int
    hash: str
    entry: AuditLogEntry


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: bool = True) -> float:
    """Delay before retry number ``attempt`` (1-based).

    Exponential in the attempt number, capped at ``max_delay``, with
    optional jitter in [0.5, 1.5) of the computed delay.
    """
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    if jitter:
        delay = delay * (0.5 + random.random())
    return delay


def build_entry(event: AuditEvent, tail: ChainTail, hash_key: bytes | None = None) -> AuditLogEntry:
    """Derive the entry that would extend ``tail``.

    Args:
        event: The normalized event.
        tail: The tail read from the store.
        hash_key: Optional HMAC secret.

    Returns:
        The next entry, with sequence, prev_hash and hash filled in.
    """
    entry = AuditLogEntry(
        sequence=tail.sequence + 1,
        event_type=event.event_type,
        severity=event.severity,
        ip=event.ip,
        user_agent=event.user_agent,
        path=event.path,
        method=event.method,
        timestamp=to_utc(event.timestamp),
        details=dict(event.details),
        details_digest=compute_details_digest(event.details),
        success=event.success,
        error_message=event.error_message,
        hash="",
        prev_hash=tail.hash,
        actor=event.actor,
        target=event.target,
    )
    return replace(entry, hash=compute_entry_hash(entry, tail.hash, hash_key))


class ChainBuilder:
    """Appends events to a chain store.

    Args:
        store: The chain store.
        max_attempts: Total CAS attempts per append before giving up.
        base_delay: Initial backoff delay in seconds.
        max_delay: Backoff ceiling in seconds.
        hash_key: Optional HMAC secret for entry hashes.
        local_lock: Serialize appends from this process with an asyncio.Lock
            before reaching the CAS (single-instance deployments).
    """

    def __init__(
        self,
        store: ChainStore,
        max_attempts: int = 5,
        base_delay: float = 0.01,
        max_delay: float = 0.5,
        hash_key: bytes | None = None,
        local_lock: bool = True,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._hash_key = hash_key
        self._lock = asyncio.Lock() if local_lock else None

    @property
    def store(self) -> ChainStore:
        return self._store

    @property
    def hash_key(self) -> bytes | None:
        return self._hash_key

    async def append(self, event: AuditEvent) -> AppendResult:
        """Append an event to the chain.

        Args:
            event: The normalized event. Its timestamp is kept as submitted.

        Returns:
            AppendResult with the assigned sequence and hash.

        Raises:
            AppendPersistFailure: The retry budget was exhausted or storage
                failed. The event is not in the chain.
        """
        if self._lock is None:
            return await self._append_with_retry(event)
        async with self._lock:
            return await self._append_with_retry(event)

    async def _append_with_retry(self, event: AuditEvent) -> AppendResult:
        last_exception: Exception | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                tail = await self._store.read_tail()
                entry = build_entry(event, tail, self._hash_key)
                await self._store.append_if_tail(tail, entry)
            except AppendConflict as e:
                last_exception = e
                if attempt == self._max_attempts:
                    break
                delay = backoff_delay(attempt, self._base_delay, self._max_delay)
                logger.warning(
                    "Audit append conflict at sequence %s, retrying (attempt %s/%s, delay %.3fs)",
                    entry.sequence,
                    attempt,
                    self._max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
                continue
            except AppendPersistFailure as e:
                e.attempts = attempt
                logger.error("Audit append failed on attempt %s: %s", attempt, e)
                raise

            logger.debug("Appended audit entry %s (%s)", entry.sequence, entry.event_type.value)
            return AppendResult(sequence=entry.sequence, hash=entry.hash, entry=entry)

        logger.error(
            "Audit append retry budget exhausted after %s attempts: %s",
            self._max_attempts,
            last_exception,
        )
        raise AppendPersistFailure(
            f"Failed to append audit event after {self._max_attempts} attempts",
            attempts=self._max_attempts,
            last_exception=last_exception,
        )
