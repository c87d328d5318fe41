"""ORM rows for the audit chain and its tail record."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from auditchain.db.database import Base


class AuditLogRow(Base):
    """One chained audit entry.

    Rows are never deleted. Only the resolution columns and the archive
    columns change after insert; ``details`` may be nulled on archive,
    ``details_digest`` is kept for verification.
    """

    __tablename__ = "audit_log_entries"

    chain_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    sequence: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)

    event_type: Mapped[str] = mapped_column(String(40), index=True)
    severity: Mapped[str] = mapped_column(String(10), index=True)

    actor_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    actor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String(50), nullable=True)

    ip: Mapped[str] = mapped_column(String(64))
    user_agent: Mapped[str] = mapped_column(String(500))
    path: Mapped[str] = mapped_column(String(200))
    method: Mapped[str] = mapped_column(String(10))

    target_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    details: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    details_digest: Mapped[str] = mapped_column(String(64))

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Chain link
    hash: Mapped[str] = mapped_column(String(64))
    prev_hash: Mapped[str] = mapped_column(String(64))

    # Resolution (not hashed)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # Retention (not hashed)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("chain_key", "hash", name="uq_audit_log_entries_chain_hash"),
        Index("idx_audit_entries_timestamp", "timestamp"),
        Index("idx_audit_entries_type_severity", "event_type", "severity"),
        Index("idx_audit_entries_ip_timestamp", "ip", "timestamp"),
        Index("idx_audit_entries_actor_timestamp", "actor_user_id", "timestamp"),
        Index("idx_audit_entries_archived_timestamp", "archived", "timestamp"),
    )


class ChainTailRow(Base):
    """The tail record guarded by compare-and-swap on (sequence, hash)."""

    __tablename__ = "audit_chain_tail"

    chain_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    sequence: Mapped[int] = mapped_column(BigInteger)
    hash: Mapped[str] = mapped_column(String(64))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
