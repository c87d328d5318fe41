"""Create audit_log_entries and audit_chain_tail tables.

Revision ID: 001_audit_chain
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op

revision = "001_audit_chain"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Tail record guarded by compare-and-swap on (sequence, hash)
    op.create_table(
        "audit_chain_tail",
        sa.Column("chain_key", sa.VARCHAR(100), primary_key=True),
        sa.Column("sequence", sa.BIGINT, nullable=False),
        sa.Column("hash", sa.VARCHAR(64), nullable=False),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )

    op.create_table(
        "audit_log_entries",
        sa.Column("chain_key", sa.VARCHAR(100), nullable=False),
        sa.Column("sequence", sa.BIGINT, nullable=False),
        sa.PrimaryKeyConstraint("chain_key", "sequence"),
        sa.Column("event_type", sa.VARCHAR(40), nullable=False),
        sa.Column("severity", sa.VARCHAR(10), nullable=False),
        sa.Column("actor_user_id", sa.VARCHAR(100), nullable=True),
        sa.Column("actor_email", sa.VARCHAR(255), nullable=True),
        sa.Column("actor_role", sa.VARCHAR(50), nullable=True),
        sa.Column("ip", sa.VARCHAR(64), nullable=False),
        sa.Column("user_agent", sa.VARCHAR(500), nullable=False),
        sa.Column("path", sa.VARCHAR(200), nullable=False),
        sa.Column("method", sa.VARCHAR(10), nullable=False),
        sa.Column("target_type", sa.VARCHAR(50), nullable=True),
        sa.Column("target_id", sa.VARCHAR(100), nullable=True),
        # JSON text: details must read back unchanged for details_digest
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("details_digest", sa.VARCHAR(64), nullable=False),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("success", sa.BOOLEAN, nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.TEXT, nullable=True),
        sa.Column("hash", sa.VARCHAR(64), nullable=False),
        sa.Column("prev_hash", sa.VARCHAR(64), nullable=False),
        sa.Column("resolved", sa.BOOLEAN, nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.VARCHAR(255), nullable=True),
        sa.Column("notes", sa.VARCHAR(1000), nullable=True),
        sa.Column("archived", sa.BOOLEAN, nullable=False, server_default=sa.false()),
        sa.Column("archived_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint("chain_key", "hash", name="uq_audit_log_entries_chain_hash"),
        sa.CheckConstraint(
            "event_type IN ('AUTH_FAILURE', 'PERMISSION_DENIED', 'XSS_ATTEMPT', "
            "'CSRF_VIOLATION', 'RATE_LIMIT', 'SUSPICIOUS_ACTIVITY', 'SQL_INJECTION', "
            "'FILE_ACCESS_VIOLATION', 'BRUTE_FORCE', 'ACCOUNT_LOCKOUT', "
            "'UNUSUAL_ACCESS_PATTERN', 'CSP_VIOLATION', 'ADMIN_ACTION')",
            name="ck_audit_log_entries_event_type",
        ),
        sa.CheckConstraint(
            "severity IN ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')",
            name="ck_audit_log_entries_severity",
        ),
        sa.CheckConstraint(
            "method IN ('GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'HEAD', 'OPTIONS')",
            name="ck_audit_log_entries_method",
        ),
        # Archived entries must stay resolved
        sa.CheckConstraint(
            "NOT archived OR resolved",
            name="ck_audit_log_entries_archived_resolved",
        ),
    )

    op.create_index("ix_audit_log_entries_event_type", "audit_log_entries", ["event_type"])
    op.create_index("ix_audit_log_entries_severity", "audit_log_entries", ["severity"])
    op.create_index("ix_audit_log_entries_resolved", "audit_log_entries", ["resolved"])
    op.create_index("idx_audit_entries_timestamp", "audit_log_entries", ["timestamp"])
    op.create_index(
        "idx_audit_entries_type_severity", "audit_log_entries", ["event_type", "severity"]
    )
    op.create_index("idx_audit_entries_ip_timestamp", "audit_log_entries", ["ip", "timestamp"])
    op.create_index(
        "idx_audit_entries_actor_timestamp", "audit_log_entries", ["actor_user_id", "timestamp"]
    )
    op.create_index(
        "idx_audit_entries_archived_timestamp", "audit_log_entries", ["archived", "timestamp"]
    )

    # Block deletes and changes to hashed columns at the database level
    op.execute("""
        CREATE OR REPLACE FUNCTION audit_log_entries_guard() RETURNS trigger AS $$
        BEGIN
            IF TG_OP = 'DELETE' THEN
                RAISE EXCEPTION 'audit_log_entries rows cannot be deleted';
            END IF;
            IF NEW.chain_key <> OLD.chain_key
               OR NEW.sequence <> OLD.sequence
               OR NEW.hash <> OLD.hash
               OR NEW.prev_hash <> OLD.prev_hash
               OR NEW.details_digest <> OLD.details_digest
               OR NEW.event_type <> OLD.event_type
               OR NEW.severity <> OLD.severity
               OR NEW.timestamp <> OLD.timestamp THEN
                RAISE EXCEPTION 'hashed audit columns are immutable';
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER trg_audit_log_entries_guard
        BEFORE UPDATE OR DELETE ON audit_log_entries
        FOR EACH ROW EXECUTE FUNCTION audit_log_entries_guard();
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_audit_log_entries_guard ON audit_log_entries")
    op.execute("DROP FUNCTION IF EXISTS audit_log_entries_guard()")
    op.drop_index("idx_audit_entries_archived_timestamp", table_name="audit_log_entries")
    op.drop_index("idx_audit_entries_actor_timestamp", table_name="audit_log_entries")
    op.drop_index("idx_audit_entries_ip_timestamp", table_name="audit_log_entries")
    op.drop_index("idx_audit_entries_type_severity", table_name="audit_log_entries")
    op.drop_index("idx_audit_entries_timestamp", table_name="audit_log_entries")
    op.drop_index("ix_audit_log_entries_resolved", table_name="audit_log_entries")
    op.drop_index("ix_audit_log_entries_severity", table_name="audit_log_entries")
    op.drop_index("ix_audit_log_entries_event_type", table_name="audit_log_entries")
    op.drop_table("audit_log_entries")
    op.drop_table("audit_chain_tail")
