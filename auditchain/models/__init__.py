from auditchain.models.audit_log import AuditLogRow, ChainTailRow

__all__ = ["AuditLogRow", "ChainTailRow"]
