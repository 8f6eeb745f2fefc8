"""Audit trail for administrative and data operations."""

from audit.audit_logger import AuditAction, AuditEntry, AuditLogger, AuditSeverity

__all__ = ["AuditAction", "AuditEntry", "AuditLogger", "AuditSeverity"]
