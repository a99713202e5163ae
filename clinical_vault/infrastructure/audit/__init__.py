"""Audit logging engine."""

from clinical_vault.infrastructure.audit.audit_logger import AuditLogger

__all__ = ["AuditLogger"]
