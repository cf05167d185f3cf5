"""
Audit
=====

Append-only lifecycle audit trail.
"""

from exprsn_core.audit.log import AuditEventType, AuditLog, AuditRecord, AuditSink

__all__ = [
    "AuditEventType",
    "AuditLog",
    "AuditRecord",
    "AuditSink",
]
