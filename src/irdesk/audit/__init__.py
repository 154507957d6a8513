"""Audit sink integration."""

from irdesk.audit.sink import (
    AuditRecord,
    AuditSeverity,
    AuditSink,
    InMemoryAuditSink,
    LogAuditSink,
    audit_forwarder,
)

__all__ = [
    "AuditRecord",
    "AuditSeverity",
    "AuditSink",
    "InMemoryAuditSink",
    "LogAuditSink",
    "audit_forwarder",
]
