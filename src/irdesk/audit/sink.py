"""Audit sink: append-only record of every incident operation.

The incident manager never calls a sink directly. Audit records travel over
the event bus and reach the sink through :func:`audit_forwarder`, so a slow
or failing sink cannot block or fail incident handling.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from irdesk.messaging.bus import EventHandler
from irdesk.messaging.topics import EventEnvelope
from irdesk.models.base import IncidentSeverity

logger = structlog.get_logger()


class AuditSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def audit_severity_for(severity: IncidentSeverity) -> AuditSeverity:
    return {
        IncidentSeverity.LOW: AuditSeverity.INFO,
        IncidentSeverity.MEDIUM: AuditSeverity.WARNING,
        IncidentSeverity.HIGH: AuditSeverity.ERROR,
        IncidentSeverity.CRITICAL: AuditSeverity.CRITICAL,
    }[severity]


class AuditRecord(BaseModel):
    """A structured audit record about one incident operation."""

    id: str = Field(default_factory=lambda: f"aud-{uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    user_id: str
    action: str
    resource_type: str = "incident"
    resource_id: str
    details: dict[str, Any] = Field(default_factory=dict)
    severity: AuditSeverity = AuditSeverity.INFO
    tags: list[str] = Field(default_factory=list)


class AuditSummary(BaseModel):
    """Summary of audit records by action, user and severity."""

    total_records: int = 0
    by_action: dict[str, int] = Field(default_factory=dict)
    by_user: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)


@runtime_checkable
class AuditSink(Protocol):
    """Protocol for persistent audit-log collaborators."""

    async def log_audit(self, record: AuditRecord) -> None: ...


class LogAuditSink:
    """Writes audit records to structlog."""

    async def log_audit(self, record: AuditRecord) -> None:
        logger.info(
            "audit_record",
            audit_id=record.id,
            user_id=record.user_id,
            action=record.action,
            resource_type=record.resource_type,
            resource_id=record.resource_id,
            severity=record.severity,
        )


class InMemoryAuditSink:
    """Stores audit records in-memory for querying."""

    def __init__(self, max_records: int = 50_000) -> None:
        self._records: list[AuditRecord] = []
        self._max_records = max_records

    async def log_audit(self, record: AuditRecord) -> None:
        self._records.append(record)
        if len(self._records) > self._max_records:
            self._records[:] = self._records[-self._max_records :]

    @property
    def records(self) -> list[AuditRecord]:
        return list(self._records)

    def query(
        self,
        action: str | None = None,
        user_id: str | None = None,
        resource_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditRecord]:
        results = self._records
        if action:
            results = [r for r in results if r.action == action]
        if user_id:
            results = [r for r in results if r.user_id == user_id]
        if resource_id:
            results = [r for r in results if r.resource_id == resource_id]
        # Most recent first
        results = list(reversed(results))
        return results[offset : offset + limit]

    def summary(self) -> AuditSummary:
        by_action: dict[str, int] = {}
        by_user: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for r in self._records:
            by_action[r.action] = by_action.get(r.action, 0) + 1
            by_user[r.user_id] = by_user.get(r.user_id, 0) + 1
            by_severity[r.severity] = by_severity.get(r.severity, 0) + 1
        return AuditSummary(
            total_records=len(self._records),
            by_action=by_action,
            by_user=by_user,
            by_severity=by_severity,
        )


def audit_forwarder(sink: AuditSink) -> EventHandler:
    """Bus handler that hands ``audit.record`` envelopes to *sink*."""

    async def _forward(envelope: EventEnvelope) -> None:
        await sink.log_audit(AuditRecord.model_validate(envelope.payload))

    return _forward
