"""Incident event types and the event envelope schema."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

# ── Event types ──────────────────────────────────────────────────────────────

INCIDENT_CREATED = "incident.created"
INCIDENT_STATUS_CHANGED = "incident.status_changed"
INCIDENT_UPDATED = "incident.updated"
INCIDENT_ASSIGNED = "incident.assigned"
RESPONSE_ACTION_EXECUTED = "incident.response_action_executed"
RESPONSE_ACTION_FAILED = "incident.response_action_failed"
INVESTIGATION_STARTED = "incident.investigation_started"
INVESTIGATION_FINDING_ADDED = "incident.investigation_finding_added"
EVIDENCE_COLLECTED = "incident.evidence_collected"
ESCALATION_NEEDED = "incident.escalation_needed"
REPORT_GENERATED = "incident.report_generated"
INCIDENT_PURGED = "incident.purged"
AUDIT_RECORD = "audit.record"

# Events forwarded to the notification channel.
NOTIFICATION_EVENTS: frozenset[str] = frozenset(
    {
        INCIDENT_CREATED,
        INCIDENT_STATUS_CHANGED,
        INCIDENT_ASSIGNED,
        ESCALATION_NEEDED,
        REPORT_GENERATED,
    }
)


# ── Event envelope ───────────────────────────────────────────────────────────


class EventEnvelope(BaseModel):
    """Canonical wrapper for every message on the incident event bus."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    source: str = "irdesk"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
