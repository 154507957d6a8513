"""Incident aggregate and the value types shared across IRDesk components."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

SYSTEM_ACTOR = "system"


def utc_now() -> datetime:
    return datetime.now(UTC)


# --- Enums ---


class IncidentType(StrEnum):
    DATA_BREACH = "data_breach"
    ACCOUNT_COMPROMISE = "account_compromise"
    MALWARE_INFECTION = "malware_infection"
    DENIAL_OF_SERVICE = "denial_of_service"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    POLICY_VIOLATION = "policy_violation"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    DATA_LOSS = "data_loss"
    INSIDER_THREAT = "insider_threat"
    SOCIAL_ENGINEERING = "social_engineering"
    SUPPLY_CHAIN = "supply_chain"
    ZERO_DAY = "zero_day"


class IncidentSeverity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[IncidentSeverity, int] = {
    IncidentSeverity.LOW: 1,
    IncidentSeverity.MEDIUM: 2,
    IncidentSeverity.HIGH: 3,
    IncidentSeverity.CRITICAL: 4,
}


class IncidentStatus(StrEnum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    INVESTIGATING = "investigating"
    CONTAINING = "containing"
    CONTAINED = "contained"
    ERADICATING = "eradicating"
    RECOVERING = "recovering"
    RESOLVED = "resolved"
    CLOSED = "closed"
    FALSE_POSITIVE = "false_positive"


TERMINAL_STATUSES = frozenset({IncidentStatus.CLOSED, IncidentStatus.FALSE_POSITIVE})


class IncidentSource(StrEnum):
    THREAT_DETECTION = "threat_detection"
    USER_REPORT = "user_report"
    AUDIT_ALERT = "audit_alert"
    MONITORING = "monitoring"
    EXTERNAL_REPORT = "external_report"
    VULNERABILITY_SCAN = "vulnerability_scan"
    COMPLIANCE_CHECK = "compliance_check"


class TimelineEventType(StrEnum):
    STATUS_CHANGE = "status_change"
    ACTION_TAKEN = "action_taken"
    EVIDENCE_ADDED = "evidence_added"
    USER_ASSIGNED = "user_assigned"
    NOTE_ADDED = "note_added"
    ESCALATION = "escalation"


class ActionType(StrEnum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class ActionStatus(StrEnum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class EvidenceType(StrEnum):
    LOG = "log"
    SCREENSHOT = "screenshot"
    FILE = "file"
    NETWORK_CAPTURE = "network_capture"
    MEMORY_DUMP = "memory_dump"
    CONFIGURATION = "configuration"


class TeamRole(StrEnum):
    LEAD = "lead"
    INVESTIGATOR = "investigator"
    ANALYST = "analyst"
    MANAGER = "manager"
    LEGAL = "legal"
    COMMUNICATIONS = "communications"


class MemberStatus(StrEnum):
    ACTIVE = "active"
    STANDBY = "standby"
    UNAVAILABLE = "unavailable"


class ExposureRisk(StrEnum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReputationalImpact(StrEnum):
    MINIMAL = "minimal"
    MODERATE = "moderate"
    SIGNIFICANT = "significant"
    SEVERE = "severe"


class OperationalImpact(StrEnum):
    NONE = "none"
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"


# --- Models ---


class IncidentEvent(BaseModel):
    """One append-only entry in an incident's timeline."""

    timestamp: datetime = Field(default_factory=utc_now)
    type: TimelineEventType
    description: str
    performed_by: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class ContainmentAction(BaseModel):
    """A single remediation attempt and its outcome."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: ActionType = ActionType.MANUAL
    action: str
    target: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    status: ActionStatus = ActionStatus.PENDING
    executed_by: str | None = None
    executed_at: datetime | None = None
    completed_at: datetime | None = None
    result: Any = None
    error: str | None = None
    automated_action_id: str | None = None


class Evidence(BaseModel):
    """Forensic evidence item. Immutable once collected."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: EvidenceType
    description: str
    source: str
    collected_by: str
    collected_at: datetime = Field(default_factory=utc_now)
    hash: str | None = None
    data: Any = None
    location: str | None = None


class TeamMember(BaseModel):
    user_id: str
    role: TeamRole
    assigned_at: datetime = Field(default_factory=utc_now)
    responsibilities: list[str] = Field(default_factory=list)
    status: MemberStatus = MemberStatus.ACTIVE


class ImpactAssessment(BaseModel):
    affected_user_count: int = 0
    data_exposure_risk: ExposureRisk = ExposureRisk.LOW
    financial_impact: float = 0.0
    reputational_impact: ReputationalImpact = ReputationalImpact.MINIMAL
    operational_impact: OperationalImpact = OperationalImpact.MINOR
    regulatory_impact: bool = False
    estimated_recovery_hours: int = 24


class SecurityIncident(BaseModel):
    """Aggregate root for a tracked security incident."""

    id: str
    title: str
    description: str = ""
    type: IncidentType
    severity: IncidentSeverity
    status: IncidentStatus = IncidentStatus.OPEN
    source: IncidentSource
    reported_by: str
    affected_users: list[str] = Field(default_factory=list)
    affected_resources: list[str] = Field(default_factory=list)
    containment_actions: list[ContainmentAction] = Field(default_factory=list)
    timeline: list[IncidentEvent] = Field(default_factory=list)
    evidence: list[str] = Field(default_factory=list)
    assigned_to: str | None = None
    team_members: list[TeamMember] = Field(default_factory=list)
    related_incidents: list[str] = Field(default_factory=list)
    threat_indicators: list[str] = Field(default_factory=list)
    risk_score: float = 0.0
    estimated_impact: ImpactAssessment = Field(default_factory=ImpactAssessment)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    contained_at: datetime | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def record_event(
        self,
        event_type: TimelineEventType,
        description: str,
        performed_by: str | None,
        details: dict[str, Any] | None = None,
        *,
        at: datetime | None = None,
    ) -> IncidentEvent:
        """Append a timeline event and bump ``updated_at``."""
        event = IncidentEvent(
            timestamp=at or utc_now(),
            type=event_type,
            description=description,
            performed_by=performed_by,
            details=details or {},
        )
        self.timeline.append(event)
        self.updated_at = event.timestamp
        return event

    def find_action(self, action_id: str) -> ContainmentAction | None:
        for a in self.containment_actions:
            if a.id == action_id:
                return a
        return None
