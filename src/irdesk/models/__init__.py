"""Core data models for IRDesk."""

from irdesk.models.base import (
    SYSTEM_ACTOR,
    TERMINAL_STATUSES,
    ActionStatus,
    ActionType,
    ContainmentAction,
    Evidence,
    EvidenceType,
    ExposureRisk,
    ImpactAssessment,
    IncidentEvent,
    IncidentSeverity,
    IncidentSource,
    IncidentStatus,
    IncidentType,
    MemberStatus,
    OperationalImpact,
    ReputationalImpact,
    SecurityIncident,
    TeamMember,
    TeamRole,
    TimelineEventType,
    utc_now,
)

__all__ = [
    "SYSTEM_ACTOR",
    "TERMINAL_STATUSES",
    "ActionStatus",
    "ActionType",
    "ContainmentAction",
    "Evidence",
    "EvidenceType",
    "ExposureRisk",
    "ImpactAssessment",
    "IncidentEvent",
    "IncidentSeverity",
    "IncidentSource",
    "IncidentStatus",
    "IncidentType",
    "MemberStatus",
    "OperationalImpact",
    "ReputationalImpact",
    "SecurityIncident",
    "TeamMember",
    "TeamRole",
    "TimelineEventType",
    "utc_now",
]
