"""Adapters turning external detection feeds into incidents.

Three feeds seed incidents: threat detection (high/critical threats only),
compliance checks (critical violations only) and the breach monitor
(always a critical data breach).
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, Field

from irdesk.incidents.evidence import EvidenceInput
from irdesk.incidents.manager import IncidentCreate, IncidentResponseManager
from irdesk.models.base import (
    SYSTEM_ACTOR,
    EvidenceType,
    IncidentSeverity,
    IncidentSource,
    IncidentType,
    SecurityIncident,
)

logger = structlog.get_logger()

THREAT_TYPE_MAP: dict[str, IncidentType] = {
    "brute_force": IncidentType.ACCOUNT_COMPROMISE,
    "credential_stuffing": IncidentType.ACCOUNT_COMPROMISE,
    "privilege_escalation": IncidentType.PRIVILEGE_ESCALATION,
    "data_exfiltration": IncidentType.DATA_BREACH,
    "malware": IncidentType.MALWARE_INFECTION,
    "ransomware": IncidentType.MALWARE_INFECTION,
    "dos": IncidentType.DENIAL_OF_SERVICE,
    "ddos": IncidentType.DENIAL_OF_SERVICE,
    "phishing": IncidentType.SOCIAL_ENGINEERING,
}

THREAT_SEVERITY_MAP: dict[str, IncidentSeverity] = {
    "critical": IncidentSeverity.CRITICAL,
    "high": IncidentSeverity.HIGH,
    "medium": IncidentSeverity.MEDIUM,
    "low": IncidentSeverity.LOW,
}

# Compliance findings are rated one tier lower as incidents.
COMPLIANCE_SEVERITY_MAP: dict[str, IncidentSeverity] = {
    "critical": IncidentSeverity.HIGH,
    "high": IncidentSeverity.MEDIUM,
    "medium": IncidentSeverity.LOW,
    "low": IncidentSeverity.LOW,
}

INCIDENT_WORTHY_THREATS = frozenset({"critical", "high"})


class ThreatEvent(BaseModel):
    id: str
    type: str
    severity: str
    description: str = ""
    user_id: str | None = None
    indicators: list[str] = Field(default_factory=list)
    evidence: list[Any] = Field(default_factory=list)


class ComplianceViolation(BaseModel):
    id: str
    rule: str
    severity: str
    description: str = ""


class BreachEvent(BaseModel):
    description: str = ""
    affected_users: list[str] = Field(default_factory=list)
    affected_resources: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


def map_threat_type(threat_type: str) -> IncidentType:
    return THREAT_TYPE_MAP.get(threat_type.lower(), IncidentType.UNAUTHORIZED_ACCESS)


def map_threat_severity(severity: str) -> IncidentSeverity:
    return THREAT_SEVERITY_MAP.get(severity.lower(), IncidentSeverity.MEDIUM)


def map_compliance_severity(severity: str) -> IncidentSeverity:
    return COMPLIANCE_SEVERITY_MAP.get(severity.lower(), IncidentSeverity.LOW)


def threat_to_incident(threat: ThreatEvent) -> IncidentCreate:
    return IncidentCreate(
        title=f"Threat Detected: {threat.type}",
        description=threat.description,
        type=map_threat_type(threat.type),
        severity=map_threat_severity(threat.severity),
        source=IncidentSource.THREAT_DETECTION,
        reported_by=SYSTEM_ACTOR,
        affected_users=[threat.user_id] if threat.user_id else [],
        evidence=[
            EvidenceInput(
                type=EvidenceType.LOG,
                description=f"Threat detection evidence for {threat.id}",
                source=IncidentSource.THREAT_DETECTION.value,
                data=item,
            )
            for item in threat.evidence
        ],
        threat_indicators=list(threat.indicators),
        metadata={"threat_id": threat.id, "threat_type": threat.type},
    )


def violation_to_incident(violation: ComplianceViolation) -> IncidentCreate:
    return IncidentCreate(
        title=f"Compliance Violation: {violation.rule}",
        description=violation.description,
        type=IncidentType.POLICY_VIOLATION,
        severity=map_compliance_severity(violation.severity),
        source=IncidentSource.COMPLIANCE_CHECK,
        reported_by=SYSTEM_ACTOR,
        metadata={"violation_id": violation.id, "compliance_rule": violation.rule},
    )


def breach_to_incident(breach: BreachEvent) -> IncidentCreate:
    return IncidentCreate(
        title="Security Breach Detected",
        description=breach.description or "A security breach has been detected",
        type=IncidentType.DATA_BREACH,
        severity=IncidentSeverity.CRITICAL,
        source=IncidentSource.MONITORING,
        reported_by=SYSTEM_ACTOR,
        affected_users=list(breach.affected_users),
        affected_resources=list(breach.affected_resources),
        metadata={"breach": breach.details},
    )


class FeedIngestor:
    """Entry point for the external feeds. Filters, maps, then creates."""

    def __init__(self, manager: IncidentResponseManager) -> None:
        self._manager = manager

    async def ingest_threat(self, threat: ThreatEvent) -> SecurityIncident | None:
        if threat.severity.lower() not in INCIDENT_WORTHY_THREATS:
            logger.debug(
                "feed_ingestor.threat_ignored", threat_id=threat.id, severity=threat.severity
            )
            return None
        incident = await self._manager.create_incident(threat_to_incident(threat))
        logger.info("feed_ingestor.threat_ingested", threat_id=threat.id, incident_id=incident.id)
        return incident

    async def ingest_compliance_violation(
        self, violation: ComplianceViolation
    ) -> SecurityIncident | None:
        if violation.severity.lower() != "critical":
            logger.debug(
                "feed_ingestor.violation_ignored",
                violation_id=violation.id,
                severity=violation.severity,
            )
            return None
        incident = await self._manager.create_incident(violation_to_incident(violation))
        logger.info(
            "feed_ingestor.violation_ingested", violation_id=violation.id, incident_id=incident.id
        )
        return incident

    async def ingest_breach(self, breach: BreachEvent) -> SecurityIncident:
        incident = await self._manager.create_incident(breach_to_incident(breach))
        logger.info("feed_ingestor.breach_ingested", incident_id=incident.id)
        return incident
