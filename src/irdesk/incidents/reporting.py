"""Reporting engine: compiles an incident's history into a classified report.

Reports are point-in-time documents. Each generation stores a new report;
nothing is overwritten, and the version counter increments per
``(incident, report type)`` pair.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from irdesk.incidents.investigation import Confidence, FindingType, InvestigationContext
from irdesk.models.base import (
    ContainmentAction,
    ImpactAssessment,
    IncidentEvent,
    IncidentType,
    SecurityIncident,
    utc_now,
)

logger = structlog.get_logger()


class ReportType(StrEnum):
    EXECUTIVE = "executive"
    TECHNICAL = "technical"
    REGULATORY = "regulatory"
    CUSTOMER = "customer"
    POSTMORTEM = "postmortem"


class Classification(StrEnum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"


class ComplianceFramework(StrEnum):
    GDPR = "GDPR"
    CCPA = "CCPA"
    HIPAA = "HIPAA"
    PCI_DSS = "PCI_DSS"


REPORT_DISTRIBUTION: dict[ReportType, list[str]] = {
    ReportType.EXECUTIVE: ["ciso", "executive_team"],
    ReportType.TECHNICAL: ["security_team", "it_team"],
    ReportType.REGULATORY: ["compliance_team", "legal_team"],
    ReportType.CUSTOMER: ["customer_success", "public_relations"],
    ReportType.POSTMORTEM: ["all_stakeholders"],
}

REPORT_CLASSIFICATION: dict[ReportType, Classification] = {
    ReportType.EXECUTIVE: Classification.CONFIDENTIAL,
    ReportType.TECHNICAL: Classification.INTERNAL,
    ReportType.REGULATORY: Classification.RESTRICTED,
    ReportType.CUSTOMER: Classification.PUBLIC,
    ReportType.POSTMORTEM: Classification.INTERNAL,
}

TYPE_RECOMMENDATIONS: dict[IncidentType, list[str]] = {
    IncidentType.DATA_BREACH: [
        "Review and enhance data access controls",
        "Implement data loss prevention (DLP) solutions",
        "Conduct security awareness training",
    ],
    IncidentType.ACCOUNT_COMPROMISE: [
        "Enforce multi-factor authentication",
        "Implement stronger password policies",
        "Deploy user behavior analytics",
    ],
    IncidentType.MALWARE_INFECTION: [
        "Update endpoint detection signatures",
        "Restrict execution of unsigned binaries",
        "Review patch levels on affected hosts",
    ],
    IncidentType.DENIAL_OF_SERVICE: [
        "Tune rate limits on public endpoints",
        "Engage upstream DDoS scrubbing",
        "Add capacity alerts for traffic spikes",
    ],
    IncidentType.PRIVILEGE_ESCALATION: [
        "Audit role assignments for least privilege",
        "Alert on privilege changes outside change windows",
    ],
    IncidentType.POLICY_VIOLATION: [
        "Clarify and republish the violated policy",
        "Add automated policy checks to onboarding",
    ],
    IncidentType.UNAUTHORIZED_ACCESS: [
        "Review network segmentation",
        "Tighten access review cadence",
    ],
    IncidentType.DATA_LOSS: [
        "Verify backup coverage and restore drills",
        "Classify and label sensitive data stores",
    ],
    IncidentType.INSIDER_THREAT: [
        "Strengthen user activity monitoring",
        "Enforce separation of duties on sensitive operations",
    ],
    IncidentType.SOCIAL_ENGINEERING: [
        "Run phishing simulation exercises",
        "Add out-of-band verification for payment and credential requests",
    ],
    IncidentType.SUPPLY_CHAIN: [
        "Pin and verify third-party dependencies",
        "Review vendor security assessments",
    ],
    IncidentType.ZERO_DAY: [
        "Apply vendor mitigations as soon as released",
        "Increase monitoring on the affected component",
    ],
}


class ComplianceNotification(BaseModel):
    framework: ComplianceFramework
    required: bool = True
    deadline: datetime | None = None
    template: str
    authorities: list[str] = Field(default_factory=list)
    submitted: bool = False


# framework -> (deadline after detection, template id, authorities)
_FRAMEWORK_RULES: dict[ComplianceFramework, tuple[timedelta | None, str, list[str]]] = {
    ComplianceFramework.GDPR: (
        timedelta(hours=72),
        "gdpr_article_33_notification",
        ["Data Protection Authority"],
    ),
    ComplianceFramework.CCPA: (
        None,
        "ccpa_consumer_notification",
        ["California Attorney General"],
    ),
    ComplianceFramework.HIPAA: (
        timedelta(days=60),
        "hipaa_breach_notification",
        ["HHS Office for Civil Rights"],
    ),
    ComplianceFramework.PCI_DSS: (
        None,
        "pci_dss_incident_notification",
        ["Acquiring Bank", "Card Brands"],
    ),
}

REGULATORY_FRAMEWORKS: dict[IncidentType, tuple[ComplianceFramework, ...]] = {
    IncidentType.DATA_BREACH: (
        ComplianceFramework.GDPR,
        ComplianceFramework.CCPA,
        ComplianceFramework.HIPAA,
        ComplianceFramework.PCI_DSS,
    ),
    IncidentType.DATA_LOSS: (
        ComplianceFramework.GDPR,
        ComplianceFramework.CCPA,
        ComplianceFramework.HIPAA,
    ),
}


def required_notifications(incident: SecurityIncident) -> list[ComplianceNotification]:
    """Regulator notifications owed for *incident*, deadlines from detection time."""
    if not incident.estimated_impact.regulatory_impact:
        return []
    frameworks = REGULATORY_FRAMEWORKS.get(incident.type, (ComplianceFramework.GDPR,))
    notifications = []
    for framework in frameworks:
        window, template, authorities = _FRAMEWORK_RULES[framework]
        notifications.append(
            ComplianceNotification(
                framework=framework,
                deadline=incident.created_at + window if window is not None else None,
                template=template,
                authorities=list(authorities),
            )
        )
    return notifications


class ReportContent(BaseModel):
    executive_summary: str
    incident_details: dict[str, Any]
    timeline: list[IncidentEvent]
    impact: ImpactAssessment
    root_cause: str | None = None
    containment_actions: list[ContainmentAction] = Field(default_factory=list)
    remediation_steps: list[dict[str, Any]] = Field(default_factory=list)
    lessons_learned: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    compliance_notifications: list[ComplianceNotification] = Field(default_factory=list)


class IncidentReport(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    incident_id: str
    type: ReportType
    generated_at: datetime
    generated_by: str
    content: ReportContent
    distribution: list[str]
    classification: Classification
    version: int


def executive_summary(incident: SecurityIncident) -> str:
    return (
        f"Security incident {incident.id} ({incident.type.value}) was detected on "
        f"{incident.created_at.isoformat()}. The incident has been classified as "
        f"{incident.severity.value} severity with a risk score of {incident.risk_score}. "
        f"Current status: {incident.status.value}. Impact: {len(incident.affected_users)} "
        f"users and {len(incident.affected_resources)} resources affected."
    )


def incident_duration_minutes(incident: SecurityIncident, now: datetime) -> int:
    end = incident.closed_at or incident.resolved_at or now
    return int((end - incident.created_at).total_seconds() // 60)


def recommendations_for(
    incident: SecurityIncident, investigation: InvestigationContext | None
) -> list[str]:
    recs = list(TYPE_RECOMMENDATIONS.get(incident.type, []))
    if investigation is not None:
        recs.extend(r for r in investigation.recommendations if r not in recs)
    return recs


# Finding types that describe how the incident happened.
LESSON_LABELS: dict[FindingType, str] = {
    FindingType.ROOT_CAUSE: "Root cause",
    FindingType.ATTACK_VECTOR: "Attack vector",
    FindingType.VULNERABILITY: "Vulnerability",
}


def lessons_learned(investigation: InvestigationContext | None) -> list[str]:
    """One lesson per medium or high confidence causal finding, oldest first."""
    if investigation is None:
        return []
    lessons: list[str] = []
    for finding in investigation.findings:
        label = LESSON_LABELS.get(finding.type)
        if label is None or finding.confidence == Confidence.LOW:
            continue
        lesson = f"{label}: {finding.description}"
        if finding.impact:
            lesson += f" (impact: {finding.impact})"
        lessons.append(lesson)
    return lessons


class ReportingEngine:
    """Builds and retains incident reports."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._reports: dict[str, list[IncidentReport]] = {}
        self._versions: dict[tuple[str, ReportType], int] = {}

    def compile(
        self,
        incident: SecurityIncident,
        report_type: ReportType,
        generated_by: str,
        investigation: InvestigationContext | None = None,
    ) -> IncidentReport:
        """Generate and store a new version of *report_type* for *incident*."""
        now = self._clock()
        root_cause = None
        if investigation is not None:
            root_cause = investigation.root_cause()
        if root_cause is None:
            root_cause = incident.metadata.get("root_cause")

        content = ReportContent(
            executive_summary=executive_summary(incident),
            incident_details={
                "id": incident.id,
                "title": incident.title,
                "type": incident.type.value,
                "severity": incident.severity.value,
                "status": incident.status.value,
                "duration_minutes": incident_duration_minutes(incident, now),
                "affected_users": len(incident.affected_users),
                "affected_resources": list(incident.affected_resources),
                "risk_score": incident.risk_score,
            },
            timeline=[e.model_copy(deep=True) for e in incident.timeline],
            impact=incident.estimated_impact.model_copy(),
            root_cause=root_cause,
            containment_actions=[a.model_copy(deep=True) for a in incident.containment_actions],
            remediation_steps=list(incident.metadata.get("remediations", [])),
            lessons_learned=lessons_learned(investigation),
            recommendations=recommendations_for(incident, investigation),
            compliance_notifications=(
                required_notifications(incident) if report_type == ReportType.REGULATORY else []
            ),
        )
        key = (incident.id, report_type)
        version = self._versions.get(key, 0) + 1
        self._versions[key] = version
        report = IncidentReport(
            incident_id=incident.id,
            type=report_type,
            generated_at=now,
            generated_by=generated_by,
            content=content,
            distribution=list(REPORT_DISTRIBUTION[report_type]),
            classification=REPORT_CLASSIFICATION[report_type],
            version=version,
        )
        self._reports.setdefault(incident.id, []).append(report)
        logger.info(
            "reporting_engine.report_generated",
            incident_id=incident.id,
            report_id=report.id,
            report_type=report_type,
            version=version,
        )
        return report

    def reports_for(
        self, incident_id: str, report_type: ReportType | None = None
    ) -> list[IncidentReport]:
        reports = self._reports.get(incident_id, [])
        if report_type is not None:
            reports = [r for r in reports if r.type == report_type]
        return list(reports)

    def remove_incident(self, incident_id: str) -> int:
        for key in [k for k in self._versions if k[0] == incident_id]:
            del self._versions[key]
        return len(self._reports.pop(incident_id, []))

    def purge_older_than(self, cutoff: datetime) -> int:
        """Drop reports generated before *cutoff*. Returns the number removed."""
        removed = 0
        for incident_id in list(self._reports):
            kept = [r for r in self._reports[incident_id] if r.generated_at >= cutoff]
            removed += len(self._reports[incident_id]) - len(kept)
            if kept:
                self._reports[incident_id] = kept
            else:
                del self._reports[incident_id]
        if removed:
            logger.info("reporting_engine.reports_purged", count=removed, cutoff=cutoff.isoformat())
        return removed

    def __len__(self) -> int:
        return sum(len(v) for v in self._reports.values())
