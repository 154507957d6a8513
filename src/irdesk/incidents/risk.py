"""Risk and impact assessment for security incidents.

Pure functions: the same ``(type, severity, affected users)`` input always
produces the same score and assessment. Scores are recomputed from scratch
whenever the classification of an incident changes, never accumulated.
"""

from __future__ import annotations

from collections.abc import Sequence

from irdesk.models.base import (
    ExposureRisk,
    ImpactAssessment,
    IncidentSeverity,
    IncidentType,
    OperationalImpact,
    ReputationalImpact,
)

MAX_RISK_SCORE = 100.0

TYPE_BASE_SCORES: dict[IncidentType, float] = {
    IncidentType.DATA_BREACH: 90,
    IncidentType.ACCOUNT_COMPROMISE: 70,
    IncidentType.MALWARE_INFECTION: 80,
    IncidentType.DENIAL_OF_SERVICE: 60,
    IncidentType.PRIVILEGE_ESCALATION: 85,
    IncidentType.POLICY_VIOLATION: 40,
    IncidentType.UNAUTHORIZED_ACCESS: 75,
    IncidentType.DATA_LOSS: 85,
    IncidentType.INSIDER_THREAT: 80,
    IncidentType.SOCIAL_ENGINEERING: 65,
    IncidentType.SUPPLY_CHAIN: 75,
    IncidentType.ZERO_DAY: 95,
}

SEVERITY_MULTIPLIERS: dict[IncidentSeverity, float] = {
    IncidentSeverity.CRITICAL: 1.2,
    IncidentSeverity.HIGH: 1.0,
    IncidentSeverity.MEDIUM: 0.7,
    IncidentSeverity.LOW: 0.4,
}

BASE_FINANCIAL_COST: dict[IncidentType, float] = {
    IncidentType.DATA_BREACH: 100_000,
    IncidentType.ACCOUNT_COMPROMISE: 10_000,
    IncidentType.MALWARE_INFECTION: 50_000,
    IncidentType.DENIAL_OF_SERVICE: 30_000,
    IncidentType.PRIVILEGE_ESCALATION: 40_000,
    IncidentType.POLICY_VIOLATION: 5_000,
    IncidentType.UNAUTHORIZED_ACCESS: 20_000,
    IncidentType.DATA_LOSS: 80_000,
    IncidentType.INSIDER_THREAT: 60_000,
    IncidentType.SOCIAL_ENGINEERING: 25_000,
    IncidentType.SUPPLY_CHAIN: 70_000,
    IncidentType.ZERO_DAY: 150_000,
}

RECOVERY_HOURS: dict[IncidentSeverity, int] = {
    IncidentSeverity.CRITICAL: 72,
    IncidentSeverity.HIGH: 48,
    IncidentSeverity.MEDIUM: 24,
    IncidentSeverity.LOW: 8,
}

REGULATED_TYPES = frozenset({IncidentType.DATA_BREACH, IncidentType.DATA_LOSS})


def calculate_risk_score(incident_type: IncidentType, severity: IncidentSeverity) -> float:
    """Return ``type_base_score * severity_multiplier`` clamped to 100."""
    score = TYPE_BASE_SCORES[incident_type] * SEVERITY_MULTIPLIERS[severity]
    return round(min(MAX_RISK_SCORE, score), 2)


def assess_data_exposure(incident_type: IncidentType, severity: IncidentSeverity) -> ExposureRisk:
    if incident_type == IncidentType.DATA_BREACH:
        return ExposureRisk.CRITICAL if severity == IncidentSeverity.CRITICAL else ExposureRisk.HIGH
    return ExposureRisk.LOW


def assess_reputational_impact(severity: IncidentSeverity) -> ReputationalImpact:
    return {
        IncidentSeverity.CRITICAL: ReputationalImpact.SEVERE,
        IncidentSeverity.HIGH: ReputationalImpact.SIGNIFICANT,
        IncidentSeverity.MEDIUM: ReputationalImpact.MODERATE,
        IncidentSeverity.LOW: ReputationalImpact.MINIMAL,
    }[severity]


def assess_operational_impact(incident_type: IncidentType) -> OperationalImpact:
    if incident_type == IncidentType.DENIAL_OF_SERVICE:
        return OperationalImpact.MAJOR
    if incident_type == IncidentType.MALWARE_INFECTION:
        return OperationalImpact.MODERATE
    return OperationalImpact.MINOR


def assess_impact(
    incident_type: IncidentType,
    severity: IncidentSeverity,
    affected_users: Sequence[str] = (),
) -> ImpactAssessment:
    """Build the impact assessment for an incident classification."""
    return ImpactAssessment(
        affected_user_count=len(affected_users),
        data_exposure_risk=assess_data_exposure(incident_type, severity),
        financial_impact=BASE_FINANCIAL_COST.get(incident_type, 10_000),
        reputational_impact=assess_reputational_impact(severity),
        operational_impact=assess_operational_impact(incident_type),
        regulatory_impact=incident_type in REGULATED_TYPES,
        estimated_recovery_hours=RECOVERY_HOURS.get(severity, 24),
    )
