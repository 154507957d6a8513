"""Tests for risk scoring and impact assessment."""

from __future__ import annotations

import pytest

from irdesk.incidents.risk import (
    MAX_RISK_SCORE,
    assess_data_exposure,
    assess_impact,
    assess_operational_impact,
    assess_reputational_impact,
    calculate_risk_score,
)
from irdesk.models.base import (
    ExposureRisk,
    IncidentSeverity,
    IncidentType,
    OperationalImpact,
    ReputationalImpact,
)

# ===========================================================================
# calculate_risk_score
# ===========================================================================


class TestRiskScore:
    def test_high_severity_uses_base_score(self):
        assert calculate_risk_score(IncidentType.DATA_BREACH, IncidentSeverity.HIGH) == 90.0

    def test_critical_is_clamped_to_maximum(self):
        # 90 * 1.2 = 108
        assert (
            calculate_risk_score(IncidentType.DATA_BREACH, IncidentSeverity.CRITICAL)
            == MAX_RISK_SCORE
        )

    def test_low_severity_multiplier(self):
        assert calculate_risk_score(IncidentType.POLICY_VIOLATION, IncidentSeverity.LOW) == 16.0

    def test_medium_severity_multiplier(self):
        score = calculate_risk_score(IncidentType.ACCOUNT_COMPROMISE, IncidentSeverity.MEDIUM)
        assert score == 49.0
        assert calculate_risk_score(IncidentType.ZERO_DAY, IncidentSeverity.MEDIUM) == 66.5

    @pytest.mark.parametrize("incident_type", list(IncidentType))
    @pytest.mark.parametrize("severity", list(IncidentSeverity))
    def test_score_always_in_range(self, incident_type, severity):
        score = calculate_risk_score(incident_type, severity)
        assert 0.0 <= score <= MAX_RISK_SCORE

    def test_deterministic(self):
        first = calculate_risk_score(IncidentType.INSIDER_THREAT, IncidentSeverity.HIGH)
        second = calculate_risk_score(IncidentType.INSIDER_THREAT, IncidentSeverity.HIGH)
        assert first == second


# ===========================================================================
# Impact assessment
# ===========================================================================


class TestImpactAssessment:
    def test_critical_data_breach(self):
        impact = assess_impact(
            IncidentType.DATA_BREACH, IncidentSeverity.CRITICAL, ["u1", "u2", "u3"]
        )
        assert impact.affected_user_count == 3
        assert impact.data_exposure_risk == ExposureRisk.CRITICAL
        assert impact.reputational_impact == ReputationalImpact.SEVERE
        assert impact.operational_impact == OperationalImpact.MINOR
        assert impact.regulatory_impact is True
        assert impact.financial_impact == 100_000
        assert impact.estimated_recovery_hours == 72

    def test_high_data_breach_exposure(self):
        assert (
            assess_data_exposure(IncidentType.DATA_BREACH, IncidentSeverity.HIGH)
            == ExposureRisk.HIGH
        )

    def test_non_breach_exposure_is_low(self):
        assert (
            assess_data_exposure(IncidentType.MALWARE_INFECTION, IncidentSeverity.CRITICAL)
            == ExposureRisk.LOW
        )

    def test_data_loss_is_regulated(self):
        impact = assess_impact(IncidentType.DATA_LOSS, IncidentSeverity.MEDIUM)
        assert impact.regulatory_impact is True
        assert impact.estimated_recovery_hours == 24

    def test_account_compromise_not_regulated(self):
        impact = assess_impact(IncidentType.ACCOUNT_COMPROMISE, IncidentSeverity.LOW)
        assert impact.regulatory_impact is False
        assert impact.affected_user_count == 0
        assert impact.estimated_recovery_hours == 8
        assert impact.reputational_impact == ReputationalImpact.MINIMAL

    def test_operational_impact_by_type(self):
        assert (
            assess_operational_impact(IncidentType.DENIAL_OF_SERVICE) == OperationalImpact.MAJOR
        )
        assert (
            assess_operational_impact(IncidentType.MALWARE_INFECTION)
            == OperationalImpact.MODERATE
        )
        assert assess_operational_impact(IncidentType.ZERO_DAY) == OperationalImpact.MINOR

    def test_reputational_impact_by_severity(self):
        assert assess_reputational_impact(IncidentSeverity.HIGH) == ReputationalImpact.SIGNIFICANT
        assert assess_reputational_impact(IncidentSeverity.MEDIUM) == ReputationalImpact.MODERATE

    def test_same_input_same_assessment(self):
        a = assess_impact(IncidentType.SUPPLY_CHAIN, IncidentSeverity.HIGH, ["u1"])
        b = assess_impact(IncidentType.SUPPLY_CHAIN, IncidentSeverity.HIGH, ["u1"])
        assert a == b
