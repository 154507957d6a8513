"""Tests for the incident response manager."""

from __future__ import annotations

import asyncio

import pytest

from irdesk.api.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    UnknownActionError,
    ValidationError,
)
from irdesk.incidents.containment import ActionRequest, ContainmentExecutor
from irdesk.incidents.escalation import EscalationLevel
from irdesk.incidents.evidence import EvidenceInput
from irdesk.incidents.investigation import Confidence, FindingInput, FindingType, Hypothesis
from irdesk.incidents.manager import (
    AUTO_ACTIONS_KEY,
    IncidentResponseManager,
    generate_incident_id,
)
from irdesk.incidents.reporting import ReportType
from irdesk.messaging.topics import (
    AUDIT_RECORD,
    ESCALATION_NEEDED,
    EVIDENCE_COLLECTED,
    INCIDENT_CREATED,
    INCIDENT_STATUS_CHANGED,
    INCIDENT_UPDATED,
    RESPONSE_ACTION_EXECUTED,
    RESPONSE_ACTION_FAILED,
)
from irdesk.models.base import (
    SYSTEM_ACTOR,
    ActionStatus,
    ActionType,
    EvidenceType,
    IncidentSeverity,
    IncidentStatus,
    IncidentType,
    TeamRole,
    TimelineEventType,
)

# =========================================================================
# Helpers
# =========================================================================


def _breach(make_request, **overrides):
    fields = {
        "type": IncidentType.DATA_BREACH,
        "severity": IncidentSeverity.HIGH,
        "affected_users": ["cust-1", "cust-2"],
    }
    fields.update(overrides)
    return make_request(**fields)


def _log_evidence(data=None) -> EvidenceInput:
    return EvidenceInput(
        type=EvidenceType.LOG,
        description="Bucket access log",
        source="s3",
        data=data if data is not None else {"requests": 1200},
    )


# =========================================================================
# Creation
# =========================================================================


class TestCreateIncident:
    def test_incident_id_format(self, clock):
        incident_id = generate_incident_id(clock())
        prefix, stamp, suffix = incident_id.split("-")
        assert prefix == "INC"
        assert stamp.isalnum() and stamp.isupper()
        assert len(suffix) == 3

    @pytest.mark.asyncio
    async def test_create_low_severity(self, manager, make_request, clock):
        incident = await manager.create_incident(make_request())
        assert incident.status == IncidentStatus.OPEN
        assert incident.created_at == clock()
        assert incident.risk_score == 28.0
        assert incident.containment_actions == []
        [event] = incident.timeline
        assert event.type == TimelineEventType.STATUS_CHANGE
        assert event.performed_by == "analyst-1"
        assert await manager.get_incident(incident.id) == incident

    @pytest.mark.asyncio
    async def test_initial_evidence_is_sealed(self, manager, make_request):
        incident = await manager.create_incident(make_request(evidence=[_log_evidence()]))
        [evidence] = await manager.get_evidence(incident.id)
        assert incident.evidence == [evidence.id]
        assert evidence.hash is not None
        assert evidence.collected_by == "analyst-1"

    @pytest.mark.asyncio
    async def test_threat_indicators_deduplicated(self, manager, make_request):
        incident = await manager.create_incident(
            make_request(threat_indicators=["1.2.3.4", "evil.example", "1.2.3.4"])
        )
        assert incident.threat_indicators == ["1.2.3.4", "evil.example"]

    @pytest.mark.asyncio
    async def test_playbook_recorded(self, manager, make_request):
        incident = await manager.create_incident(_breach(make_request))
        assert incident.metadata["playbook_id"] == "pb-001"

    @pytest.mark.asyncio
    async def test_get_unknown_incident(self, manager):
        with pytest.raises(NotFoundError):
            await manager.get_incident("INC-NOPE")

    @pytest.mark.asyncio
    async def test_events_published(self, manager, make_request, bus, recorder):
        incident = await manager.create_incident(make_request())
        await bus.drain()
        [created] = recorder.of_type(INCIDENT_CREATED)
        assert created.payload["incident_id"] == incident.id
        assert created.correlation_id == incident.id
        [audit] = recorder.of_type(AUDIT_RECORD)
        assert audit.payload["action"] == "incident_created"


# =========================================================================
# Automatic containment
# =========================================================================


class TestAutoContainment:
    @pytest.mark.asyncio
    async def test_immediate_actions_run_on_creation(self, manager, make_request):
        incident = await manager.create_incident(_breach(make_request))
        [action] = incident.containment_actions
        assert action.action == "lockdown_affected_accounts"
        assert action.type == ActionType.AUTOMATIC
        assert action.status == ActionStatus.COMPLETED
        assert action.executed_by == SYSTEM_ACTOR
        assert action.automated_action_id == "auto-001"
        assert action.result["locked_accounts"] == ["cust-1", "cust-2"]
        assert incident.metadata[AUTO_ACTIONS_KEY] == ["auto-001"]
        assert incident.status == IncidentStatus.OPEN

    @pytest.mark.asyncio
    async def test_below_threshold_no_actions(self, manager, make_request):
        incident = await manager.create_incident(
            _breach(make_request, severity=IncidentSeverity.LOW)
        )
        assert incident.containment_actions == []

    @pytest.mark.asyncio
    async def test_disabled(self, settings, bus, clock, make_request):
        settings.auto_containment_enabled = False
        manager = IncidentResponseManager(settings=settings, bus=bus, clock=clock)
        incident = await manager.create_incident(_breach(make_request))
        assert incident.containment_actions == []

    @pytest.mark.asyncio
    async def test_automated_action_runs_once(self, manager, make_request):
        incident = await manager.create_incident(_breach(make_request))
        assert await manager.execute_auto_containment(incident.id) == []
        refreshed = await manager.get_incident(incident.id)
        assert len(refreshed.containment_actions) == 1

    @pytest.mark.asyncio
    async def test_conditional_actions(self, manager, make_request):
        incident = await manager.create_incident(_breach(make_request))
        assert await manager.trigger_conditional_actions(incident.id, "unrelated") == []

        [action] = await manager.trigger_conditional_actions(
            incident.id, "data_exfiltration_detected"
        )
        assert action.action == "block_outbound_traffic"
        assert action.automated_action_id == "auto-002"
        assert (
            await manager.trigger_conditional_actions(incident.id, "data_exfiltration_detected")
            == []
        )

    @pytest.mark.asyncio
    async def test_auto_action_cap(self, settings, bus, clock, make_request):
        settings.max_auto_actions = 1
        manager = IncidentResponseManager(settings=settings, bus=bus, clock=clock)
        incident = await manager.create_incident(_breach(make_request))
        assert (
            await manager.trigger_conditional_actions(incident.id, "data_exfiltration_detected")
            == []
        )
        refreshed = await manager.get_incident(incident.id)
        assert refreshed.metadata[AUTO_ACTIONS_KEY] == ["auto-001"]

    @pytest.mark.asyncio
    async def test_failed_auto_action_keeps_incident(
        self, settings, bus, clock, make_request, recorder
    ):
        async def broken(request):
            raise RuntimeError("iam unavailable")

        executor = ContainmentExecutor({"lockdown_affected_accounts": broken})
        manager = IncidentResponseManager(
            settings=settings, bus=bus, clock=clock, executor=executor
        )
        incident = await manager.create_incident(_breach(make_request))
        [action] = incident.containment_actions
        assert action.status == ActionStatus.FAILED
        assert action.error == "iam unavailable"
        await bus.drain()
        assert len(recorder.of_type(RESPONSE_ACTION_FAILED)) == 1
        assert not any(e.type == TimelineEventType.ACTION_TAKEN for e in incident.timeline)

    @pytest.mark.asyncio
    async def test_missing_handler_skipped(self, settings, bus, clock, make_request):
        executor = ContainmentExecutor(include_defaults=False)
        manager = IncidentResponseManager(
            settings=settings, bus=bus, clock=clock, executor=executor
        )
        incident = await manager.create_incident(_breach(make_request))
        assert incident.containment_actions == []
        assert AUTO_ACTIONS_KEY not in incident.metadata


# =========================================================================
# Manual response actions
# =========================================================================


class TestResponseActions:
    @pytest.mark.asyncio
    async def test_manual_action(self, manager, make_request, bus, recorder):
        incident = await manager.create_incident(make_request())
        action = await manager.execute_response_action(
            incident.id, ActionRequest(action="block_ip", target="203.0.113.7"), "analyst-2"
        )
        assert action.status == ActionStatus.COMPLETED
        assert action.type == ActionType.MANUAL
        assert action.result == {"blocked_ip": "203.0.113.7"}
        assert action.executed_by == "analyst-2"

        refreshed = await manager.get_incident(incident.id)
        assert refreshed.timeline[-1].type == TimelineEventType.ACTION_TAKEN
        await bus.drain()
        assert len(recorder.of_type(RESPONSE_ACTION_EXECUTED)) == 1

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        with pytest.raises(UnknownActionError):
            await manager.execute_response_action(
                incident.id, ActionRequest(action="wipe_datacenter", target="dc-1"), "analyst-2"
            )
        refreshed = await manager.get_incident(incident.id)
        assert refreshed.containment_actions == []

    @pytest.mark.asyncio
    async def test_unknown_incident(self, manager):
        with pytest.raises(NotFoundError):
            await manager.execute_response_action(
                "INC-NOPE", ActionRequest(action="block_ip", target="x"), "analyst-2"
            )

    @pytest.mark.asyncio
    async def test_lock_released_while_handler_runs(self, settings, bus, clock, make_request):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(request):
            started.set()
            await release.wait()
            return {"ok": True}

        manager = IncidentResponseManager(
            settings=settings, bus=bus, clock=clock, executor=ContainmentExecutor({"slow": slow})
        )
        incident = await manager.create_incident(make_request())
        task = asyncio.create_task(
            manager.execute_response_action(
                incident.id, ActionRequest(action="slow", target="host-1"), "analyst-2"
            )
        )
        await started.wait()
        pending = await manager.get_incident(incident.id)
        assert pending.containment_actions[0].status == ActionStatus.EXECUTING

        await manager.add_note(incident.id, "waiting on EDR", "analyst-3")
        release.set()
        action = await task
        assert action.status == ActionStatus.COMPLETED

        refreshed = await manager.get_incident(incident.id)
        assert [e.type for e in refreshed.timeline[-2:]] == [
            TimelineEventType.NOTE_ADDED,
            TimelineEventType.ACTION_TAKEN,
        ]

    @pytest.mark.asyncio
    async def test_cancellation_recorded_as_failed(self, settings, bus, clock, make_request):
        started = asyncio.Event()

        async def hang(request):
            started.set()
            await asyncio.Event().wait()

        manager = IncidentResponseManager(
            settings=settings, bus=bus, clock=clock, executor=ContainmentExecutor({"hang": hang})
        )
        incident = await manager.create_incident(make_request())
        task = asyncio.create_task(
            manager.execute_response_action(
                incident.id, ActionRequest(action="hang", target="host-1"), "analyst-2"
            )
        )
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        [action] = (await manager.get_incident(incident.id)).containment_actions
        assert action.status == ActionStatus.FAILED
        assert action.error == "cancelled"
        assert action.completed_at is not None


# =========================================================================
# Lifecycle
# =========================================================================


class TestStatus:
    @pytest.mark.asyncio
    async def test_forward_transition(self, manager, make_request, bus, recorder):
        incident = await manager.create_incident(make_request())
        updated = await manager.update_incident_status(
            incident.id, IncidentStatus.ACKNOWLEDGED, "lead-1", "on it"
        )
        assert updated.status == IncidentStatus.ACKNOWLEDGED
        event = updated.timeline[-1]
        assert event.details == {
            "previous_status": "open",
            "new_status": "acknowledged",
            "notes": "on it",
        }
        await bus.drain()
        [changed] = recorder.of_type(INCIDENT_STATUS_CHANGED)
        assert changed.payload["previous_status"] == "open"

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_incident_untouched(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        await manager.update_incident_status(incident.id, IncidentStatus.CONTAINED, "lead-1")
        with pytest.raises(InvalidTransitionError):
            await manager.update_incident_status(incident.id, IncidentStatus.OPEN, "lead-1")
        refreshed = await manager.get_incident(incident.id)
        assert refreshed.status == IncidentStatus.CONTAINED
        assert len(refreshed.timeline) == 2

    @pytest.mark.asyncio
    async def test_milestones(self, manager, make_request, clock):
        incident = await manager.create_incident(make_request())
        contained_at = clock.advance(hours=1)
        await manager.update_incident_status(incident.id, IncidentStatus.CONTAINED, "lead-1")
        clock.advance(hours=1)
        resolved = await manager.update_incident_status(
            incident.id, IncidentStatus.RESOLVED, "lead-1"
        )
        assert resolved.contained_at == contained_at
        assert resolved.resolved_at == clock()
        assert resolved.closed_at is None

    @pytest.mark.asyncio
    async def test_false_positive_is_terminal(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        await manager.update_incident_status(incident.id, IncidentStatus.FALSE_POSITIVE, "lead-1")
        with pytest.raises(InvalidTransitionError):
            await manager.update_incident_status(incident.id, IncidentStatus.CLOSED, "lead-1")
        with pytest.raises(ConflictError):
            await manager.escalate_incident(incident.id, "still worried", "lead-1")


# =========================================================================
# Investigation and evidence
# =========================================================================


class TestInvestigation:
    @pytest.mark.asyncio
    async def test_start_moves_open_incident(self, manager, make_request, bus, recorder):
        incident = await manager.create_incident(make_request(evidence=[_log_evidence()]))
        ctx = await manager.start_investigation(incident.id, "inv-1")
        assert ctx.investigator_id == "inv-1"
        assert [a.id for a in ctx.artifacts] == incident.evidence

        refreshed = await manager.get_incident(incident.id)
        assert refreshed.status == IncidentStatus.INVESTIGATING
        [member] = refreshed.team_members
        assert (member.user_id, member.role) == ("inv-1", TeamRole.INVESTIGATOR)
        await bus.drain()
        assert len(recorder.of_type(INCIDENT_STATUS_CHANGED)) == 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        first = await manager.start_investigation(incident.id, "inv-1")
        second = await manager.start_investigation(incident.id, "inv-2")
        assert second is first
        assert second.investigator_id == "inv-1"
        refreshed = await manager.get_incident(incident.id)
        assert len(refreshed.timeline) == 2

    @pytest.mark.asyncio
    async def test_start_on_later_status_keeps_status(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        await manager.update_incident_status(incident.id, IncidentStatus.CONTAINING, "lead-1")
        await manager.start_investigation(incident.id, "inv-1")
        refreshed = await manager.get_incident(incident.id)
        assert refreshed.status == IncidentStatus.CONTAINING
        assert refreshed.timeline[-1].type == TimelineEventType.USER_ASSIGNED

    @pytest.mark.asyncio
    async def test_finding_requires_investigation(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        with pytest.raises(NotFoundError):
            await manager.add_investigation_finding(
                incident.id,
                FindingInput(type=FindingType.ATTACK_VECTOR, description="phishing"),
                "inv-1",
            )

    @pytest.mark.asyncio
    async def test_root_cause_finding(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        await manager.start_investigation(incident.id, "inv-1")
        await manager.add_investigation_finding(
            incident.id,
            FindingInput(
                type=FindingType.ROOT_CAUSE, description="guess", confidence=Confidence.LOW
            ),
            "inv-1",
        )
        assert "root_cause" not in (await manager.get_incident(incident.id)).metadata

        finding = await manager.add_investigation_finding(
            incident.id,
            FindingInput(
                type=FindingType.ROOT_CAUSE,
                description="Reused credentials from a third-party leak",
                confidence=Confidence.HIGH,
            ),
            "inv-1",
        )
        refreshed = await manager.get_incident(incident.id)
        assert refreshed.metadata["root_cause"] == finding.description
        assert refreshed.timeline[-1].details["finding_id"] == finding.id
        assert len(manager.get_investigation(incident.id).findings) == 2

    @pytest.mark.asyncio
    async def test_hypotheses_and_completion(self, manager, make_request, clock):
        incident = await manager.create_incident(make_request())
        await manager.start_investigation(incident.id, "inv-1")
        hypothesis = await manager.add_hypothesis(
            incident.id, Hypothesis(description="Insider exported the data")
        )
        updated = await manager.update_hypothesis(
            incident.id, hypothesis.id, probability=10.0, evidence_against=["ev-1"]
        )
        assert updated.probability == 10.0
        assert updated.evidence_against == ["ev-1"]
        await manager.add_recommendation(incident.id, "Rotate API keys")

        clock.advance(hours=3)
        ctx = await manager.complete_investigation(incident.id, "inv-1")
        assert ctx.completed_at == clock()
        assert ctx.recommendations == ["Rotate API keys"]


class TestEvidence:
    @pytest.mark.asyncio
    async def test_collect(self, manager, make_request, bus, recorder):
        incident = await manager.create_incident(make_request())
        evidence = await manager.collect_evidence(incident.id, _log_evidence(), "inv-1")
        refreshed = await manager.get_incident(incident.id)
        assert refreshed.evidence == [evidence.id]
        assert refreshed.timeline[-1].type == TimelineEventType.EVIDENCE_ADDED
        assert refreshed.timeline[-1].details["hash"] == evidence.hash
        await bus.drain()
        assert recorder.of_type(EVIDENCE_COLLECTED)[0].payload["evidence_id"] == evidence.id

    @pytest.mark.asyncio
    async def test_verify(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        evidence = await manager.collect_evidence(
            incident.id, _log_evidence({"b": 2, "a": 1}), "inv-1"
        )
        assert manager.verify_evidence(evidence.id, {"a": 1, "b": 2}) is True
        assert manager.verify_evidence(evidence.id, {"a": 1, "b": 3}) is False

    @pytest.mark.asyncio
    async def test_custody_chain(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        await manager.start_investigation(incident.id, "inv-1")
        evidence = await manager.collect_evidence(incident.id, _log_evidence(), "inv-1")
        entry = await manager.transfer_custody(
            incident.id, evidence.id, "forensics-lab", "transferred", "evidence-locker-3"
        )
        assert entry.custodian == "forensics-lab"
        [artifact] = manager.get_investigation(incident.id).artifacts
        assert [c.action for c in artifact.chain_of_custody] == ["collected", "transferred"]

    @pytest.mark.asyncio
    async def test_custody_unknown_evidence(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        await manager.start_investigation(incident.id, "inv-1")
        with pytest.raises(NotFoundError):
            await manager.transfer_custody(incident.id, "ev-missing", "lab", "moved", "locker")


# =========================================================================
# Team, classification and annotations
# =========================================================================


class TestTeamAndClassification:
    @pytest.mark.asyncio
    async def test_assign_replaces_role(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        await manager.assign_incident(incident.id, "user-1", TeamRole.ANALYST, "lead-1")
        member = await manager.assign_incident(incident.id, "user-1", TeamRole.LEAD, "lead-1")
        assert "coordinate_response" in member.responsibilities
        refreshed = await manager.get_incident(incident.id)
        assert [m.role for m in refreshed.team_members] == [TeamRole.LEAD]
        assert refreshed.assigned_to == "user-1"

    @pytest.mark.asyncio
    async def test_severity_change_recomputes_risk(self, manager, make_request, bus, recorder):
        incident = await manager.create_incident(make_request())
        updated = await manager.update_incident_severity(
            incident.id, IncidentSeverity.HIGH, "lead-1", "more accounts affected"
        )
        assert updated.severity == IncidentSeverity.HIGH
        assert updated.risk_score == 70.0
        assert updated.containment_actions == []
        await bus.drain()
        [event] = recorder.of_type(INCIDENT_UPDATED)
        assert event.payload["previous_severity"] == "low"
        assert event.payload["reason"] == "more accounts affected"

    @pytest.mark.asyncio
    async def test_unchanged_classification_is_noop(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        same = await manager.update_incident_severity(incident.id, IncidentSeverity.LOW, "lead-1")
        assert same.timeline == incident.timeline

    @pytest.mark.asyncio
    async def test_reclassify_type(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        updated = await manager.reclassify_incident(incident.id, IncidentType.DATA_BREACH, "lead-1")
        assert updated.estimated_impact.regulatory_impact is True

    @pytest.mark.asyncio
    async def test_threat_indicators(self, manager, make_request):
        incident = await manager.create_incident(make_request(threat_indicators=["1.1.1.1"]))
        indicators = await manager.add_threat_indicators(
            incident.id, ["1.1.1.1", "2.2.2.2", "2.2.2.2"], "inv-1"
        )
        assert indicators == ["1.1.1.1", "2.2.2.2"]
        again = await manager.add_threat_indicators(incident.id, ["2.2.2.2"], "inv-1")
        assert again == indicators

    @pytest.mark.asyncio
    async def test_link_incidents(self, manager, make_request):
        a = await manager.create_incident(make_request())
        b = await manager.create_incident(make_request(title="Same actor, second account"))
        await manager.link_incidents(a.id, b.id, "lead-1")
        await manager.link_incidents(b.id, a.id, "lead-1")

        a, b = await manager.get_incident(a.id), await manager.get_incident(b.id)
        assert a.related_incidents == [b.id]
        assert b.related_incidents == [a.id]
        assert len(a.timeline) == 2

    @pytest.mark.asyncio
    async def test_link_to_self_rejected(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        with pytest.raises(ValidationError):
            await manager.link_incidents(incident.id, incident.id, "lead-1")

    @pytest.mark.asyncio
    async def test_escalate(self, manager, make_request, bus, recorder, clock):
        incident = await manager.create_incident(make_request(severity=IncidentSeverity.CRITICAL))
        event = await manager.escalate_incident(
            incident.id, "Customer data confirmed", "lead-1", EscalationLevel.EXECUTIVE
        )
        assert event.type == TimelineEventType.ESCALATION
        assert event.details == {"escalation_level": "executive"}
        await bus.drain()
        [notice] = recorder.of_type(ESCALATION_NEEDED)
        assert notice.payload["manual"] is True

        # A sweep inside the refire gap does not repeat the escalation.
        clock.advance(minutes=30)
        assert await manager.run_escalation_sweep() == []

    @pytest.mark.asyncio
    async def test_resolved_incident_escalated_until_closed(self, manager, make_request, clock):
        incident = await manager.create_incident(make_request(severity=IncidentSeverity.CRITICAL))
        await manager.update_incident_status(incident.id, IncidentStatus.RESOLVED, "lead-1")
        clock.advance(minutes=16)
        [notice] = await manager.run_escalation_sweep()
        assert notice.incident_id == incident.id

        await manager.update_incident_status(incident.id, IncidentStatus.CLOSED, "lead-1")
        clock.advance(hours=2)
        assert await manager.run_escalation_sweep() == []


# =========================================================================
# Playbooks, recovery and remediation
# =========================================================================


class TestPlaybookProgress:
    @pytest.mark.asyncio
    async def test_steps_respect_dependencies(self, manager, make_request):
        incident = await manager.create_incident(_breach(make_request))
        assert [s.order for s in await manager.get_next_steps(incident.id)] == [1]

        with pytest.raises(ConflictError):
            await manager.complete_playbook_step(incident.id, 2, "lead-1")
        ready = await manager.complete_playbook_step(incident.id, 1, "lead-1")
        assert [s.order for s in ready] == [2, 4]
        with pytest.raises(ConflictError):
            await manager.complete_playbook_step(incident.id, 1, "lead-1")
        with pytest.raises(NotFoundError):
            await manager.complete_playbook_step(incident.id, 99, "lead-1")

    @pytest.mark.asyncio
    async def test_no_playbook(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        assert await manager.get_incident_playbook(incident.id) is None
        assert await manager.get_next_steps(incident.id) == []
        with pytest.raises(NotFoundError):
            await manager.complete_playbook_step(incident.id, 1, "lead-1")

    @pytest.mark.asyncio
    async def test_apply_playbook(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        playbook = await manager.apply_playbook(incident.id, "pb-003", "lead-1")
        assert (await manager.get_incident_playbook(incident.id)).id == playbook.id
        refreshed = await manager.get_incident(incident.id)
        assert refreshed.metadata["completed_steps"] == []

        with pytest.raises(NotFoundError):
            await manager.apply_playbook(incident.id, "pb-missing", "lead-1")


class TestRecoveryAndRemediation:
    @pytest.mark.asyncio
    async def test_recovery_plan(self, manager, make_request, clock):
        incident = await manager.create_incident(make_request())
        updated = await manager.create_recovery_plan(
            incident.id, {"steps": ["restore from backup"]}, "lead-1"
        )
        assert updated.status == IncidentStatus.RECOVERING
        plan = updated.metadata["recovery_plan"]
        assert plan["steps"] == ["restore from backup"]
        assert plan["created_by"] == "lead-1"
        assert plan["created_at"] == clock().isoformat()

        again = await manager.create_recovery_plan(incident.id, {"steps": []}, "lead-1")
        assert again.status == IncidentStatus.RECOVERING

    @pytest.mark.asyncio
    async def test_recovery_after_resolution_rejected(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        await manager.update_incident_status(incident.id, IncidentStatus.RESOLVED, "lead-1")
        with pytest.raises(InvalidTransitionError):
            await manager.create_recovery_plan(incident.id, {}, "lead-1")

    @pytest.mark.asyncio
    async def test_remediation(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        record = await manager.execute_remediation(
            incident.id, {"description": "Patched S3 bucket policy"}, "eng-1"
        )
        assert record["status"] == "completed"
        refreshed = await manager.get_incident(incident.id)
        assert refreshed.metadata["remediations"] == [record]
        assert refreshed.timeline[-1].description == (
            "Remediation executed: Patched S3 bucket policy"
        )


# =========================================================================
# Queries and periodic work
# =========================================================================


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_filters_and_order(self, manager, make_request, clock):
        first = await manager.create_incident(make_request())
        clock.advance(minutes=1)
        second = await manager.create_incident(make_request(severity=IncidentSeverity.MEDIUM))

        listed = await manager.list_incidents()
        assert [i.id for i in listed] == [second.id, first.id]
        assert [i.id for i in await manager.list_incidents(severity=IncidentSeverity.LOW)] == [
            first.id
        ]
        assert len(await manager.list_incidents(limit=1, offset=1)) == 1
        assert await manager.list_incidents(status=IncidentStatus.CLOSED) == []

    @pytest.mark.asyncio
    async def test_statistics(self, manager, make_request, clock):
        first = await manager.create_incident(make_request())
        await manager.create_incident(make_request(severity=IncidentSeverity.CRITICAL))
        clock.advance(hours=2)
        await manager.update_incident_status(first.id, IncidentStatus.RESOLVED, "lead-1")

        stats = await manager.get_incident_statistics()
        assert stats.total == 2
        assert stats.by_status == {"resolved": 1, "open": 1}
        assert stats.critical_incidents == 1
        assert stats.active_incidents == 2
        assert stats.average_resolution_hours == 2.0

    @pytest.mark.asyncio
    async def test_refresh_metrics(self, manager, make_request):
        incident = await manager.create_incident(make_request())
        assert await manager.refresh_metrics() == 0

        stale = await manager.store.get(incident.id)
        stale.risk_score = 1.0
        await manager.store.save(stale)
        assert await manager.refresh_metrics() == 1
        assert (await manager.get_incident(incident.id)).risk_score == 28.0

    @pytest.mark.asyncio
    async def test_compliance_reports(self, manager, make_request):
        breach = await manager.create_incident(
            _breach(make_request, severity=IncidentSeverity.LOW)
        )
        await manager.create_incident(make_request())
        [report] = await manager.generate_compliance_reports()
        assert report.incident_id == breach.id
        assert report.type == ReportType.REGULATORY
        assert report.generated_by == SYSTEM_ACTOR
        assert manager.get_reports(breach.id) == [report]
