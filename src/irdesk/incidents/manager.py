"""Incident response manager: the orchestration core of IRDesk.

Owns every mutation of a :class:`SecurityIncident`. Each mutating operation
takes the incident's lock, works on a private copy, appends one timeline
event and commits the copy to the store. If the commit fails, nothing from
the operation becomes visible. Audit records and notifications are
published to the event bus after the commit and can never fail the
operation.

Containment actions run outside the lock: the pending record is committed,
the lock released while the handler runs, and the outcome recorded under
the lock again.
"""

from __future__ import annotations

import asyncio
import random
import string
import uuid
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from irdesk.api.exceptions import ConflictError, IRDeskError, NotFoundError, ValidationError
from irdesk.audit.sink import AuditRecord, AuditSeverity, audit_severity_for
from irdesk.config.settings import Settings
from irdesk.incidents.assignment import TeamDirectory, responsibilities_for
from irdesk.incidents.containment import ActionRequest, ContainmentExecutor
from irdesk.incidents.escalation import EscalationLevel, EscalationNotice, EscalationSweeper
from irdesk.incidents.evidence import EvidenceInput, EvidenceVault
from irdesk.incidents.investigation import (
    AttackChainStep,
    CustodyEntry,
    EventCorrelation,
    FindingInput,
    ForensicEvent,
    Hypothesis,
    HypothesisStatus,
    InvestigationContext,
    InvestigationFinding,
    InvestigationWorkspace,
)
from irdesk.incidents.lifecycle import apply_transition, validate_transition
from irdesk.incidents.playbooks import (
    ActionTrigger,
    AutomatedAction,
    Playbook,
    PlaybookRegistry,
    PlaybookStep,
    default_registry,
    next_steps,
)
from irdesk.incidents.reporting import IncidentReport, ReportingEngine, ReportType
from irdesk.incidents.retention import RetentionResult, RetentionSweeper
from irdesk.incidents.risk import assess_impact, calculate_risk_score
from irdesk.incidents.store import InMemoryIncidentStore, IncidentStore, require_incident
from irdesk.messaging.bus import IncidentEventBus
from irdesk.messaging.topics import (
    AUDIT_RECORD,
    ESCALATION_NEEDED,
    EVIDENCE_COLLECTED,
    INCIDENT_ASSIGNED,
    INCIDENT_CREATED,
    INCIDENT_STATUS_CHANGED,
    INCIDENT_UPDATED,
    INVESTIGATION_FINDING_ADDED,
    INVESTIGATION_STARTED,
    REPORT_GENERATED,
    RESPONSE_ACTION_EXECUTED,
    RESPONSE_ACTION_FAILED,
)
from irdesk.models.base import (
    SYSTEM_ACTOR,
    TERMINAL_STATUSES,
    ActionStatus,
    ActionType,
    ContainmentAction,
    Evidence,
    IncidentEvent,
    IncidentSeverity,
    IncidentSource,
    IncidentStatus,
    IncidentType,
    SecurityIncident,
    TeamMember,
    TeamRole,
    TimelineEventType,
    utc_now,
)

logger = structlog.get_logger()

AUTO_ACTIONS_KEY = "auto_actions_executed"


class IncidentCreate(BaseModel):
    """Input for :meth:`IncidentResponseManager.create_incident`."""

    title: str = Field(min_length=1)
    description: str = ""
    type: IncidentType
    severity: IncidentSeverity
    source: IncidentSource
    reported_by: str
    affected_users: list[str] = Field(default_factory=list)
    affected_resources: list[str] = Field(default_factory=list)
    evidence: list[EvidenceInput] = Field(default_factory=list)
    threat_indicators: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class IncidentStatistics(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)
    average_resolution_hours: float = 0.0
    active_incidents: int = 0
    critical_incidents: int = 0


def _base36(value: int) -> str:
    digits = string.digits + string.ascii_uppercase
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def generate_incident_id(now: datetime) -> str:
    """``INC-<base36 ms timestamp>-<3 random chars>``."""
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(random.choices(alphabet, k=3))  # noqa: S311  # nosec B311
    return f"INC-{_base36(int(now.timestamp() * 1000))}-{suffix}"


class IncidentResponseManager:
    """Tracks security incidents from creation to closure.

    Usage::

        manager = IncidentResponseManager(settings=settings, bus=bus)
        incident = await manager.create_incident(IncidentCreate(...))
        await manager.update_incident_status(incident.id, IncidentStatus.ACKNOWLEDGED, "u-1")
    """

    def __init__(
        self,
        store: IncidentStore | None = None,
        *,
        settings: Settings | None = None,
        registry: PlaybookRegistry | None = None,
        executor: ContainmentExecutor | None = None,
        workspace: InvestigationWorkspace | None = None,
        vault: EvidenceVault | None = None,
        reports: ReportingEngine | None = None,
        bus: IncidentEventBus | None = None,
        directory: TeamDirectory | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or Settings()
        self._store: IncidentStore = store if store is not None else InMemoryIncidentStore()
        self._registry = registry if registry is not None else default_registry()
        self._executor = executor or ContainmentExecutor(
            timeout_seconds=self._settings.action_timeout_seconds
        )
        self._workspace = workspace or InvestigationWorkspace()
        self._vault = vault or EvidenceVault()
        self._reports = reports or ReportingEngine(clock=clock)
        self._bus = bus or IncidentEventBus(queue_size=self._settings.subscriber_queue_size)
        self._directory = directory
        self._clock = clock
        self.escalation = EscalationSweeper(
            self._store,
            self._bus,
            thresholds=self._settings.escalation_thresholds(),
            refire_minutes=self._settings.escalation_refire_minutes,
            clock=clock,
        )
        self.retention = RetentionSweeper(
            self._store,
            self._workspace,
            self._vault,
            self._reports,
            escalation=self.escalation,
            bus=self._bus,
            incident_days=self._settings.retention_incident_days,
            report_days=self._settings.retention_report_days,
            clock=clock,
        )

    @property
    def store(self) -> IncidentStore:
        return self._store

    @property
    def registry(self) -> PlaybookRegistry:
        return self._registry

    @property
    def executor(self) -> ContainmentExecutor:
        return self._executor

    @property
    def bus(self) -> IncidentEventBus:
        return self._bus

    # ── Creation & lifecycle ─────────────────────────────────────────────

    async def create_incident(self, request: IncidentCreate) -> SecurityIncident:
        now = self._clock()
        incident_id = generate_incident_id(now)
        while await self._store.exists(incident_id):
            incident_id = generate_incident_id(now)

        incident = SecurityIncident(
            id=incident_id,
            title=request.title,
            description=request.description,
            type=request.type,
            severity=request.severity,
            source=request.source,
            reported_by=request.reported_by,
            affected_users=list(request.affected_users),
            affected_resources=list(request.affected_resources),
            threat_indicators=list(dict.fromkeys(request.threat_indicators)),
            risk_score=calculate_risk_score(request.type, request.severity),
            estimated_impact=assess_impact(request.type, request.severity, request.affected_users),
            created_at=now,
            updated_at=now,
            metadata=dict(request.metadata),
        )
        playbook = self._registry.find(incident.type, incident.severity)
        if playbook is not None:
            incident.metadata["playbook_id"] = playbook.id
        sealed = [self._vault.seal(e, request.reported_by, at=now) for e in request.evidence]
        incident.evidence = [e.id for e in sealed]
        incident.record_event(
            TimelineEventType.STATUS_CHANGE,
            "Incident created",
            request.reported_by,
            {
                "status": IncidentStatus.OPEN.value,
                "source": incident.source.value,
                "playbook_id": incident.metadata.get("playbook_id"),
            },
            at=now,
        )

        async with self._store.lock(incident_id):
            await self._store.save(incident)
            for item in sealed:
                self._vault.add(incident_id, item)

        logger.info(
            "incident_manager.incident_created",
            incident_id=incident_id,
            incident_type=incident.type,
            severity=incident.severity,
            risk_score=incident.risk_score,
            playbook_id=incident.metadata.get("playbook_id"),
        )
        self._audit("incident_created", request.reported_by, incident, {"title": incident.title})
        self._notify(INCIDENT_CREATED, incident, source=incident.source.value)

        if incident.severity == IncidentSeverity.CRITICAL:
            await self._auto_assign(incident)
        if (
            self._settings.auto_containment_enabled
            and incident.severity.rank >= self._settings.auto_containment_severity_threshold.rank
        ):
            await self.execute_auto_containment(incident_id)

        return await require_incident(self._store, incident_id)

    async def update_incident_status(
        self,
        incident_id: str,
        status: IncidentStatus,
        user_id: str,
        notes: str | None = None,
    ) -> SecurityIncident:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            previous = incident.status
            try:
                validate_transition(incident_id, previous, status)
            except IRDeskError:
                logger.warning(
                    "incident_manager.invalid_transition",
                    incident_id=incident_id,
                    current_status=previous,
                    requested_status=status,
                    user_id=user_id,
                )
                raise
            now = self._clock()
            apply_transition(incident, status, now)
            incident.record_event(
                TimelineEventType.STATUS_CHANGE,
                f"Status changed from {previous.value} to {status.value}",
                user_id,
                {"previous_status": previous.value, "new_status": status.value, "notes": notes},
                at=now,
            )
            await self._store.save(incident)

        if status in TERMINAL_STATUSES:
            self.escalation.forget(incident_id)
        logger.info(
            "incident_manager.status_changed",
            incident_id=incident_id,
            previous_status=previous,
            new_status=status,
            user_id=user_id,
        )
        self._audit(
            "incident_status_changed",
            user_id,
            incident,
            {"previous_status": previous.value, "new_status": status.value, "notes": notes},
        )
        self._notify(INCIDENT_STATUS_CHANGED, incident, previous_status=previous.value)
        return incident

    # ── Containment ──────────────────────────────────────────────────────

    async def execute_response_action(
        self,
        incident_id: str,
        request: ActionRequest,
        user_id: str,
    ) -> ContainmentAction:
        """Run a response action and return its record.

        Handler failures are reported through the returned record's
        ``status`` and ``error``, never as an exception.
        """
        action = await self._run_action(incident_id, request, user_id)
        if action is None:
            raise ConflictError(f"Action {request.action} was not started", instance=incident_id)
        return action

    async def execute_auto_containment(self, incident_id: str) -> list[ContainmentAction]:
        """Run the matched playbook's ``immediate`` actions as the system actor."""
        incident = await require_incident(self._store, incident_id)
        playbook = self._playbook_for(incident)
        if playbook is None:
            logger.info("incident_manager.no_playbook", incident_id=incident_id)
            return []
        return await self._run_automated(incident_id, playbook.actions_for(ActionTrigger.IMMEDIATE))

    async def trigger_conditional_actions(
        self, incident_id: str, condition: str
    ) -> list[ContainmentAction]:
        """Run the playbook's ``conditional`` actions bound to *condition*."""
        incident = await require_incident(self._store, incident_id)
        playbook = self._playbook_for(incident)
        if playbook is None:
            return []
        matching = [
            a for a in playbook.actions_for(ActionTrigger.CONDITIONAL) if a.condition == condition
        ]
        logger.info(
            "incident_manager.condition_triggered",
            incident_id=incident_id,
            condition=condition,
            matching_actions=len(matching),
        )
        return await self._run_automated(incident_id, matching)

    async def _run_automated(
        self, incident_id: str, actions: Iterable[AutomatedAction]
    ) -> list[ContainmentAction]:
        executed: list[ContainmentAction] = []
        for auto in actions:
            request = ActionRequest(
                type=ActionType.AUTOMATIC,
                action=auto.action,
                target=auto.target,
                parameters=dict(auto.parameters),
            )
            try:
                record = await self._run_action(
                    incident_id, request, SYSTEM_ACTOR, automated_action_id=auto.id
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "incident_manager.auto_action_failed",
                    incident_id=incident_id,
                    automated_action_id=auto.id,
                    action=auto.action,
                    error=str(e),
                )
                continue
            if record is not None:
                executed.append(record)
        return executed

    async def _run_action(
        self,
        incident_id: str,
        request: ActionRequest,
        user_id: str,
        *,
        automated_action_id: str | None = None,
    ) -> ContainmentAction | None:
        # Phase 1: record the pending action under the lock.
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            self._executor.validate(request.action)
            if automated_action_id is not None and not self._claim_auto_action(
                incident, automated_action_id
            ):
                return None
            now = self._clock()
            action = ContainmentAction(
                type=request.type,
                action=request.action,
                target=request.target,
                parameters=dict(request.parameters),
                executed_by=user_id,
                automated_action_id=automated_action_id,
            )
            incident.containment_actions.append(action)
            action.status = ActionStatus.EXECUTING
            action.executed_at = now
            incident.updated_at = now
            await self._store.save(incident)
            context = {
                "incident_id": incident_id,
                "affected_users": list(incident.affected_users),
                "affected_resources": list(incident.affected_resources),
                **request.context,
            }

        # Phase 2: run the handler without holding the lock.
        run_request = request.model_copy(update={"context": context})
        try:
            outcome = await self._executor.run(run_request)
        except asyncio.CancelledError:
            await self._finish_action(
                incident_id, action.id, user_id, ActionStatus.FAILED, None, "cancelled"
            )
            raise

        # Phase 3: record the outcome under the lock.
        return await self._finish_action(
            incident_id, action.id, user_id, outcome.status, outcome.result, outcome.error
        )

    def _claim_auto_action(self, incident: SecurityIncident, automated_action_id: str) -> bool:
        """Reserve an automated action on *incident*; ``False`` if not allowed."""
        claimed: list[str] = list(incident.metadata.get(AUTO_ACTIONS_KEY, []))
        if automated_action_id in claimed:
            logger.info(
                "incident_manager.auto_action_already_executed",
                incident_id=incident.id,
                automated_action_id=automated_action_id,
            )
            return False
        if len(claimed) >= self._settings.max_auto_actions:
            logger.warning(
                "incident_manager.auto_action_limit_reached",
                incident_id=incident.id,
                automated_action_id=automated_action_id,
                limit=self._settings.max_auto_actions,
            )
            return False
        incident.metadata[AUTO_ACTIONS_KEY] = [*claimed, automated_action_id]
        return True

    async def _finish_action(
        self,
        incident_id: str,
        action_id: str,
        user_id: str,
        status: ActionStatus,
        result: Any,
        error: str | None,
    ) -> ContainmentAction:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            action = incident.find_action(action_id)
            if action is None:
                raise NotFoundError(f"Action {action_id} not found on incident {incident_id}")
            now = self._clock()
            action.status = status
            action.completed_at = now
            action.result = result
            action.error = error
            if status == ActionStatus.COMPLETED:
                incident.record_event(
                    TimelineEventType.ACTION_TAKEN,
                    f"Executed {action.action} on {action.target}",
                    user_id,
                    {
                        "action_id": action.id,
                        "action": action.action,
                        "target": action.target,
                        "action_type": action.type.value,
                        "automated_action_id": action.automated_action_id,
                    },
                    at=now,
                )
            else:
                incident.updated_at = now
            await self._store.save(incident)

        details = {"action_id": action.id, "action": action.action, "target": action.target}
        if status == ActionStatus.COMPLETED:
            logger.info("incident_manager.action_completed", incident_id=incident_id, **details)
            self._audit("incident_response_action_executed", user_id, incident, details)
            self._bus.publish(RESPONSE_ACTION_EXECUTED, {"incident_id": incident_id, **details})
        else:
            logger.warning(
                "incident_manager.action_failed", incident_id=incident_id, error=error, **details
            )
            self._audit(
                "incident_response_action_failed",
                user_id,
                incident,
                {**details, "error": error},
                severity=AuditSeverity.WARNING,
            )
            self._bus.publish(
                RESPONSE_ACTION_FAILED, {"incident_id": incident_id, "error": error, **details}
            )
        return action.model_copy(deep=True)

    # ── Investigation & evidence ─────────────────────────────────────────

    async def start_investigation(
        self, incident_id: str, investigator_id: str
    ) -> InvestigationContext:
        """Open the incident's investigation. Idempotent per incident."""
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            now = self._clock()
            ctx, created = self._workspace.open(incident_id, investigator_id, at=now)
            if not created:
                return ctx
            for evidence_id in incident.evidence:
                item = self._vault.get(evidence_id)
                if item is not None:
                    self._workspace.register_artifact(incident_id, item)

            incident.team_members = [
                m for m in incident.team_members if m.user_id != investigator_id
            ]
            incident.team_members.append(
                TeamMember(
                    user_id=investigator_id,
                    role=TeamRole.INVESTIGATOR,
                    assigned_at=now,
                    responsibilities=responsibilities_for(TeamRole.INVESTIGATOR),
                )
            )
            previous = incident.status
            if previous == IncidentStatus.OPEN:
                apply_transition(incident, IncidentStatus.INVESTIGATING, now)
                incident.record_event(
                    TimelineEventType.STATUS_CHANGE,
                    f"Investigation started by {investigator_id}",
                    investigator_id,
                    {
                        "investigator_id": investigator_id,
                        "previous_status": previous.value,
                        "new_status": IncidentStatus.INVESTIGATING.value,
                    },
                    at=now,
                )
            else:
                incident.record_event(
                    TimelineEventType.USER_ASSIGNED,
                    f"Investigation started by {investigator_id}",
                    investigator_id,
                    {"investigator_id": investigator_id, "role": TeamRole.INVESTIGATOR.value},
                    at=now,
                )
            try:
                await self._store.save(incident)
            except IRDeskError:
                self._workspace.remove(incident_id)
                raise

        logger.info(
            "incident_manager.investigation_started",
            incident_id=incident_id,
            investigator_id=investigator_id,
        )
        self._audit("investigation_started", investigator_id, incident, {})
        self._bus.publish(
            INVESTIGATION_STARTED,
            {"incident_id": incident_id, "investigator_id": investigator_id},
            correlation_id=incident_id,
        )
        if incident.status != previous:
            self._notify(INCIDENT_STATUS_CHANGED, incident, previous_status=previous.value)
        return ctx

    async def add_investigation_finding(
        self, incident_id: str, finding: FindingInput, investigator_id: str
    ) -> InvestigationFinding:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            self._workspace.require(incident_id)
            now = self._clock()
            record = InvestigationFinding.from_input(finding, investigator_id, at=now)
            if record.is_root_cause:
                incident.metadata["root_cause"] = record.description
            incident.record_event(
                TimelineEventType.NOTE_ADDED,
                f"Investigation finding added: {record.type.value}",
                investigator_id,
                {
                    "finding_id": record.id,
                    "finding_type": record.type.value,
                    "confidence": record.confidence.value,
                    "evidence": list(record.evidence),
                },
                at=now,
            )
            await self._store.save(incident)
            self._workspace.add_finding(incident_id, record)

        logger.info(
            "incident_manager.finding_added",
            incident_id=incident_id,
            finding_type=record.type,
            confidence=record.confidence,
            root_cause=record.is_root_cause,
        )
        self._audit(
            "investigation_finding_added",
            investigator_id,
            incident,
            {"finding_id": record.id, "finding_type": record.type.value},
        )
        self._bus.publish(
            INVESTIGATION_FINDING_ADDED,
            {
                "incident_id": incident_id,
                "finding_id": record.id,
                "finding_type": record.type.value,
            },
            correlation_id=incident_id,
        )
        return record

    async def collect_evidence(
        self, incident_id: str, evidence: EvidenceInput, collector_id: str
    ) -> Evidence:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            now = self._clock()
            item = self._vault.seal(evidence, collector_id, at=now)
            incident.evidence.append(item.id)
            incident.record_event(
                TimelineEventType.EVIDENCE_ADDED,
                f"Evidence collected: {item.description}",
                collector_id,
                {"evidence_id": item.id, "evidence_type": item.type.value, "hash": item.hash},
                at=now,
            )
            await self._store.save(incident)
            self._vault.add(incident_id, item)
            self._workspace.register_artifact(incident_id, item)

        self._audit(
            "evidence_collected",
            collector_id,
            incident,
            {"evidence_id": item.id, "evidence_type": item.type.value, "hash": item.hash},
        )
        self._bus.publish(
            EVIDENCE_COLLECTED,
            {"incident_id": incident_id, "evidence_id": item.id},
            correlation_id=incident_id,
        )
        return item

    async def transfer_custody(
        self,
        incident_id: str,
        evidence_id: str,
        custodian: str,
        action: str,
        location: str,
    ) -> CustodyEntry:
        """Append a chain-of-custody entry for an evidence artifact."""
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            if evidence_id not in incident.evidence:
                raise NotFoundError(
                    f"Evidence {evidence_id} is not attached to incident {incident_id}",
                    instance=evidence_id,
                )
            entry = self._workspace.record_custody(
                incident_id, evidence_id, custodian, action, location, at=self._clock()
            )
        self._audit(
            "evidence_custody_transferred",
            custodian,
            incident,
            {"evidence_id": evidence_id, "custody_action": action, "location": location},
        )
        return entry

    def verify_evidence(self, evidence_id: str, data: Any) -> bool:
        verified = self._vault.verify(evidence_id, data)
        if not verified:
            logger.warning("incident_manager.evidence_verification_failed", evidence_id=evidence_id)
        return verified

    async def add_hypothesis(self, incident_id: str, hypothesis: Hypothesis) -> Hypothesis:
        async with self._store.lock(incident_id):
            return self._workspace.add_hypothesis(incident_id, hypothesis)

    async def update_hypothesis(
        self,
        incident_id: str,
        hypothesis_id: str,
        *,
        status: HypothesisStatus | None = None,
        probability: float | None = None,
        evidence_for: list[str] | None = None,
        evidence_against: list[str] | None = None,
    ) -> Hypothesis:
        async with self._store.lock(incident_id):
            return self._workspace.update_hypothesis(
                incident_id,
                hypothesis_id,
                status=status,
                probability=probability,
                evidence_for=evidence_for,
                evidence_against=evidence_against,
            )

    async def add_forensic_event(self, incident_id: str, event: ForensicEvent) -> ForensicEvent:
        async with self._store.lock(incident_id):
            return self._workspace.add_forensic_event(incident_id, event)

    async def add_event_correlation(
        self, incident_id: str, correlation: EventCorrelation
    ) -> EventCorrelation:
        async with self._store.lock(incident_id):
            return self._workspace.add_correlation(incident_id, correlation)

    async def add_attack_chain_step(
        self, incident_id: str, step: AttackChainStep
    ) -> AttackChainStep:
        async with self._store.lock(incident_id):
            return self._workspace.add_attack_chain_step(incident_id, step)

    async def add_recommendation(self, incident_id: str, recommendation: str) -> list[str]:
        async with self._store.lock(incident_id):
            return self._workspace.add_recommendation(incident_id, recommendation)

    async def complete_investigation(self, incident_id: str, user_id: str) -> InvestigationContext:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            ctx = self._workspace.require(incident_id)
            now = self._clock()
            incident.record_event(
                TimelineEventType.NOTE_ADDED,
                "Investigation completed",
                user_id,
                {"findings": len(ctx.findings), "root_cause": ctx.root_cause()},
                at=now,
            )
            await self._store.save(incident)
            ctx = self._workspace.complete(incident_id, at=now)
        self._audit("investigation_completed", user_id, incident, {"findings": len(ctx.findings)})
        return ctx

    # ── Team, classification & annotations ───────────────────────────────

    async def assign_incident(
        self, incident_id: str, user_id: str, role: TeamRole, assigned_by: str
    ) -> TeamMember:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            now = self._clock()
            member = TeamMember(
                user_id=user_id,
                role=role,
                assigned_at=now,
                responsibilities=responsibilities_for(role),
            )
            incident.team_members = [m for m in incident.team_members if m.user_id != user_id]
            incident.team_members.append(member)
            if role == TeamRole.LEAD:
                incident.assigned_to = user_id
            incident.record_event(
                TimelineEventType.USER_ASSIGNED,
                f"{user_id} assigned as {role.value}",
                assigned_by,
                {"user_id": user_id, "role": role.value},
                at=now,
            )
            await self._store.save(incident)

        logger.info(
            "incident_manager.assigned", incident_id=incident_id, user_id=user_id, role=role
        )
        self._audit(
            "incident_assigned", assigned_by, incident, {"user_id": user_id, "role": role.value}
        )
        self._notify(INCIDENT_ASSIGNED, incident, user_id=user_id, role=role.value)
        return member

    async def _auto_assign(self, incident: SecurityIncident) -> None:
        if self._directory is None:
            logger.info("incident_manager.auto_assign_skipped", incident_id=incident.id)
            return
        try:
            responders = await self._directory.resolve_responders(incident.type, incident.severity)
            for user_id, role in responders:
                await self.assign_incident(incident.id, user_id, role, SYSTEM_ACTOR)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "incident_manager.auto_assign_failed", incident_id=incident.id, error=str(e)
            )

    async def update_incident_severity(
        self,
        incident_id: str,
        severity: IncidentSeverity,
        user_id: str,
        reason: str | None = None,
    ) -> SecurityIncident:
        return await self._reclassify(incident_id, user_id, reason, severity=severity)

    async def reclassify_incident(
        self,
        incident_id: str,
        incident_type: IncidentType,
        user_id: str,
        reason: str | None = None,
    ) -> SecurityIncident:
        return await self._reclassify(incident_id, user_id, reason, incident_type=incident_type)

    async def _reclassify(
        self,
        incident_id: str,
        user_id: str,
        reason: str | None,
        *,
        severity: IncidentSeverity | None = None,
        incident_type: IncidentType | None = None,
    ) -> SecurityIncident:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            new_severity = severity or incident.severity
            new_type = incident_type or incident.type
            if new_severity == incident.severity and new_type == incident.type:
                return incident
            changes: dict[str, Any] = {
                "previous_severity": incident.severity.value,
                "new_severity": new_severity.value,
                "previous_type": incident.type.value,
                "new_type": new_type.value,
                "reason": reason,
            }
            incident.severity = new_severity
            incident.type = new_type
            incident.risk_score = calculate_risk_score(new_type, new_severity)
            incident.estimated_impact = assess_impact(
                new_type, new_severity, incident.affected_users
            )
            changes["risk_score"] = incident.risk_score
            incident.record_event(
                TimelineEventType.NOTE_ADDED,
                f"Incident reclassified as {new_type.value}/{new_severity.value}",
                user_id,
                changes,
                at=self._clock(),
            )
            await self._store.save(incident)

        self._audit("incident_reclassified", user_id, incident, changes)
        self._bus.publish(INCIDENT_UPDATED, {"incident_id": incident_id, **changes})
        return incident

    async def add_threat_indicators(
        self, incident_id: str, indicators: Iterable[str], user_id: str
    ) -> list[str]:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            new = [i for i in dict.fromkeys(indicators) if i not in incident.threat_indicators]
            if not new:
                return list(incident.threat_indicators)
            incident.threat_indicators.extend(new)
            incident.record_event(
                TimelineEventType.NOTE_ADDED,
                f"Added {len(new)} threat indicator(s)",
                user_id,
                {"indicators": new},
                at=self._clock(),
            )
            await self._store.save(incident)
        self._bus.publish(INCIDENT_UPDATED, {"incident_id": incident_id, "threat_indicators": new})
        return list(incident.threat_indicators)

    async def link_incidents(self, incident_id: str, related_id: str, user_id: str) -> None:
        """Link two incidents in both directions."""
        if incident_id == related_id:
            raise ValidationError("An incident cannot be linked to itself", instance=incident_id)
        first, second = sorted((incident_id, related_id))
        async with self._store.lock(first), self._store.lock(second):
            a = await require_incident(self._store, incident_id)
            b = await require_incident(self._store, related_id)
            if related_id in a.related_incidents and incident_id in b.related_incidents:
                return
            before_a = a.model_copy(deep=True)
            now = self._clock()
            for incident, other in ((a, b), (b, a)):
                if other.id not in incident.related_incidents:
                    incident.related_incidents.append(other.id)
                incident.record_event(
                    TimelineEventType.NOTE_ADDED,
                    f"Linked to incident {other.id}",
                    user_id,
                    {"related_incident": other.id},
                    at=now,
                )
            await self._store.save(a)
            try:
                await self._store.save(b)
            except IRDeskError:
                await self._store.save(before_a)
                raise
        self._audit("incidents_linked", user_id, a, {"related_incident": related_id})

    async def add_note(self, incident_id: str, note: str, user_id: str) -> IncidentEvent:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            event = incident.record_event(
                TimelineEventType.NOTE_ADDED, note, user_id, at=self._clock()
            )
            await self._store.save(incident)
        return event

    async def escalate_incident(
        self,
        incident_id: str,
        reason: str,
        user_id: str,
        level: EscalationLevel = EscalationLevel.MANAGEMENT,
    ) -> IncidentEvent:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            if incident.is_terminal:
                raise ConflictError(
                    f"Incident {incident_id} is {incident.status.value} and cannot be escalated",
                    instance=incident_id,
                )
            now = self._clock()
            event = incident.record_event(
                TimelineEventType.ESCALATION,
                reason,
                user_id,
                {"escalation_level": level.value},
                at=now,
            )
            await self._store.save(incident)
            self.escalation.mark_escalated(incident_id, now)

        logger.warning(
            "incident_manager.escalated", incident_id=incident_id, level=level, user_id=user_id
        )
        self._audit(
            "incident_escalated", user_id, incident, {"reason": reason, "level": level.value}
        )
        self._notify(
            ESCALATION_NEEDED, incident, reason=reason, escalation_level=level.value, manual=True
        )
        return event

    # ── Playbooks, recovery & remediation ────────────────────────────────

    async def apply_playbook(self, incident_id: str, playbook_id: str, user_id: str) -> Playbook:
        playbook = self._registry.require(playbook_id)
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            incident.metadata["playbook_id"] = playbook.id
            incident.metadata["playbook_version"] = playbook.version
            incident.metadata["completed_steps"] = []
            incident.record_event(
                TimelineEventType.NOTE_ADDED,
                f"Playbook {playbook.name} applied",
                user_id,
                {"playbook_id": playbook.id, "version": playbook.version},
                at=self._clock(),
            )
            await self._store.save(incident)
        self._audit("playbook_applied", user_id, incident, {"playbook_id": playbook.id})
        return playbook

    async def get_incident_playbook(self, incident_id: str) -> Playbook | None:
        return self._playbook_for(await require_incident(self._store, incident_id))

    async def get_next_steps(self, incident_id: str) -> list[PlaybookStep]:
        incident = await require_incident(self._store, incident_id)
        playbook = self._playbook_for(incident)
        if playbook is None:
            return []
        return next_steps(playbook, incident.metadata.get("completed_steps", []))

    async def complete_playbook_step(
        self, incident_id: str, order: int, user_id: str
    ) -> list[PlaybookStep]:
        """Mark a playbook step done and return the steps now ready."""
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            playbook = self._playbook_for(incident)
            if playbook is None:
                raise NotFoundError(f"Incident {incident_id} has no playbook", instance=incident_id)
            step = next((s for s in playbook.steps if s.order == order), None)
            if step is None:
                raise NotFoundError(f"Playbook {playbook.id} has no step {order}")
            completed: list[int] = list(incident.metadata.get("completed_steps", []))
            ready = {s.order for s in next_steps(playbook, completed)}
            if order not in ready:
                raise ConflictError(
                    f"Step {order} is already completed or its dependencies are not met",
                    extra={"completed_steps": completed},
                )
            completed.append(order)
            incident.metadata["completed_steps"] = completed
            incident.record_event(
                TimelineEventType.ACTION_TAKEN,
                f"Playbook step {order} completed: {step.title}",
                user_id,
                {"playbook_id": playbook.id, "step": order},
                at=self._clock(),
            )
            await self._store.save(incident)
        return next_steps(playbook, completed)

    async def create_recovery_plan(
        self, incident_id: str, plan: dict[str, Any], user_id: str
    ) -> SecurityIncident:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            previous = incident.status
            if previous != IncidentStatus.RECOVERING:
                validate_transition(incident_id, previous, IncidentStatus.RECOVERING)
            now = self._clock()
            incident.metadata["recovery_plan"] = {
                **plan,
                "created_by": user_id,
                "created_at": now.isoformat(),
            }
            apply_transition(incident, IncidentStatus.RECOVERING, now)
            incident.record_event(
                TimelineEventType.STATUS_CHANGE,
                "Recovery plan created",
                user_id,
                {"previous_status": previous.value, "new_status": IncidentStatus.RECOVERING.value},
                at=now,
            )
            await self._store.save(incident)

        self._audit("recovery_plan_created", user_id, incident, {"previous_status": previous.value})
        if previous != IncidentStatus.RECOVERING:
            self._notify(INCIDENT_STATUS_CHANGED, incident, previous_status=previous.value)
        return incident

    async def execute_remediation(
        self, incident_id: str, remediation: dict[str, Any], user_id: str
    ) -> dict[str, Any]:
        async with self._store.lock(incident_id):
            incident = await require_incident(self._store, incident_id)
            now = self._clock()
            record = {
                "id": str(uuid.uuid4()),
                **remediation,
                "executed_by": user_id,
                "executed_at": now.isoformat(),
                "status": "completed",
            }
            incident.metadata.setdefault("remediations", []).append(record)
            incident.record_event(
                TimelineEventType.ACTION_TAKEN,
                f"Remediation executed: {remediation.get('description', record['id'])}",
                user_id,
                {"remediation_id": record["id"]},
                at=now,
            )
            await self._store.save(incident)
        self._audit("remediation_executed", user_id, incident, {"remediation_id": record["id"]})
        return record

    # ── Reports ──────────────────────────────────────────────────────────

    async def generate_incident_report(
        self, incident_id: str, report_type: ReportType, generated_by: str
    ) -> IncidentReport:
        incident = await require_incident(self._store, incident_id)
        report = self._reports.compile(
            incident, report_type, generated_by, self._workspace.get(incident_id)
        )
        self._audit(
            "incident_report_generated",
            generated_by,
            incident,
            {
                "report_id": report.id,
                "type": report_type.value,
                "classification": report.classification.value,
            },
            severity=AuditSeverity.INFO,
        )
        self._notify(
            REPORT_GENERATED,
            incident,
            report_id=report.id,
            report_type=report_type.value,
            version=report.version,
        )
        return report

    def get_reports(
        self, incident_id: str, report_type: ReportType | None = None
    ) -> list[IncidentReport]:
        return self._reports.reports_for(incident_id, report_type)

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_incident(self, incident_id: str) -> SecurityIncident:
        return await require_incident(self._store, incident_id)

    async def list_incidents(
        self,
        status: IncidentStatus | None = None,
        severity: IncidentSeverity | None = None,
        incident_type: IncidentType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SecurityIncident]:
        incidents = await self._store.snapshot()
        if status is not None:
            incidents = [i for i in incidents if i.status == status]
        if severity is not None:
            incidents = [i for i in incidents if i.severity == severity]
        if incident_type is not None:
            incidents = [i for i in incidents if i.type == incident_type]
        incidents.sort(key=lambda i: i.created_at, reverse=True)
        return incidents[offset : offset + limit]

    async def get_active_incidents(self) -> list[SecurityIncident]:
        return [i for i in await self._store.snapshot() if not i.is_terminal]

    async def get_incident_timeline(self, incident_id: str) -> list[IncidentEvent]:
        return (await require_incident(self._store, incident_id)).timeline

    def get_investigation(self, incident_id: str) -> InvestigationContext:
        return self._workspace.require(incident_id)

    async def get_evidence(self, incident_id: str) -> list[Evidence]:
        await require_incident(self._store, incident_id)
        return self._vault.for_incident(incident_id)

    def list_playbooks(self) -> list[Playbook]:
        return self._registry.list_playbooks()

    async def get_incident_statistics(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> IncidentStatistics:
        incidents = await self._store.snapshot()
        if start is not None:
            incidents = [i for i in incidents if i.created_at >= start]
        if end is not None:
            incidents = [i for i in incidents if i.created_at <= end]
        resolved = [i for i in incidents if i.resolved_at is not None]
        avg_hours = 0.0
        if resolved:
            total = sum(
                (i.resolved_at - i.created_at).total_seconds()  # type: ignore[operator]
                for i in resolved
            )
            avg_hours = round(total / len(resolved) / 3600, 2)
        return IncidentStatistics(
            total=len(incidents),
            by_status=dict(Counter(i.status.value for i in incidents)),
            by_type=dict(Counter(i.type.value for i in incidents)),
            by_severity=dict(Counter(i.severity.value for i in incidents)),
            average_resolution_hours=avg_hours,
            active_incidents=sum(1 for i in incidents if not i.is_terminal),
            critical_incidents=sum(1 for i in incidents if i.severity == IncidentSeverity.CRITICAL),
        )

    # ── Periodic work ────────────────────────────────────────────────────

    async def run_escalation_sweep(self, now: datetime | None = None) -> list[EscalationNotice]:
        return await self.escalation.sweep(now)

    async def run_retention_sweep(self, now: datetime | None = None) -> RetentionResult:
        return await self.retention.sweep(now)

    async def refresh_metrics(self) -> int:
        """Recompute risk and impact for active incidents. Returns how many changed."""
        changed = 0
        for candidate in await self._store.snapshot():
            if candidate.is_terminal:
                continue
            async with self._store.lock(candidate.id):
                incident = await self._store.get(candidate.id)
                if incident is None or incident.is_terminal:
                    continue
                score = calculate_risk_score(incident.type, incident.severity)
                impact = assess_impact(incident.type, incident.severity, incident.affected_users)
                if score == incident.risk_score and impact == incident.estimated_impact:
                    continue
                incident.risk_score = score
                incident.estimated_impact = impact
                incident.record_event(
                    TimelineEventType.NOTE_ADDED,
                    "Risk assessment refreshed",
                    SYSTEM_ACTOR,
                    {"risk_score": score},
                    at=self._clock(),
                )
                await self._store.save(incident)
                changed += 1
        logger.info("incident_manager.metrics_refreshed", changed=changed)
        return changed

    async def generate_compliance_reports(self) -> list[IncidentReport]:
        """Regulatory reports for every active incident with regulatory impact."""
        reports = []
        for incident in await self.get_active_incidents():
            if incident.estimated_impact.regulatory_impact:
                reports.append(
                    await self.generate_incident_report(
                        incident.id, ReportType.REGULATORY, SYSTEM_ACTOR
                    )
                )
        logger.info("incident_manager.compliance_reports_generated", count=len(reports))
        return reports

    # ── Internals ────────────────────────────────────────────────────────

    def _playbook_for(self, incident: SecurityIncident) -> Playbook | None:
        playbook_id = incident.metadata.get("playbook_id")
        if playbook_id:
            playbook = self._registry.get(playbook_id)
            if playbook is not None:
                return playbook
        return self._registry.find(incident.type, incident.severity)

    def _audit(
        self,
        action: str,
        user_id: str,
        incident: SecurityIncident,
        details: dict[str, Any],
        severity: AuditSeverity | None = None,
    ) -> None:
        try:
            record = AuditRecord(
                user_id=user_id,
                action=action,
                resource_id=incident.id,
                details=details,
                severity=severity or audit_severity_for(incident.severity),
                tags=[incident.type.value, incident.severity.value],
            )
            self._bus.publish(
                AUDIT_RECORD, record.model_dump(mode="json"), correlation_id=incident.id
            )
        except Exception as e:
            logger.warning(
                "incident_manager.audit_failed",
                action=action,
                incident_id=incident.id,
                error=str(e),
            )

    def _notify(self, event_type: str, incident: SecurityIncident, **details: Any) -> None:
        try:
            self._bus.publish(
                event_type,
                {
                    "incident_id": incident.id,
                    "title": incident.title,
                    "severity": incident.severity.value,
                    "status": incident.status.value,
                    **details,
                },
                correlation_id=incident.id,
            )
        except Exception as e:
            logger.warning(
                "incident_manager.notify_failed",
                event_type=event_type,
                incident_id=incident.id,
                error=str(e),
            )
