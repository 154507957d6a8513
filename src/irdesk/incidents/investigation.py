"""Investigation workspace: findings, hypotheses and forensic artifacts.

One :class:`InvestigationContext` exists per incident once an investigator
is assigned. Chain-of-custody lists are append-only: entries are added,
never edited or removed.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum

import structlog
from pydantic import BaseModel, ConfigDict, Field

from irdesk.api.exceptions import NotFoundError
from irdesk.models.base import Evidence, utc_now

logger = structlog.get_logger()


# --- Enums ---


class FindingType(StrEnum):
    ROOT_CAUSE = "root_cause"
    ATTACK_VECTOR = "attack_vector"
    VULNERABILITY = "vulnerability"
    COMPROMISE_INDICATOR = "compromise_indicator"
    DATA_EXPOSURE = "data_exposure"


class Confidence(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class HypothesisStatus(StrEnum):
    INVESTIGATING = "investigating"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class InvestigationStatus(StrEnum):
    ONGOING = "ongoing"
    COMPLETED = "completed"
    SUSPENDED = "suspended"


class AttackPhase(StrEnum):
    RECONNAISSANCE = "reconnaissance"
    INITIAL_ACCESS = "initial_access"
    EXECUTION = "execution"
    PERSISTENCE = "persistence"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    DEFENSE_EVASION = "defense_evasion"
    CREDENTIAL_ACCESS = "credential_access"
    DISCOVERY = "discovery"
    LATERAL_MOVEMENT = "lateral_movement"
    COLLECTION = "collection"
    EXFILTRATION = "exfiltration"
    IMPACT = "impact"


# --- Models ---


class FindingInput(BaseModel):
    type: FindingType
    description: str
    confidence: Confidence = Confidence.MEDIUM
    evidence: list[str] = Field(default_factory=list)
    impact: str = ""


class InvestigationFinding(FindingInput):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utc_now)
    reported_by: str = ""

    @classmethod
    def from_input(
        cls, finding: FindingInput, reported_by: str, *, at: datetime | None = None
    ) -> InvestigationFinding:
        return cls(**finding.model_dump(), reported_by=reported_by, timestamp=at or utc_now())

    @property
    def is_root_cause(self) -> bool:
        return self.type == FindingType.ROOT_CAUSE and self.confidence == Confidence.HIGH


class Hypothesis(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    description: str
    evidence_for: list[str] = Field(default_factory=list)
    evidence_against: list[str] = Field(default_factory=list)
    probability: float = Field(default=50.0, ge=0.0, le=100.0)
    status: HypothesisStatus = HypothesisStatus.INVESTIGATING


class CustodyEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    custodian: str
    action: str
    location: str = "system"


class ForensicArtifact(BaseModel):
    id: str
    type: str
    source: str
    hash: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    preserved: bool = True
    chain_of_custody: list[CustodyEntry] = Field(default_factory=list)


class ForensicEvent(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    source: str
    type: str
    description: str
    user_id: str | None = None
    ip_address: str | None = None
    evidence: list[str] = Field(default_factory=list)


class EventCorrelation(BaseModel):
    event1: str
    event2: str
    relationship: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class AttackChainStep(BaseModel):
    order: int
    phase: AttackPhase
    description: str
    evidence: list[str] = Field(default_factory=list)
    timestamp: datetime | None = None


class ForensicTimeline(BaseModel):
    events: list[ForensicEvent] = Field(default_factory=list)
    correlations: list[EventCorrelation] = Field(default_factory=list)
    attack_chain: list[AttackChainStep] = Field(default_factory=list)


class InvestigationContext(BaseModel):
    incident_id: str
    investigator_id: str
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    status: InvestigationStatus = InvestigationStatus.ONGOING
    findings: list[InvestigationFinding] = Field(default_factory=list)
    hypotheses: list[Hypothesis] = Field(default_factory=list)
    artifacts: list[ForensicArtifact] = Field(default_factory=list)
    timeline: ForensicTimeline = Field(default_factory=ForensicTimeline)
    recommendations: list[str] = Field(default_factory=list)

    def artifact(self, evidence_id: str) -> ForensicArtifact | None:
        for a in self.artifacts:
            if a.id == evidence_id:
                return a
        return None

    def root_cause(self) -> str | None:
        """Latest high-confidence root-cause finding, if any."""
        for f in reversed(self.findings):
            if f.is_root_cause:
                return f.description
        return None


# --- Workspace ---


class InvestigationWorkspace:
    """Per-incident investigation contexts.

    Callers serialize access per incident (the manager holds the incident
    lock around every mutating call).
    """

    def __init__(self) -> None:
        self._contexts: dict[str, InvestigationContext] = {}

    def get(self, incident_id: str) -> InvestigationContext | None:
        return self._contexts.get(incident_id)

    def require(self, incident_id: str) -> InvestigationContext:
        ctx = self._contexts.get(incident_id)
        if ctx is None:
            raise NotFoundError(
                f"No investigation for incident {incident_id}", instance=incident_id
            )
        return ctx

    def open(
        self, incident_id: str, investigator_id: str, *, at: datetime | None = None
    ) -> tuple[InvestigationContext, bool]:
        """Return the incident's context, creating it if needed.

        The boolean is ``True`` when this call created the context.
        """
        existing = self._contexts.get(incident_id)
        if existing is not None:
            logger.info(
                "investigation_workspace.already_open",
                incident_id=incident_id,
                investigator_id=existing.investigator_id,
            )
            return existing, False
        ctx = InvestigationContext(
            incident_id=incident_id,
            investigator_id=investigator_id,
            started_at=at or utc_now(),
        )
        self._contexts[incident_id] = ctx
        logger.info(
            "investigation_workspace.opened",
            incident_id=incident_id,
            investigator_id=investigator_id,
        )
        return ctx, True

    def add_finding(self, incident_id: str, finding: InvestigationFinding) -> InvestigationFinding:
        self.require(incident_id).findings.append(finding)
        return finding

    def add_hypothesis(self, incident_id: str, hypothesis: Hypothesis) -> Hypothesis:
        ctx = self.require(incident_id)
        ctx.hypotheses.append(hypothesis)
        return hypothesis

    def update_hypothesis(
        self,
        incident_id: str,
        hypothesis_id: str,
        *,
        status: HypothesisStatus | None = None,
        probability: float | None = None,
        evidence_for: list[str] | None = None,
        evidence_against: list[str] | None = None,
    ) -> Hypothesis:
        ctx = self.require(incident_id)
        for idx, h in enumerate(ctx.hypotheses):
            if h.id != hypothesis_id:
                continue
            updates: dict[str, object] = {}
            if status is not None:
                updates["status"] = status
            if probability is not None:
                updates["probability"] = probability
            if evidence_for:
                updates["evidence_for"] = [*h.evidence_for, *evidence_for]
            if evidence_against:
                updates["evidence_against"] = [*h.evidence_against, *evidence_against]
            updated = Hypothesis.model_validate({**h.model_dump(), **updates})
            ctx.hypotheses[idx] = updated
            return updated
        raise NotFoundError(f"Hypothesis {hypothesis_id} not found", instance=hypothesis_id)

    def register_artifact(
        self,
        incident_id: str,
        evidence: Evidence,
        *,
        location: str | None = None,
    ) -> ForensicArtifact | None:
        """Track *evidence* as a forensic artifact if an investigation is open.

        The first custody entry records the original collection.
        """
        ctx = self._contexts.get(incident_id)
        if ctx is None:
            return None
        existing = ctx.artifact(evidence.id)
        if existing is not None:
            return existing
        artifact = ForensicArtifact(
            id=evidence.id,
            type=evidence.type.value,
            source=evidence.source,
            hash=evidence.hash,
            timestamp=evidence.collected_at,
            chain_of_custody=[
                CustodyEntry(
                    timestamp=evidence.collected_at,
                    custodian=evidence.collected_by,
                    action="collected",
                    location=location or evidence.location or "system",
                )
            ],
        )
        ctx.artifacts.append(artifact)
        return artifact

    def record_custody(
        self,
        incident_id: str,
        evidence_id: str,
        custodian: str,
        action: str,
        location: str,
        *,
        at: datetime | None = None,
    ) -> CustodyEntry:
        ctx = self.require(incident_id)
        artifact = ctx.artifact(evidence_id)
        if artifact is None:
            raise NotFoundError(
                f"Artifact {evidence_id} not tracked by investigation {incident_id}",
                instance=evidence_id,
            )
        entry = CustodyEntry(
            timestamp=at or utc_now(),
            custodian=custodian,
            action=action,
            location=location,
        )
        artifact.chain_of_custody.append(entry)
        return entry

    def add_forensic_event(self, incident_id: str, event: ForensicEvent) -> ForensicEvent:
        ctx = self.require(incident_id)
        ctx.timeline.events.append(event)
        ctx.timeline.events.sort(key=lambda e: e.timestamp)
        return event

    def add_correlation(self, incident_id: str, correlation: EventCorrelation) -> EventCorrelation:
        self.require(incident_id).timeline.correlations.append(correlation)
        return correlation

    def add_attack_chain_step(self, incident_id: str, step: AttackChainStep) -> AttackChainStep:
        chain = self.require(incident_id).timeline.attack_chain
        chain.append(step)
        chain.sort(key=lambda s: s.order)
        return step

    def add_recommendation(self, incident_id: str, recommendation: str) -> list[str]:
        ctx = self.require(incident_id)
        if recommendation not in ctx.recommendations:
            ctx.recommendations.append(recommendation)
        return list(ctx.recommendations)

    def complete(self, incident_id: str, *, at: datetime | None = None) -> InvestigationContext:
        ctx = self.require(incident_id)
        ctx.status = InvestigationStatus.COMPLETED
        ctx.completed_at = at or utc_now()
        return ctx

    def remove(self, incident_id: str) -> bool:
        return self._contexts.pop(incident_id, None) is not None

    def list_investigations(self) -> list[InvestigationContext]:
        return list(self._contexts.values())
