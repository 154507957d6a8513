"""Response playbooks and the registry that selects them.

Playbooks are immutable once loaded. Publishing a new version of a playbook
replaces the previous one wholesale; nothing is mutated in place. Lookups
are indexed by ``(incident type, severity)`` and the most recently
registered playbook wins a tie.
"""

from __future__ import annotations

import json
import time
from collections.abc import Iterable
from enum import StrEnum
from pathlib import Path
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel, ConfigDict, Field

from irdesk.api.exceptions import NotFoundError, ValidationError
from irdesk.models.base import IncidentSeverity, IncidentType

logger = structlog.get_logger()


# --- Enums ---


class StepMode(StrEnum):
    MANUAL = "manual"
    AUTOMATED = "automated"
    HYBRID = "hybrid"


class ActionTrigger(StrEnum):
    IMMEDIATE = "immediate"
    CONDITIONAL = "conditional"
    SCHEDULED = "scheduled"


class CommunicationAudience(StrEnum):
    INTERNAL = "internal"
    CUSTOMER = "customer"
    REGULATORY = "regulatory"
    MEDIA = "media"


class CommunicationTiming(StrEnum):
    IMMEDIATE = "immediate"
    CONTAINMENT = "containment"
    RESOLUTION = "resolution"
    CLOSURE = "closure"


# --- Models ---


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class PlaybookStep(_Frozen):
    order: int
    title: str
    description: str = ""
    required: bool = True
    mode: StepMode = StepMode.MANUAL
    assigned_role: str | None = None
    actions: tuple[str, ...] = ()
    verification_criteria: tuple[str, ...] = ()
    estimated_minutes: int = 0
    dependencies: tuple[int, ...] = ()


class AutomatedAction(_Frozen):
    id: str
    trigger: ActionTrigger = ActionTrigger.IMMEDIATE
    condition: str | None = None
    action: str
    target: str = "affected_systems"
    parameters: dict[str, Any] = Field(default_factory=dict)
    rollback_procedure: str | None = None


class EscalationCriteria(_Frozen):
    condition: str
    escalate_to: tuple[str, ...] = ()
    notification_template: str = ""
    time_limit_minutes: int | None = None


class CommunicationTemplate(_Frozen):
    id: str
    type: CommunicationAudience = CommunicationAudience.INTERNAL
    audience: str = ""
    subject: str = ""
    template: str = ""
    required_approval: tuple[str, ...] = ()
    timing: CommunicationTiming = CommunicationTiming.IMMEDIATE


class Playbook(_Frozen):
    id: str
    name: str
    description: str = ""
    version: str = "1.0"
    incident_types: tuple[IncidentType, ...]
    severities: tuple[IncidentSeverity, ...]
    steps: tuple[PlaybookStep, ...] = ()
    automated_actions: tuple[AutomatedAction, ...] = ()
    escalation_criteria: tuple[EscalationCriteria, ...] = ()
    communication_templates: tuple[CommunicationTemplate, ...] = ()
    required_roles: tuple[str, ...] = ()
    estimated_minutes: int = 0
    last_updated: float = Field(default_factory=time.time)

    def matches(self, incident_type: IncidentType, severity: IncidentSeverity) -> bool:
        return incident_type in self.incident_types and severity in self.severities

    def actions_for(self, trigger: ActionTrigger) -> list[AutomatedAction]:
        return [a for a in self.automated_actions if a.trigger == trigger]


def next_steps(playbook: Playbook, completed: Iterable[int]) -> list[PlaybookStep]:
    """Steps not yet completed whose dependencies are all completed, in order."""
    done = set(completed)
    ready = [
        s
        for s in playbook.steps
        if s.order not in done and all(dep in done for dep in s.dependencies)
    ]
    return sorted(ready, key=lambda s: s.order)


# --- Registry ---


class PlaybookRegistry:
    """Catalog of response playbooks indexed by incident type and severity."""

    def __init__(self, playbooks: Iterable[Playbook] | None = None) -> None:
        self._playbooks: dict[str, Playbook] = {}
        self._index: dict[tuple[IncidentType, IncidentSeverity], list[str]] = {}
        for pb in playbooks or ():
            self.register(pb)

    def register(self, playbook: Playbook) -> Playbook:
        """Add a playbook, replacing any earlier version with the same id."""
        previous = self._playbooks.get(playbook.id)
        if previous is not None:
            for ids in self._index.values():
                if playbook.id in ids:
                    ids.remove(playbook.id)
        self._playbooks[playbook.id] = playbook
        for itype in playbook.incident_types:
            for sev in playbook.severities:
                self._index.setdefault((itype, sev), []).append(playbook.id)
        logger.info(
            "playbook_registry.registered",
            playbook_id=playbook.id,
            version=playbook.version,
            replaced_version=previous.version if previous else None,
        )
        return playbook

    def find(self, incident_type: IncidentType, severity: IncidentSeverity) -> Playbook | None:
        ids = self._index.get((incident_type, severity))
        if not ids:
            return None
        return self._playbooks[ids[-1]]

    def get(self, playbook_id: str) -> Playbook | None:
        return self._playbooks.get(playbook_id)

    def require(self, playbook_id: str) -> Playbook:
        playbook = self.get(playbook_id)
        if playbook is None:
            raise NotFoundError(f"Playbook {playbook_id} not found")
        return playbook

    def list_playbooks(self) -> list[Playbook]:
        return list(self._playbooks.values())

    def __len__(self) -> int:
        return len(self._playbooks)

    def load_file(self, path: str | Path) -> list[Playbook]:
        """Register playbooks from a JSON file holding one object or a list."""
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Cannot load playbooks from {path}: {exc}") from exc
        items = raw if isinstance(raw, list) else [raw]
        try:
            playbooks = [Playbook.model_validate(item) for item in items]
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid playbook in {path}: {exc}") from exc
        loaded = [self.register(pb) for pb in playbooks]
        logger.info("playbook_registry.file_loaded", path=str(path), count=len(loaded))
        return loaded


# --- Built-in catalog ---


DEFAULT_PLAYBOOKS: tuple[Playbook, ...] = (
    Playbook(
        id="pb-001",
        name="Data Breach Response",
        description="Standard response procedure for data breach incidents",
        incident_types=(IncidentType.DATA_BREACH,),
        severities=(IncidentSeverity.CRITICAL, IncidentSeverity.HIGH),
        steps=(
            PlaybookStep(
                order=1,
                title="Initial Assessment",
                description="Assess the scope and severity of the breach",
                mode=StepMode.MANUAL,
                assigned_role="lead",
                actions=(
                    "Identify affected systems",
                    "Determine data types exposed",
                    "Estimate number of affected records",
                ),
                verification_criteria=("Scope documented", "Data classification completed"),
                estimated_minutes=30,
            ),
            PlaybookStep(
                order=2,
                title="Containment",
                description="Contain the breach to prevent further data loss",
                mode=StepMode.HYBRID,
                assigned_role="investigator",
                actions=(
                    "Isolate affected systems",
                    "Reset compromised credentials",
                    "Block malicious IPs",
                ),
                verification_criteria=("Systems isolated", "No ongoing data exfiltration"),
                estimated_minutes=60,
                dependencies=(1,),
            ),
            PlaybookStep(
                order=3,
                title="Evidence Collection",
                description="Collect and preserve forensic evidence",
                mode=StepMode.MANUAL,
                assigned_role="analyst",
                actions=(
                    "Capture system logs",
                    "Create forensic images",
                    "Document chain of custody",
                ),
                verification_criteria=("Evidence secured", "Chain of custody maintained"),
                estimated_minutes=120,
                dependencies=(2,),
            ),
            PlaybookStep(
                order=4,
                title="Notification",
                description="Notify affected parties and regulators",
                mode=StepMode.MANUAL,
                assigned_role="manager",
                actions=(
                    "Prepare notification content",
                    "Identify notification requirements",
                    "Send notifications",
                ),
                verification_criteria=("Notifications sent", "Acknowledgments received"),
                estimated_minutes=240,
                dependencies=(1,),
            ),
        ),
        automated_actions=(
            AutomatedAction(
                id="auto-001",
                trigger=ActionTrigger.IMMEDIATE,
                action="lockdown_affected_accounts",
                parameters={"scope": "affected_users"},
                rollback_procedure="Unlock accounts after password reset",
            ),
            AutomatedAction(
                id="auto-002",
                trigger=ActionTrigger.CONDITIONAL,
                condition="data_exfiltration_detected",
                action="block_outbound_traffic",
                parameters={"duration": 3600},
                rollback_procedure="Restore network access after containment",
            ),
        ),
        escalation_criteria=(
            EscalationCriteria(
                condition="affected_users > 1000",
                escalate_to=("ciso", "legal_team", "executive_team"),
                notification_template="critical_breach_escalation",
            ),
            EscalationCriteria(
                condition="sensitive_data_exposed",
                escalate_to=("privacy_officer", "compliance_team"),
                notification_template="privacy_breach_escalation",
            ),
        ),
        communication_templates=(
            CommunicationTemplate(
                id="comm-001",
                type=CommunicationAudience.REGULATORY,
                audience="Data Protection Authority",
                subject="Data Breach Notification - [INCIDENT_ID]",
                template=(
                    "As required under GDPR Article 33, we are notifying you of a data breach..."
                ),
                required_approval=("legal_team", "privacy_officer"),
                timing=CommunicationTiming.IMMEDIATE,
            ),
        ),
        required_roles=("lead", "investigator", "analyst", "manager"),
        estimated_minutes=480,
    ),
    Playbook(
        id="pb-002",
        name="Account Compromise Response",
        description="Response procedure for compromised user accounts",
        incident_types=(IncidentType.ACCOUNT_COMPROMISE,),
        severities=(IncidentSeverity.HIGH, IncidentSeverity.MEDIUM),
        steps=(
            PlaybookStep(
                order=1,
                title="Account Lockdown",
                description="Immediately lock the compromised account",
                mode=StepMode.AUTOMATED,
                actions=("Lock account", "Terminate active sessions", "Revoke tokens"),
                verification_criteria=("Account locked", "Sessions terminated"),
                estimated_minutes=5,
            ),
            PlaybookStep(
                order=2,
                title="Impact Assessment",
                description="Assess what the compromised account had access to",
                mode=StepMode.MANUAL,
                assigned_role="analyst",
                actions=(
                    "Review account permissions",
                    "Check recent activity",
                    "Identify accessed resources",
                ),
                verification_criteria=("Access audit complete", "Resource list compiled"),
                estimated_minutes=30,
                dependencies=(1,),
            ),
        ),
        automated_actions=(
            AutomatedAction(
                id="auto-003",
                trigger=ActionTrigger.IMMEDIATE,
                action="force_password_reset",
                parameters={"scope": "compromised_account"},
                rollback_procedure="N/A - User must reset password",
            ),
        ),
        escalation_criteria=(
            EscalationCriteria(
                condition="admin_account_compromised",
                escalate_to=("security_team", "ciso"),
                notification_template="admin_compromise_escalation",
                time_limit_minutes=15,
            ),
        ),
        communication_templates=(
            CommunicationTemplate(
                id="comm-002",
                type=CommunicationAudience.CUSTOMER,
                audience="Affected User",
                subject="Security Alert: Your Account May Have Been Compromised",
                template=(
                    "We detected suspicious activity on your account and have taken "
                    "protective measures..."
                ),
                timing=CommunicationTiming.IMMEDIATE,
            ),
        ),
        required_roles=("analyst", "investigator"),
        estimated_minutes=120,
    ),
    Playbook(
        id="pb-003",
        name="Malware Containment",
        description="Isolate infected hosts and eradicate the malware",
        incident_types=(IncidentType.MALWARE_INFECTION,),
        severities=(IncidentSeverity.CRITICAL, IncidentSeverity.HIGH),
        steps=(
            PlaybookStep(
                order=1,
                title="Host Isolation",
                description="Remove infected hosts from the network",
                mode=StepMode.AUTOMATED,
                actions=("Quarantine hosts", "Snapshot memory"),
                verification_criteria=("Hosts unreachable from production network",),
                estimated_minutes=10,
            ),
            PlaybookStep(
                order=2,
                title="Eradication",
                description="Remove the malware and patch the entry point",
                mode=StepMode.MANUAL,
                assigned_role="investigator",
                actions=("Reimage hosts", "Patch exploited software"),
                verification_criteria=("Clean scan on all hosts",),
                estimated_minutes=180,
                dependencies=(1,),
            ),
        ),
        automated_actions=(
            AutomatedAction(
                id="auto-004",
                trigger=ActionTrigger.IMMEDIATE,
                action="isolate_affected_hosts",
                parameters={"mode": "quarantine_vlan"},
                rollback_procedure="Reattach hosts after clean scan",
            ),
        ),
        required_roles=("lead", "investigator"),
        estimated_minutes=240,
    ),
    Playbook(
        id="pb-004",
        name="Denial of Service Mitigation",
        description="Throttle abusive traffic and restore service capacity",
        incident_types=(IncidentType.DENIAL_OF_SERVICE,),
        severities=(IncidentSeverity.CRITICAL, IncidentSeverity.HIGH),
        steps=(
            PlaybookStep(
                order=1,
                title="Traffic Mitigation",
                description="Apply rate limits and upstream filtering",
                mode=StepMode.HYBRID,
                assigned_role="analyst",
                actions=("Enable rate limiting", "Engage upstream scrubbing"),
                verification_criteria=("Error rate back under SLO",),
                estimated_minutes=20,
            ),
        ),
        automated_actions=(
            AutomatedAction(
                id="auto-005",
                trigger=ActionTrigger.IMMEDIATE,
                action="enable_rate_limiting",
                parameters={"requests_per_minute": 600},
                rollback_procedure="Restore default rate limits",
            ),
        ),
        required_roles=("lead", "analyst"),
        estimated_minutes=60,
    ),
)


def default_registry() -> PlaybookRegistry:
    return PlaybookRegistry(DEFAULT_PLAYBOOKS)
