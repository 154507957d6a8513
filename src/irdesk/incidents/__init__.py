"""Security incident response core."""

from irdesk.incidents.containment import ActionOutcome, ActionRequest, ContainmentExecutor
from irdesk.incidents.evidence import EvidenceInput, EvidenceVault
from irdesk.incidents.investigation import FindingInput, InvestigationWorkspace
from irdesk.incidents.manager import IncidentCreate, IncidentResponseManager, IncidentStatistics
from irdesk.incidents.playbooks import Playbook, PlaybookRegistry, default_registry
from irdesk.incidents.reporting import IncidentReport, ReportingEngine, ReportType
from irdesk.incidents.store import IncidentStore, InMemoryIncidentStore

__all__ = [
    "ActionOutcome",
    "ActionRequest",
    "ContainmentExecutor",
    "EvidenceInput",
    "EvidenceVault",
    "FindingInput",
    "IncidentCreate",
    "IncidentReport",
    "IncidentResponseManager",
    "IncidentStatistics",
    "IncidentStore",
    "InMemoryIncidentStore",
    "InvestigationWorkspace",
    "Playbook",
    "PlaybookRegistry",
    "ReportType",
    "ReportingEngine",
    "default_registry",
]
