"""Incident response API endpoints.

Thin layer over :class:`IncidentResponseManager`. The acting user comes
from the ``X-User-ID`` header; domain errors are rendered as RFC 7807
problem details by the handler registered in ``app.py``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from irdesk.incidents.containment import ActionRequest
from irdesk.incidents.escalation import EscalationLevel
from irdesk.incidents.evidence import EvidenceInput
from irdesk.incidents.investigation import FindingInput, InvestigationContext, InvestigationFinding
from irdesk.incidents.manager import IncidentCreate, IncidentResponseManager, IncidentStatistics
from irdesk.incidents.playbooks import Playbook, PlaybookStep
from irdesk.incidents.reporting import IncidentReport, ReportType
from irdesk.models.base import (
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
)

router = APIRouter()


def get_manager(request: Request) -> IncidentResponseManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Incident manager unavailable",
        )
    return manager  # type: ignore[no-any-return]


# --- Request bodies ---


class CreateIncidentRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    type: IncidentType
    severity: IncidentSeverity
    source: IncidentSource = IncidentSource.USER_REPORT
    affected_users: list[str] = Field(default_factory=list)
    affected_resources: list[str] = Field(default_factory=list)
    evidence: list[EvidenceInput] = Field(default_factory=list)
    threat_indicators: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class StatusUpdateRequest(BaseModel):
    status: IncidentStatus
    notes: str | None = None


class AssignRequest(BaseModel):
    user_id: str
    role: TeamRole


class ReportRequest(BaseModel):
    type: ReportType


class EscalateRequest(BaseModel):
    reason: str = Field(min_length=1)
    level: EscalationLevel = EscalationLevel.MANAGEMENT


class ApplyPlaybookRequest(BaseModel):
    playbook_id: str


class SeverityUpdateRequest(BaseModel):
    severity: IncidentSeverity
    reason: str | None = None


class NoteRequest(BaseModel):
    note: str = Field(min_length=1)


# --- Incidents ---


@router.get("/incidents")
async def list_incidents(
    request: Request,
    status_filter: IncidentStatus | None = Query(default=None, alias="status"),
    severity: IncidentSeverity | None = None,
    incident_type: IncidentType | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    manager = get_manager(request)
    incidents = await manager.list_incidents(
        status=status_filter,
        severity=severity,
        incident_type=incident_type,
        limit=limit,
        offset=offset,
    )
    return {"incidents": incidents, "count": len(incidents), "limit": limit, "offset": offset}


@router.post("/incidents", status_code=status.HTTP_201_CREATED)
async def create_incident(
    request: Request,
    body: CreateIncidentRequest,
    user_id: str = Header(alias="X-User-ID"),
) -> SecurityIncident:
    manager = get_manager(request)
    return await manager.create_incident(
        IncidentCreate(**body.model_dump(), reported_by=user_id)
    )


@router.get("/incidents/statistics")
async def incident_statistics(request: Request) -> IncidentStatistics:
    return await get_manager(request).get_incident_statistics()


@router.get("/incidents/{incident_id}")
async def get_incident(request: Request, incident_id: str) -> SecurityIncident:
    return await get_manager(request).get_incident(incident_id)


@router.post("/incidents/{incident_id}/status")
async def update_status(
    request: Request,
    incident_id: str,
    body: StatusUpdateRequest,
    user_id: str = Header(alias="X-User-ID"),
) -> SecurityIncident:
    return await get_manager(request).update_incident_status(
        incident_id, body.status, user_id, body.notes
    )


@router.post("/incidents/{incident_id}/assign")
async def assign_incident(
    request: Request,
    incident_id: str,
    body: AssignRequest,
    user_id: str = Header(alias="X-User-ID"),
) -> TeamMember:
    return await get_manager(request).assign_incident(incident_id, body.user_id, body.role, user_id)


@router.post("/incidents/{incident_id}/actions")
async def execute_action(
    request: Request,
    incident_id: str,
    body: ActionRequest,
    user_id: str = Header(alias="X-User-ID"),
) -> ContainmentAction:
    return await get_manager(request).execute_response_action(incident_id, body, user_id)


@router.get("/incidents/{incident_id}/timeline")
async def incident_timeline(request: Request, incident_id: str) -> list[IncidentEvent]:
    return await get_manager(request).get_incident_timeline(incident_id)


@router.post("/incidents/{incident_id}/escalate")
async def escalate_incident(
    request: Request,
    incident_id: str,
    body: EscalateRequest,
    user_id: str = Header(alias="X-User-ID"),
) -> IncidentEvent:
    return await get_manager(request).escalate_incident(
        incident_id, body.reason, user_id, body.level
    )


@router.post("/incidents/{incident_id}/severity")
async def update_severity(
    request: Request,
    incident_id: str,
    body: SeverityUpdateRequest,
    user_id: str = Header(alias="X-User-ID"),
) -> SecurityIncident:
    return await get_manager(request).update_incident_severity(
        incident_id, body.severity, user_id, body.reason
    )


@router.post("/incidents/{incident_id}/notes", status_code=status.HTTP_201_CREATED)
async def add_note(
    request: Request,
    incident_id: str,
    body: NoteRequest,
    user_id: str = Header(alias="X-User-ID"),
) -> IncidentEvent:
    return await get_manager(request).add_note(incident_id, body.note, user_id)


@router.post("/incidents/{incident_id}/links/{related_id}", status_code=status.HTTP_204_NO_CONTENT)
async def link_incidents(
    request: Request,
    incident_id: str,
    related_id: str,
    user_id: str = Header(alias="X-User-ID"),
) -> None:
    await get_manager(request).link_incidents(incident_id, related_id, user_id)


@router.post("/incidents/{incident_id}/playbook/steps/{order}")
async def complete_playbook_step(
    request: Request,
    incident_id: str,
    order: int,
    user_id: str = Header(alias="X-User-ID"),
) -> list[PlaybookStep]:
    return await get_manager(request).complete_playbook_step(incident_id, order, user_id)


@router.post("/incidents/{incident_id}/playbook")
async def apply_playbook(
    request: Request,
    incident_id: str,
    body: ApplyPlaybookRequest,
    user_id: str = Header(alias="X-User-ID"),
) -> Playbook:
    return await get_manager(request).apply_playbook(incident_id, body.playbook_id, user_id)


# --- Investigation & evidence ---


@router.post("/incidents/{incident_id}/investigation")
async def start_investigation(
    request: Request,
    incident_id: str,
    user_id: str = Header(alias="X-User-ID"),
) -> InvestigationContext:
    return await get_manager(request).start_investigation(incident_id, user_id)


@router.get("/incidents/{incident_id}/investigation")
async def get_investigation(request: Request, incident_id: str) -> InvestigationContext:
    return get_manager(request).get_investigation(incident_id)


@router.post("/incidents/{incident_id}/findings", status_code=status.HTTP_201_CREATED)
async def add_finding(
    request: Request,
    incident_id: str,
    body: FindingInput,
    user_id: str = Header(alias="X-User-ID"),
) -> InvestigationFinding:
    return await get_manager(request).add_investigation_finding(incident_id, body, user_id)


@router.post("/incidents/{incident_id}/evidence", status_code=status.HTTP_201_CREATED)
async def collect_evidence(
    request: Request,
    incident_id: str,
    body: EvidenceInput,
    user_id: str = Header(alias="X-User-ID"),
) -> Evidence:
    return await get_manager(request).collect_evidence(incident_id, body, user_id)


# --- Reports ---


@router.post("/incidents/{incident_id}/reports", status_code=status.HTTP_201_CREATED)
async def generate_report(
    request: Request,
    incident_id: str,
    body: ReportRequest,
    user_id: str = Header(alias="X-User-ID"),
) -> IncidentReport:
    return await get_manager(request).generate_incident_report(incident_id, body.type, user_id)


@router.get("/incidents/{incident_id}/reports")
async def list_reports(
    request: Request,
    incident_id: str,
    report_type: ReportType | None = Query(default=None, alias="type"),
) -> list[IncidentReport]:
    manager = get_manager(request)
    await manager.get_incident(incident_id)
    return manager.get_reports(incident_id, report_type)


# --- Playbooks ---


@router.get("/playbooks")
async def list_playbooks(request: Request) -> list[Playbook]:
    return get_manager(request).list_playbooks()
