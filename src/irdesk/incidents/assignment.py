"""Responder resolution for incident team assignment."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from irdesk.models.base import IncidentSeverity, IncidentType, TeamRole

ROLE_RESPONSIBILITIES: dict[TeamRole, list[str]] = {
    TeamRole.LEAD: ["coordinate_response", "make_decisions", "communicate_status"],
    TeamRole.INVESTIGATOR: ["investigate_incident", "collect_evidence", "analyze_data"],
    TeamRole.ANALYST: ["analyze_logs", "correlate_events", "identify_patterns"],
    TeamRole.MANAGER: ["oversee_response", "allocate_resources", "stakeholder_communication"],
    TeamRole.LEGAL: ["legal_assessment", "regulatory_compliance", "law_enforcement_liaison"],
    TeamRole.COMMUNICATIONS: [
        "internal_communications",
        "external_communications",
        "media_relations",
    ],
}

# Roles paged for each severity when an incident is auto-assigned.
AUTO_ASSIGN_ROLES: dict[IncidentSeverity, tuple[TeamRole, ...]] = {
    IncidentSeverity.CRITICAL: (TeamRole.LEAD, TeamRole.INVESTIGATOR, TeamRole.MANAGER),
    IncidentSeverity.HIGH: (TeamRole.LEAD, TeamRole.INVESTIGATOR),
    IncidentSeverity.MEDIUM: (TeamRole.INVESTIGATOR,),
    IncidentSeverity.LOW: (),
}

# Extra roles pulled in for incident types with legal or regulatory exposure.
TYPE_EXTRA_ROLES: dict[IncidentType, tuple[TeamRole, ...]] = {
    IncidentType.DATA_BREACH: (TeamRole.LEGAL, TeamRole.COMMUNICATIONS),
    IncidentType.DATA_LOSS: (TeamRole.LEGAL,),
    IncidentType.INSIDER_THREAT: (TeamRole.LEGAL,),
}


def responsibilities_for(role: TeamRole) -> list[str]:
    return list(ROLE_RESPONSIBILITIES.get(role, []))


@runtime_checkable
class TeamDirectory(Protocol):
    """Identity/access directory resolving who should respond to an incident."""

    async def resolve_responders(
        self, incident_type: IncidentType, severity: IncidentSeverity
    ) -> list[tuple[str, TeamRole]]: ...


class StaticTeamDirectory:
    """Directory backed by a fixed role → user-id mapping.

    Roles with no configured user are skipped.
    """

    def __init__(self, members: Mapping[TeamRole, Sequence[str]] | None = None) -> None:
        self._members = {role: list(users) for role, users in (members or {}).items()}

    async def resolve_responders(
        self, incident_type: IncidentType, severity: IncidentSeverity
    ) -> list[tuple[str, TeamRole]]:
        roles = AUTO_ASSIGN_ROLES.get(severity, ()) + TYPE_EXTRA_ROLES.get(incident_type, ())
        responders: list[tuple[str, TeamRole]] = []
        for role in roles:
            users = self._members.get(role)
            if users:
                responders.append((users[0], role))
        return responders
