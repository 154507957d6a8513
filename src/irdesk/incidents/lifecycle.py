"""Incident status state machine."""

from __future__ import annotations

from datetime import datetime

from irdesk.api.exceptions import InvalidTransitionError
from irdesk.models.base import TERMINAL_STATUSES, IncidentStatus, SecurityIncident

# Forward order of the response lifecycle. FALSE_POSITIVE sits outside it.
LIFECYCLE_ORDER: tuple[IncidentStatus, ...] = (
    IncidentStatus.OPEN,
    IncidentStatus.ACKNOWLEDGED,
    IncidentStatus.INVESTIGATING,
    IncidentStatus.CONTAINING,
    IncidentStatus.CONTAINED,
    IncidentStatus.ERADICATING,
    IncidentStatus.RECOVERING,
    IncidentStatus.RESOLVED,
    IncidentStatus.CLOSED,
)


def _build_transitions() -> dict[IncidentStatus, frozenset[IncidentStatus]]:
    table: dict[IncidentStatus, frozenset[IncidentStatus]] = {}
    for idx, status in enumerate(LIFECYCLE_ORDER):
        if status in TERMINAL_STATUSES:
            table[status] = frozenset()
            continue
        table[status] = frozenset(LIFECYCLE_ORDER[idx + 1 :]) | {IncidentStatus.FALSE_POSITIVE}
    table[IncidentStatus.FALSE_POSITIVE] = frozenset()
    return table


ALLOWED_TRANSITIONS: dict[IncidentStatus, frozenset[IncidentStatus]] = _build_transitions()

# Milestone timestamp stamped the first time an incident reaches a status.
MILESTONE_FIELDS: dict[IncidentStatus, str] = {
    IncidentStatus.CONTAINED: "contained_at",
    IncidentStatus.RESOLVED: "resolved_at",
    IncidentStatus.CLOSED: "closed_at",
}


def can_transition(current: IncidentStatus, target: IncidentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(incident_id: str, current: IncidentStatus, target: IncidentStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move incident {incident_id} from {current.value} to {target.value}",
            extra={"current_status": current.value, "requested_status": target.value},
        )


def apply_transition(incident: SecurityIncident, target: IncidentStatus, at: datetime) -> bool:
    """Set the new status and stamp its milestone once.

    Returns ``True`` when a milestone timestamp was stamped by this call.
    """
    incident.status = target
    field = MILESTONE_FIELDS.get(target)
    if field is None or getattr(incident, field) is not None:
        return False
    setattr(incident, field, at)
    return True
