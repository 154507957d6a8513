"""Escalation sweeper: flags incidents left unresolved past their severity's time limit.

Escalation is advisory. The sweeper never changes incident state; it emits
``incident.escalation_needed`` events for the notification channel and
remembers when it last escalated each incident so a stale incident is not
re-announced on every sweep.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from enum import StrEnum

import structlog
from pydantic import BaseModel

from irdesk.incidents.store import IncidentStore
from irdesk.messaging.bus import IncidentEventBus
from irdesk.messaging.topics import ESCALATION_NEEDED
from irdesk.models.base import TERMINAL_STATUSES, IncidentSeverity, SecurityIncident, utc_now

logger = structlog.get_logger()

DEFAULT_THRESHOLDS: dict[IncidentSeverity, int | None] = {
    IncidentSeverity.CRITICAL: 15,
    IncidentSeverity.HIGH: 60,
    IncidentSeverity.MEDIUM: 240,
    IncidentSeverity.LOW: None,
}


class EscalationLevel(StrEnum):
    EXECUTIVE = "executive"
    MANAGEMENT = "management"
    TEAM_LEAD = "team_lead"


ESCALATION_LEVELS: dict[IncidentSeverity, EscalationLevel] = {
    IncidentSeverity.CRITICAL: EscalationLevel.EXECUTIVE,
    IncidentSeverity.HIGH: EscalationLevel.MANAGEMENT,
    IncidentSeverity.MEDIUM: EscalationLevel.TEAM_LEAD,
    IncidentSeverity.LOW: EscalationLevel.TEAM_LEAD,
}


class EscalationNotice(BaseModel):
    incident_id: str
    severity: IncidentSeverity
    reason: str
    level: EscalationLevel
    age_minutes: float
    issued_at: datetime


def incident_age_minutes(incident: SecurityIncident, now: datetime) -> float:
    return (now - incident.created_at).total_seconds() / 60


class EscalationSweeper:
    """Periodic scan of open incidents against per-severity thresholds."""

    def __init__(
        self,
        store: IncidentStore,
        bus: IncidentEventBus | None = None,
        thresholds: Mapping[IncidentSeverity, int | None] | None = None,
        refire_minutes: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._bus = bus
        self._thresholds = dict(DEFAULT_THRESHOLDS if thresholds is None else thresholds)
        self._refire = timedelta(minutes=refire_minutes)
        self._clock = clock
        self._last_escalated: dict[str, datetime] = {}

    def last_escalated_at(self, incident_id: str) -> datetime | None:
        return self._last_escalated.get(incident_id)

    def forget(self, incident_id: str) -> None:
        self._last_escalated.pop(incident_id, None)

    def mark_escalated(self, incident_id: str, at: datetime) -> None:
        self._last_escalated[incident_id] = at

    def check(self, incident: SecurityIncident, now: datetime) -> EscalationNotice | None:
        """Return a notice if *incident* is due for escalation at *now*.

        Pure with respect to the store; the caller holds the incident lock.
        """
        if incident.status in TERMINAL_STATUSES:
            return None
        threshold = self._thresholds.get(incident.severity)
        if threshold is None:
            return None
        age = incident_age_minutes(incident, now)
        if age <= threshold:
            return None
        last = self._last_escalated.get(incident.id)
        if last is not None and now - last < self._refire:
            return None
        return EscalationNotice(
            incident_id=incident.id,
            severity=incident.severity,
            reason=(
                f"{incident.severity.value.capitalize()} incident unresolved "
                f"for {int(age)} minutes (limit {threshold})"
            ),
            level=ESCALATION_LEVELS[incident.severity],
            age_minutes=round(age, 2),
            issued_at=now,
        )

    async def sweep(self, now: datetime | None = None) -> list[EscalationNotice]:
        """Scan a snapshot of all incidents and emit escalation notices."""
        now = now or self._clock()
        notices: list[EscalationNotice] = []
        for candidate in await self._store.snapshot():
            async with self._store.lock(candidate.id):
                # Re-read under the lock: a concurrent update may have
                # closed or removed the incident since the snapshot.
                incident = await self._store.get(candidate.id)
                if incident is None or incident.status in TERMINAL_STATUSES:
                    self.forget(candidate.id)
                    continue
                notice = self.check(incident, now)
                if notice is None:
                    continue
                self.mark_escalated(incident.id, now)
            notices.append(notice)
            self._publish(notice, incident)

        if notices:
            logger.info("escalation_sweeper.escalated", count=len(notices))
        return notices

    def _publish(self, notice: EscalationNotice, incident: SecurityIncident) -> None:
        logger.warning(
            "escalation_sweeper.escalation_needed",
            incident_id=notice.incident_id,
            severity=notice.severity,
            level=notice.level,
            age_minutes=notice.age_minutes,
        )
        if self._bus is None:
            return
        self._bus.publish(
            ESCALATION_NEEDED,
            {
                "incident_id": notice.incident_id,
                "title": incident.title,
                "severity": notice.severity.value,
                "status": incident.status.value,
                "reason": notice.reason,
                "escalation_level": notice.level.value,
                "age_minutes": notice.age_minutes,
                "manual": False,
            },
            correlation_id=notice.incident_id,
        )
