"""Retention sweep: hard-deletes closed incidents past the retention window."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, Field

from irdesk.incidents.escalation import EscalationSweeper
from irdesk.incidents.evidence import EvidenceVault
from irdesk.incidents.investigation import InvestigationWorkspace
from irdesk.incidents.reporting import ReportingEngine
from irdesk.incidents.store import IncidentStore
from irdesk.messaging.bus import IncidentEventBus
from irdesk.messaging.topics import INCIDENT_PURGED
from irdesk.models.base import IncidentStatus, SecurityIncident, utc_now

logger = structlog.get_logger()


class RetentionResult(BaseModel):
    incidents_removed: list[str] = Field(default_factory=list)
    evidence_removed: int = 0
    reports_removed: int = 0


def is_expired(incident: SecurityIncident, cutoff: datetime) -> bool:
    return (
        incident.status == IncidentStatus.CLOSED
        and incident.closed_at is not None
        and incident.closed_at < cutoff
    )


class RetentionSweeper:
    """Removes expired incidents together with everything attached to them.

    Runs behind the same per-incident lock as every other mutation, so a
    sweep never interleaves with the escalation sweep on one incident.
    """

    def __init__(
        self,
        store: IncidentStore,
        workspace: InvestigationWorkspace,
        vault: EvidenceVault,
        reports: ReportingEngine,
        escalation: EscalationSweeper | None = None,
        bus: IncidentEventBus | None = None,
        incident_days: int = 365,
        report_days: int = 2555,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._workspace = workspace
        self._vault = vault
        self._reports = reports
        self._escalation = escalation
        self._bus = bus
        self._incident_window = timedelta(days=incident_days)
        self._report_window = timedelta(days=report_days)
        self._clock = clock

    async def sweep(self, now: datetime | None = None) -> RetentionResult:
        now = now or self._clock()
        cutoff = now - self._incident_window
        result = RetentionResult()

        for candidate in await self._store.snapshot():
            if not is_expired(candidate, cutoff):
                continue
            async with self._store.lock(candidate.id):
                incident = await self._store.get(candidate.id)
                if incident is None or not is_expired(incident, cutoff):
                    continue
                await self._store.delete(incident.id)
                self._workspace.remove(incident.id)
                result.evidence_removed += self._vault.remove_incident(incident.id)
                result.reports_removed += self._reports.remove_incident(incident.id)
                if self._escalation is not None:
                    self._escalation.forget(incident.id)
            result.incidents_removed.append(incident.id)
            logger.info(
                "retention_sweeper.incident_purged",
                incident_id=incident.id,
                closed_at=incident.closed_at.isoformat() if incident.closed_at else None,
            )
            if self._bus is not None:
                self._bus.publish(
                    INCIDENT_PURGED,
                    {"incident_id": incident.id, "closed_at": str(incident.closed_at)},
                    correlation_id=incident.id,
                )

        result.reports_removed += self._reports.purge_older_than(now - self._report_window)
        logger.info(
            "retention_sweeper.completed",
            incidents_removed=len(result.incidents_removed),
            evidence_removed=result.evidence_removed,
            reports_removed=result.reports_removed,
        )
        return result
