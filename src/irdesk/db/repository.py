"""SQL-backed incident store: bridges the incident aggregate and the ORM."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from irdesk.api.exceptions import PersistenceError, error_context
from irdesk.db.models import IncidentRecord
from irdesk.incidents.store import LockRegistry
from irdesk.models.base import SecurityIncident

logger = structlog.get_logger()


class SqlIncidentStore:
    """Durable incident store with a read-through snapshot cache.

    A new snapshot becomes visible to readers only after the database
    commit succeeds; a failed write raises :class:`PersistenceError` and
    leaves the previous snapshot untouched.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sf = session_factory
        self._cache: dict[str, SecurityIncident] = {}
        self._locks = LockRegistry()

    async def load(self) -> int:
        """Populate the snapshot cache from the database."""
        with error_context(PersistenceError, detail="Failed to load incidents"):
            async with self._sf() as session:
                result = await session.execute(select(IncidentRecord))
                records = result.scalars().all()
        self._cache = {r.id: SecurityIncident.model_validate(r.document) for r in records}
        logger.info("sql_incident_store.loaded", count=len(self._cache))
        return len(self._cache)

    async def get(self, incident_id: str) -> SecurityIncident | None:
        incident = self._cache.get(incident_id)
        return incident.model_copy(deep=True) if incident is not None else None

    async def exists(self, incident_id: str) -> bool:
        return incident_id in self._cache

    async def snapshot(self) -> list[SecurityIncident]:
        return [i.model_copy(deep=True) for i in list(self._cache.values())]

    async def save(self, incident: SecurityIncident) -> None:
        record = IncidentRecord(
            id=incident.id,
            type=incident.type.value,
            severity=incident.severity.value,
            status=incident.status.value,
            document=incident.model_dump(mode="json"),
            created_at=incident.created_at,
            closed_at=incident.closed_at,
        )
        try:
            with error_context(
                PersistenceError, detail=f"Failed to persist incident {incident.id}"
            ):
                async with self._sf() as session:
                    await session.merge(record)
                    await session.commit()
        except PersistenceError as exc:
            logger.error("sql_incident_store.save_failed", incident_id=incident.id, error=str(exc))
            raise
        self._cache[incident.id] = incident.model_copy(deep=True)

    async def delete(self, incident_id: str) -> bool:
        if incident_id not in self._cache:
            return False
        with error_context(PersistenceError, detail=f"Failed to delete incident {incident_id}"):
            async with self._sf() as session:
                await session.execute(
                    delete(IncidentRecord).where(IncidentRecord.id == incident_id)
                )
                await session.commit()
        self._cache.pop(incident_id, None)
        return True

    def lock(self, incident_id: str) -> AbstractAsyncContextManager[None]:
        return self._locks.hold(incident_id)
