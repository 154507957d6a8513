"""Incident store: the single source of truth for incident lifecycle state.

Readers always receive a private copy of the last committed snapshot, so
reads are lock-free. Writers serialize on the per-incident lock, mutate
their copy and publish it with :meth:`save`. A failed ``save`` leaves the
previous snapshot in place.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol, runtime_checkable

import structlog

from irdesk.api.exceptions import NotFoundError
from irdesk.models.base import SecurityIncident

logger = structlog.get_logger()


@runtime_checkable
class IncidentStore(Protocol):
    """Storage contract used by the incident response manager."""

    async def get(self, incident_id: str) -> SecurityIncident | None: ...

    async def exists(self, incident_id: str) -> bool: ...

    async def snapshot(self) -> list[SecurityIncident]: ...

    async def save(self, incident: SecurityIncident) -> None: ...

    async def delete(self, incident_id: str) -> bool: ...

    def lock(self, incident_id: str) -> AbstractAsyncContextManager[None]: ...


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class LockRegistry:
    """Per-incident ``asyncio.Lock`` kept only while someone holds or awaits it.

    An entry is created on first use and dropped when its last user
    releases, so lookups of unknown or purged incidents leave nothing behind.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, incident_id: str) -> AsyncIterator[None]:
        entry = self._entries.get(incident_id)
        if entry is None:
            entry = self._entries[incident_id] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[incident_id]

    def is_held(self, incident_id: str) -> bool:
        entry = self._entries.get(incident_id)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)


class InMemoryIncidentStore:
    """Dict-backed incident store for single-process deployments and tests."""

    def __init__(self) -> None:
        self._incidents: dict[str, SecurityIncident] = {}
        self._locks = LockRegistry()

    async def get(self, incident_id: str) -> SecurityIncident | None:
        incident = self._incidents.get(incident_id)
        return incident.model_copy(deep=True) if incident is not None else None

    async def exists(self, incident_id: str) -> bool:
        return incident_id in self._incidents

    async def snapshot(self) -> list[SecurityIncident]:
        return [i.model_copy(deep=True) for i in list(self._incidents.values())]

    async def save(self, incident: SecurityIncident) -> None:
        self._incidents[incident.id] = incident.model_copy(deep=True)

    async def delete(self, incident_id: str) -> bool:
        return self._incidents.pop(incident_id, None) is not None

    def lock(self, incident_id: str) -> AbstractAsyncContextManager[None]:
        return self._locks.hold(incident_id)

    def __len__(self) -> int:
        return len(self._incidents)


async def require_incident(store: IncidentStore, incident_id: str) -> SecurityIncident:
    incident = await store.get(incident_id)
    if incident is None:
        raise NotFoundError(f"Incident {incident_id} not found", instance=incident_id)
    return incident
