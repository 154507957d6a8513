"""Evidence vault: append-only storage of collected forensic evidence."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel

from irdesk.api.exceptions import NotFoundError
from irdesk.models.base import Evidence, EvidenceType, utc_now

logger = structlog.get_logger()


class EvidenceInput(BaseModel):
    """Evidence as submitted by a collector, before hashing."""

    type: EvidenceType
    description: str
    source: str
    data: Any = None
    location: str | None = None


def hash_payload(data: Any) -> str:
    """SHA-256 over a canonical JSON serialization of *data*.

    Key order does not matter: ``{"a": 1, "b": 2}`` and ``{"b": 2, "a": 1}``
    hash identically.
    """
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class EvidenceVault:
    """Holds evidence by id and keeps the per-incident collection order."""

    def __init__(self) -> None:
        self._items: dict[str, Evidence] = {}
        self._by_incident: dict[str, list[str]] = {}

    @staticmethod
    def seal(
        evidence: EvidenceInput,
        collected_by: str,
        *,
        at: datetime | None = None,
    ) -> Evidence:
        """Build the immutable, hashed evidence record without storing it."""
        return Evidence(
            type=evidence.type,
            description=evidence.description,
            source=evidence.source,
            collected_by=collected_by,
            collected_at=at or utc_now(),
            hash=hash_payload(evidence.data) if evidence.data is not None else None,
            data=evidence.data,
            location=evidence.location,
        )

    def add(self, incident_id: str, item: Evidence) -> Evidence:
        if item.id in self._items:
            return self._items[item.id]
        self._items[item.id] = item
        self._by_incident.setdefault(incident_id, []).append(item.id)
        logger.info(
            "evidence_vault.collected",
            incident_id=incident_id,
            evidence_id=item.id,
            evidence_type=item.type.value,
            hashed=item.hash is not None,
        )
        return item

    def get(self, evidence_id: str) -> Evidence | None:
        return self._items.get(evidence_id)

    def require(self, evidence_id: str) -> Evidence:
        item = self._items.get(evidence_id)
        if item is None:
            raise NotFoundError(f"Evidence {evidence_id} not found", instance=evidence_id)
        return item

    def for_incident(self, incident_id: str) -> list[Evidence]:
        return [self._items[eid] for eid in self._by_incident.get(incident_id, [])]

    def verify(self, evidence_id: str, data: Any) -> bool:
        """Return ``True`` when *data* hashes to the stored evidence hash."""
        item = self.require(evidence_id)
        if item.hash is None:
            return False
        return item.hash == hash_payload(data)

    def collect(
        self,
        incident_id: str,
        evidence: EvidenceInput,
        collected_by: str,
        *,
        at: datetime | None = None,
    ) -> Evidence:
        return self.add(incident_id, self.seal(evidence, collected_by, at=at))

    def remove_incident(self, incident_id: str) -> int:
        ids = self._by_incident.pop(incident_id, [])
        for eid in ids:
            self._items.pop(eid, None)
        return len(ids)

    def __len__(self) -> int:
        return len(self._items)
