"""Shared fixtures for IRDesk tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from irdesk.config.settings import Settings
from irdesk.incidents.manager import IncidentCreate, IncidentResponseManager
from irdesk.messaging.bus import IncidentEventBus
from irdesk.messaging.topics import EventEnvelope
from irdesk.models.base import (
    IncidentSeverity,
    IncidentSource,
    IncidentType,
    SecurityIncident,
)

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock injected wherever components read the time."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class EventRecorder:
    """Bus subscriber that keeps every envelope it receives."""

    def __init__(self) -> None:
        self.events: list[EventEnvelope] = []

    async def __call__(self, envelope: EventEnvelope) -> None:
        self.events.append(envelope)

    def of_type(self, event_type: str) -> list[EventEnvelope]:
        return [e for e in self.events if e.event_type == event_type]

    @property
    def types(self) -> list[str]:
        return [e.event_type for e in self.events]


def build_incident(**overrides: Any) -> SecurityIncident:
    fields: dict[str, Any] = {
        "id": "INC-TEST-001",
        "title": "Suspicious login",
        "type": IncidentType.ACCOUNT_COMPROMISE,
        "severity": IncidentSeverity.MEDIUM,
        "source": IncidentSource.USER_REPORT,
        "reported_by": "analyst-1",
        "created_at": T0,
        "updated_at": T0,
    }
    fields.update(overrides)
    return SecurityIncident(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        auto_containment_enabled=True,
        auto_containment_severity_threshold=IncidentSeverity.HIGH,
        max_auto_actions=5,
        database_url="",
        webhook_url="",
    )


@pytest.fixture
def bus() -> IncidentEventBus:
    return IncidentEventBus()


@pytest.fixture
def recorder(bus: IncidentEventBus) -> EventRecorder:
    rec = EventRecorder()
    bus.subscribe("recorder", rec)
    return rec


@pytest.fixture
def manager(
    bus: IncidentEventBus, clock: FakeClock, settings: Settings
) -> IncidentResponseManager:
    return IncidentResponseManager(settings=settings, bus=bus, clock=clock)


@pytest.fixture
def make_request() -> Callable[..., IncidentCreate]:
    def _make(**overrides: Any) -> IncidentCreate:
        fields: dict[str, Any] = {
            "title": "Customer records exposed",
            "description": "Public bucket found with customer exports",
            "type": IncidentType.ACCOUNT_COMPROMISE,
            "severity": IncidentSeverity.LOW,
            "source": IncidentSource.USER_REPORT,
            "reported_by": "analyst-1",
        }
        fields.update(overrides)
        return IncidentCreate(**fields)

    return _make


@pytest.fixture
def incident_factory() -> Callable[..., SecurityIncident]:
    return build_incident


@pytest.fixture
def recorder_factory() -> Callable[[], EventRecorder]:
    return EventRecorder
