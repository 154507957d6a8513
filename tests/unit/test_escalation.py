"""Tests for the escalation sweeper."""

from __future__ import annotations

import pytest

from irdesk.incidents.escalation import (
    EscalationLevel,
    EscalationSweeper,
    incident_age_minutes,
)
from irdesk.incidents.store import InMemoryIncidentStore
from irdesk.messaging.topics import ESCALATION_NEEDED
from irdesk.models.base import IncidentSeverity, IncidentStatus


@pytest.fixture
def store() -> InMemoryIncidentStore:
    return InMemoryIncidentStore()


@pytest.fixture
def sweeper(store, bus, clock) -> EscalationSweeper:
    return EscalationSweeper(store, bus, clock=clock)


class TestCheck:
    def test_age(self, incident_factory, clock):
        incident = incident_factory()
        assert incident_age_minutes(incident, clock.advance(minutes=30)) == 30

    def test_critical_past_threshold(self, sweeper, incident_factory, clock):
        incident = incident_factory(severity=IncidentSeverity.CRITICAL)
        notice = sweeper.check(incident, clock.advance(minutes=16))
        assert notice is not None
        assert notice.level == EscalationLevel.EXECUTIVE
        assert notice.age_minutes == 16
        assert "limit 15" in notice.reason

    def test_exactly_at_threshold_not_escalated(self, sweeper, incident_factory, clock):
        incident = incident_factory(severity=IncidentSeverity.CRITICAL)
        assert sweeper.check(incident, clock.advance(minutes=15)) is None

    def test_low_severity_never_escalates(self, sweeper, incident_factory, clock):
        incident = incident_factory(severity=IncidentSeverity.LOW)
        assert sweeper.check(incident, clock.advance(days=30)) is None

    @pytest.mark.parametrize("status", [IncidentStatus.CLOSED, IncidentStatus.FALSE_POSITIVE])
    def test_terminal_incidents_skipped(self, sweeper, incident_factory, clock, status):
        incident = incident_factory(severity=IncidentSeverity.CRITICAL, status=status)
        assert sweeper.check(incident, clock.advance(hours=5)) is None

    def test_resolved_but_not_closed_still_escalates(self, sweeper, incident_factory, clock):
        incident = incident_factory(
            severity=IncidentSeverity.CRITICAL, status=IncidentStatus.RESOLVED
        )
        assert sweeper.check(incident, clock.advance(minutes=16)) is not None

    def test_custom_thresholds(self, store, incident_factory, clock):
        sweeper = EscalationSweeper(store, thresholds={IncidentSeverity.HIGH: 5}, clock=clock)
        high = incident_factory(severity=IncidentSeverity.HIGH)
        critical = incident_factory(severity=IncidentSeverity.CRITICAL)
        now = clock.advance(minutes=6)
        notice = sweeper.check(high, now)
        assert notice.level == EscalationLevel.MANAGEMENT
        # Severities missing from the table never escalate.
        assert sweeper.check(critical, now) is None


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_publishes(self, sweeper, store, incident_factory, clock, bus, recorder):
        await store.save(incident_factory(severity=IncidentSeverity.CRITICAL))
        clock.advance(minutes=16)
        notices = await sweeper.sweep()
        assert [n.incident_id for n in notices] == ["INC-TEST-001"]
        await bus.drain()
        [event] = recorder.of_type(ESCALATION_NEEDED)
        assert event.payload["manual"] is False
        assert event.payload["escalation_level"] == "executive"
        assert event.payload["status"] == "open"
        assert event.correlation_id == "INC-TEST-001"

    @pytest.mark.asyncio
    async def test_sweep_does_not_modify_incident(self, sweeper, store, incident_factory, clock):
        await store.save(incident_factory(severity=IncidentSeverity.HIGH))
        await sweeper.sweep(clock.advance(hours=2))
        incident = await store.get("INC-TEST-001")
        assert incident.status == IncidentStatus.OPEN
        assert incident.timeline == []

    @pytest.mark.asyncio
    async def test_refire_gap(self, sweeper, store, incident_factory, clock):
        await store.save(incident_factory(severity=IncidentSeverity.CRITICAL))
        assert len(await sweeper.sweep(clock.advance(minutes=16))) == 1
        assert await sweeper.sweep(clock.advance(minutes=30)) == []
        assert len(await sweeper.sweep(clock.advance(minutes=30))) == 1

    @pytest.mark.asyncio
    async def test_forget_allows_immediate_refire(self, sweeper, store, incident_factory, clock):
        await store.save(incident_factory(severity=IncidentSeverity.CRITICAL))
        await sweeper.sweep(clock.advance(minutes=16))
        sweeper.forget("INC-TEST-001")
        assert sweeper.last_escalated_at("INC-TEST-001") is None
        assert len(await sweeper.sweep(clock.advance(minutes=1))) == 1

    @pytest.mark.asyncio
    async def test_closed_incident_tracking_dropped(
        self, sweeper, store, incident_factory, clock
    ):
        sweeper.mark_escalated("INC-TEST-001", clock.now)
        await store.save(
            incident_factory(severity=IncidentSeverity.CRITICAL, status=IncidentStatus.CLOSED)
        )
        assert await sweeper.sweep(clock.advance(hours=3)) == []
        assert sweeper.last_escalated_at("INC-TEST-001") is None

    @pytest.mark.asyncio
    async def test_sweep_without_bus(self, store, incident_factory, clock):
        sweeper = EscalationSweeper(store, clock=clock)
        await store.save(incident_factory(severity=IncidentSeverity.MEDIUM))
        notices = await sweeper.sweep(clock.advance(minutes=241))
        assert notices[0].level == EscalationLevel.TEAM_LEAD

    @pytest.mark.asyncio
    async def test_resolved_incident_keeps_escalating(
        self, sweeper, store, incident_factory, clock
    ):
        await store.save(
            incident_factory(severity=IncidentSeverity.CRITICAL, status=IncidentStatus.RESOLVED)
        )
        notices = await sweeper.sweep(clock.advance(minutes=16))
        assert [n.incident_id for n in notices] == ["INC-TEST-001"]
        assert sweeper.last_escalated_at("INC-TEST-001") == clock.now
