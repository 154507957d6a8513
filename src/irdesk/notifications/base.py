"""Notification channel contract and the bus forwarder feeding it."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from irdesk.messaging.bus import EventHandler
from irdesk.messaging.topics import NOTIFICATION_EVENTS, EventEnvelope

logger = structlog.get_logger()


class IncidentNotification(BaseModel):
    """What a paging/notification collaborator receives."""

    incident_id: str
    event: str
    severity: str = "info"
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class NotificationChannel(Protocol):
    """Fire-and-forget delivery of incident notifications."""

    async def notify(self, notification: IncidentNotification) -> bool: ...


class LogNotificationChannel:
    """Writes notifications to structlog. Always succeeds."""

    async def notify(self, notification: IncidentNotification) -> bool:
        logger.info(
            "incident_notification",
            incident_id=notification.incident_id,
            event_name=notification.event,
            severity=notification.severity,
        )
        return True


def notification_forwarder(channel: NotificationChannel) -> EventHandler:
    """Bus handler that turns lifecycle envelopes into channel notifications.

    Delivery failures are logged and never retried.
    """

    async def _forward(envelope: EventEnvelope) -> None:
        if envelope.event_type not in NOTIFICATION_EVENTS:
            return
        payload = dict(envelope.payload)
        notification = IncidentNotification(
            incident_id=payload.pop("incident_id", ""),
            event=envelope.event_type,
            severity=payload.get("severity", "info"),
            details=payload,
            timestamp=envelope.timestamp,
        )
        delivered = await channel.notify(notification)
        if not delivered:
            logger.warning(
                "incident_notification.delivery_failed",
                incident_id=notification.incident_id,
                event_name=notification.event,
                channel=type(channel).__name__,
            )

    return _forward
