"""Notification channels for incident lifecycle events."""

from irdesk.notifications.base import (
    IncidentNotification,
    LogNotificationChannel,
    NotificationChannel,
    notification_forwarder,
)
from irdesk.notifications.webhook import WebhookNotificationChannel

__all__ = [
    "IncidentNotification",
    "LogNotificationChannel",
    "NotificationChannel",
    "WebhookNotificationChannel",
    "notification_forwarder",
]
