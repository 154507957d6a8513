"""In-process publish/subscribe for incident lifecycle events."""

from irdesk.messaging.bus import IncidentEventBus, Subscription
from irdesk.messaging.topics import EventEnvelope

__all__ = ["EventEnvelope", "IncidentEventBus", "Subscription"]
