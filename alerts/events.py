"""In-process event bus for alert lifecycle and escalation events."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from alerts.channels import AlertChannel
from models.enums import EventType

logger = logging.getLogger("mspalerts.alerts.events")


@dataclass
class AlertEvent:
    type: EventType
    instance: object
    data: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Fan events out to subscribers; a failing subscriber never affects the publisher."""

    def __init__(self):
        self._subscribers = {}

    def subscribe(self, event_type, callback: AlertChannel):
        self._subscribers.setdefault(EventType(event_type), []).append(callback)

    def subscribe_all(self, callback: AlertChannel):
        for event_type in EventType:
            self.subscribe(event_type, callback)

    def publish(self, event_type, instance, **data):
        event = AlertEvent(type=EventType(event_type), instance=instance, data=data)
        for callback in self._subscribers.get(event.type, []):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event subscriber error on {event.type.value}: {e}")
        return event
