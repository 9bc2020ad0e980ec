"""Enums for severity, alert status, notification channels, and escalation phases."""
from enum import Enum


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self):
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"

    def can_transition_to(self, target) -> bool:
        return AlertStatus(target) in ALLOWED_TRANSITIONS[self]


# resolved is terminal; a new firing creates a new instance instead
ALLOWED_TRANSITIONS = {
    AlertStatus.ACTIVE: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    REALTIME = "realtime"


class EscalationPhase(str, Enum):
    ESCALATING = "escalating"
    FULLY_ESCALATED = "fully_escalated"
    CANCELLED = "cancelled"


class EventType(str, Enum):
    ALERT_CREATED = "alert.created"
    ALERT_ACKNOWLEDGED = "alert.acknowledged"
    ALERT_RESOLVED = "alert.resolved"
    ESCALATION_STEP_EXECUTED = "escalation.step_executed"
