"""Data models."""
from models.enums import Severity, AlertStatus, NotificationChannel, EscalationPhase, EventType
from models.alerts import (
    MetricSample, AlertCondition, AlertRule, FiredAlert, AlertInstance, AlertSubscription, InvalidTransitionError,
)
from models.escalation import EscalationStep, EscalationPolicy, EscalationState, Recipient
