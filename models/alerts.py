"""Dataclasses for metric samples, alert rules, alert-history records, and subscriptions."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from models.enums import AlertStatus, NotificationChannel, Severity
from models.escalation import Recipient


class InvalidTransitionError(ValueError):
    """Raised when an alert instance is moved to a status its current one cannot reach."""


@dataclass(frozen=True)
class MetricSample:
    device_id: str
    collected_at: datetime
    values: dict = field(default_factory=dict)

    def get(self, metric):
        return self.values.get(metric)


@dataclass
class AlertCondition:
    metric: str = ""
    operator: str = ">"
    threshold: Optional[float] = None

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        threshold = data.get("threshold")
        return cls(
            metric=data.get("metric") or "",
            operator=data.get("operator") or "",
            threshold=float(threshold) if isinstance(threshold, (int, float)) else threshold,
        )

    def to_dict(self):
        return {"metric": self.metric, "operator": self.operator, "threshold": self.threshold}


@dataclass
class AlertRule:
    id: str = ""
    name: str = ""
    alert_type: str = "threshold"
    severity: Severity = Severity.MEDIUM
    device_id: Optional[str] = None
    condition: AlertCondition = field(default_factory=AlertCondition)
    is_active: bool = True
    soft_deleted: bool = False
    last_triggered: Optional[datetime] = None
    trigger_count: int = 0
    description: str = ""

    @property
    def is_global(self):
        return self.device_id is None

    @property
    def is_evaluable(self):
        return self.is_active and not self.soft_deleted


@dataclass(frozen=True)
class FiredAlert:
    rule: AlertRule
    sample: MetricSample
    metric_value: float


@dataclass
class AlertInstance:
    id: Optional[int] = None
    rule_id: str = ""
    device_id: str = ""
    severity: Severity = Severity.MEDIUM
    message: str = ""
    metric: str = ""
    metric_value: float = 0.0
    threshold_value: float = 0.0
    status: AlertStatus = AlertStatus.ACTIVE
    triggered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None

    def transition(self, target, at=None, by=None):
        """Move to ``target`` status, stamping the matching timestamp."""
        target = AlertStatus(target)
        if not self.status.can_transition_to(target):
            raise InvalidTransitionError(
                f"Alert {self.id}: cannot move from {self.status.value} to {target.value}"
            )
        at = at or datetime.now(timezone.utc)
        if target is AlertStatus.ACKNOWLEDGED:
            self.acknowledged_at = at
            self.acknowledged_by = by
        elif target is AlertStatus.RESOLVED:
            self.resolved_at = at
            self.resolved_by = by
        self.status = target
        return self

    def to_dict(self):
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "device_id": self.device_id,
            "severity": self.severity.value,
            "message": self.message,
            "metric": self.metric,
            "metric_value": self.metric_value,
            "threshold_value": self.threshold_value,
            "status": self.status.value,
            "triggered_at": _iso(self.triggered_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "notes": self.notes,
        }


@dataclass
class AlertSubscription:
    """Who hears about newly created alerts, and through which channels.

    Empty ``device_ids`` or ``metrics`` mean every device or metric. Quiet hours
    are minutes after local midnight in ``tz_name``; a window may wrap midnight.
    """
    recipient: Recipient
    severities: frozenset = frozenset({Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL})
    device_ids: frozenset = frozenset()
    metrics: frozenset = frozenset()
    channels: tuple = (NotificationChannel.EMAIL, NotificationChannel.REALTIME)
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None
    tz_name: str = "UTC"
    enabled: bool = True

    def matches(self, instance):
        if not self.enabled or instance.severity not in self.severities:
            return False
        if self.device_ids and instance.device_id not in self.device_ids:
            return False
        return not self.metrics or instance.metric in self.metrics

    def in_quiet_window(self, minute_of_day):
        start, end = self.quiet_hours_start, self.quiet_hours_end
        if start is None or end is None:
            return False
        if start <= end:
            return start <= minute_of_day < end
        return minute_of_day >= start or minute_of_day < end


def _iso(value):
    return value.isoformat() if value is not None else None
