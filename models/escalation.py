"""Dataclasses for escalation policies, their steps, and per-alert escalation state."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from models.enums import EscalationPhase, NotificationChannel, Severity


@dataclass
class EscalationStep:
    order: int = 1
    wait_minutes: int = 0
    roles: list = field(default_factory=list)
    notify_email: bool = True
    notify_sms: bool = False
    notify_realtime: bool = False

    @property
    def channels(self):
        enabled = []
        if self.notify_email:
            enabled.append(NotificationChannel.EMAIL)
        if self.notify_sms:
            enabled.append(NotificationChannel.SMS)
        if self.notify_realtime:
            enabled.append(NotificationChannel.REALTIME)
        return enabled

    @classmethod
    def from_dict(cls, data):
        return cls(
            order=int(data.get("order", 1)),
            wait_minutes=int(data.get("wait_minutes", 0) or 0),
            roles=list(data.get("roles") or []),
            notify_email=bool(data.get("notify_email", False)),
            notify_sms=bool(data.get("notify_sms", False)),
            notify_realtime=bool(data.get("notify_realtime", False)),
        )

    def to_dict(self):
        return {
            "order": self.order,
            "wait_minutes": self.wait_minutes,
            "roles": list(self.roles),
            "notify_email": self.notify_email,
            "notify_sms": self.notify_sms,
            "notify_realtime": self.notify_realtime,
        }


@dataclass
class EscalationPolicy:
    id: str = ""
    policy_name: str = ""
    description: str = ""
    trigger_severities: frozenset = frozenset({Severity.HIGH, Severity.CRITICAL})
    trigger_after_minutes: int = 30
    enabled: bool = True
    steps: list = field(default_factory=list)

    def ordered_steps(self):
        return sorted(self.steps, key=lambda s: s.order)

    def applies_to(self, severity):
        return Severity(severity) in self.trigger_severities


@dataclass
class EscalationState:
    """Scheduled-action record for one (alert instance, policy) pair."""
    instance_id: int
    policy_id: str
    entered_at: datetime
    last_executed_step: int = -1
    last_executed_at: Optional[datetime] = None
    next_step_index: int = 0
    next_due_at: Optional[datetime] = None
    phase: EscalationPhase = EscalationPhase.ESCALATING

    def due_at(self, steps):
        """When the next step becomes due under ``steps``, or None if none remain."""
        if self.next_step_index >= len(steps):
            return None
        base = self.entered_at if self.next_step_index == 0 else (self.last_executed_at or self.entered_at)
        return base + timedelta(minutes=max(steps[self.next_step_index].wait_minutes, 0))


@dataclass(frozen=True)
class Recipient:
    id: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    realtime_id: Optional[str] = None
    role: str = ""
