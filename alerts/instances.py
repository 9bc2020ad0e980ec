"""Alert instance lifecycle: creation from fired rules, acknowledgment, and resolution."""
import logging
from datetime import datetime, timedelta, timezone

from alerts.evaluator import RuleEvaluator, condition_problem
from models.alerts import AlertInstance, InvalidTransitionError
from models.enums import AlertStatus, EventType

logger = logging.getLogger("mspalerts.alerts.instances")


def render_message(rule, metric_value):
    cond = rule.condition
    return f"{rule.name}: {cond.metric} = {metric_value:g} (threshold: {cond.operator} {cond.threshold:g})"


class AlertInstanceManager:
    def __init__(self, db, events, suppression_minutes=0, auto_resolve=False):
        self.db = db
        self.events = events
        self.suppression_minutes = suppression_minutes
        self.auto_resolve_enabled = auto_resolve

    def record(self, fired_alerts, now=None):
        """Create one active instance per fired alert and bump the rule's counters."""
        now = now or datetime.now(timezone.utc)
        created = []
        for fired in fired_alerts:
            rule = fired.rule
            if self._is_suppressed(rule.id, fired.sample.device_id, now):
                logger.debug(f"Suppressed repeat firing of {rule.id} on {fired.sample.device_id}")
                continue

            instance = AlertInstance(
                rule_id=rule.id,
                device_id=fired.sample.device_id,
                severity=rule.severity,
                message=render_message(rule, fired.metric_value),
                metric=rule.condition.metric,
                metric_value=float(fired.metric_value),
                threshold_value=float(rule.condition.threshold),
                status=AlertStatus.ACTIVE,
                triggered_at=now,
            )
            self.db.insert_alert(instance)
            self.db.increment_rule_trigger(rule.id, now)
            created.append(instance)
            logger.info(f"Alert {instance.id} [{instance.severity.value}] {instance.message}")
            self.events.publish(EventType.ALERT_CREATED, instance)
        return created

    def _is_suppressed(self, rule_id, device_id, now):
        if not self.suppression_minutes:
            return False
        since = now - timedelta(minutes=self.suppression_minutes)
        return bool(self.db.find_unresolved_alerts(rule_id, device_id, since=since))

    def acknowledge(self, instance_id, by=None, now=None):
        return self._transition(instance_id, AlertStatus.ACKNOWLEDGED, by, now)

    def resolve(self, instance_id, by=None, notes=None, now=None):
        return self._transition(instance_id, AlertStatus.RESOLVED, by, now, notes=notes)

    def _transition(self, instance_id, target, by, now, notes=None):
        instance = self.db.get_alert(instance_id)
        if instance is None:
            raise KeyError(f"Alert {instance_id} not found")
        previous = instance.status
        instance.transition(target, at=now or datetime.now(timezone.utc), by=by)
        if notes:
            instance.notes = notes
        if not self.db.update_alert_status(instance, previous):
            # Another actor moved it first; report against what is stored now
            current = self.db.get_alert_status(instance_id)
            raise InvalidTransitionError(
                f"Alert {instance_id}: status changed concurrently to {current.value if current else 'deleted'}"
            )
        event = EventType.ALERT_ACKNOWLEDGED if target is AlertStatus.ACKNOWLEDGED else EventType.ALERT_RESOLVED
        logger.info(f"Alert {instance_id} {target.value} by {by or 'unknown'}")
        self.events.publish(event, instance, previous_status=previous.value)
        return instance

    def auto_resolve(self, device_id, samples, rules, now=None):
        """Resolve open alerts whose rule no longer matches the newest sample in the batch."""
        if not self.auto_resolve_enabled or not samples:
            return []
        evaluator = RuleEvaluator()
        latest = max(samples, key=lambda s: s.collected_at)
        resolved = []
        for rule in rules:
            if condition_problem(rule.condition):
                continue
            value = evaluator.extract_metric_value(latest, rule.condition.metric)
            if value is None:
                continue
            if evaluator.evaluate_condition(value, rule.condition.operator, rule.condition.threshold):
                continue
            for instance in self.db.find_unresolved_alerts(rule.id, device_id):
                try:
                    resolved.append(self.resolve(
                        instance.id, by="system",
                        notes=f"Auto-resolved: {rule.condition.metric} = {value:g}", now=now,
                    ))
                except InvalidTransitionError as e:
                    logger.debug(f"Auto-resolve skipped: {e}")
        return resolved

    def get(self, instance_id):
        return self.db.get_alert(instance_id)

    def list_active(self, device_id=None, limit=100):
        return self.db.list_alerts(status=AlertStatus.ACTIVE, device_id=device_id, limit=limit)

    def history(self, status=None, device_id=None, limit=50):
        return self.db.list_alerts(status=status, device_id=device_id, limit=limit)
