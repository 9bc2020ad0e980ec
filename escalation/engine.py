"""Escalation policy engine.

Each active alert matched by an enabled policy owns one scheduled-action record
(``escalation_state``: next step index + due time). ``scan()`` is invoked by the
scheduler, materialises records for alerts that crossed a policy's
``trigger_after_minutes``, and executes whichever steps are due.

Step execution is claim-then-act: the step is atomically marked executed before
any notification goes out, so duplicate or overlapping scans never resend it.
Acknowledging or resolving an alert cancels its records through the event bus,
and the alert's status is re-read right before each step is claimed and sent.
Policies are read live on every scan: a severity dropped from a policy holds
its records, and a new ``trigger_after_minutes`` moves step 0's due time.
"""
import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from escalation.directory import RoleDirectory
from models.enums import AlertStatus, EscalationPhase, EventType
from models.escalation import EscalationState

logger = logging.getLogger("mspalerts.escalation.engine")


class EscalationEngine:
    def __init__(self, db, policies, directory: RoleDirectory, dispatcher, events):
        self.db = db
        self.policies = policies
        self.directory = directory
        self.dispatcher = dispatcher
        self.events = events
        events.subscribe(EventType.ALERT_ACKNOWLEDGED, self._on_alert_closed)
        events.subscribe(EventType.ALERT_RESOLVED, self._on_alert_closed)

    def _on_alert_closed(self, event):
        self.cancel(event.instance.id)

    def cancel(self, instance_id):
        cancelled = self.db.cancel_escalations(instance_id)
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending escalation(s) for alert {instance_id}")
        return cancelled

    # ── scan ─────────────────────────────────────────

    def scan(self, now=None):
        """Enter newly eligible alerts into escalation and run every due step."""
        now = now or datetime.now(timezone.utc)
        policies = {p.id: p for p in self.policies.list_policies()}
        enabled = [p for p in policies.values() if p.enabled]
        if not enabled:
            logger.debug("No enabled escalation policies")
            return {"checked": 0, "escalated": 0, "cancelled": 0}

        for policy in enabled:
            self._enter_eligible(policy, now)

        checked = escalated = cancelled = 0
        for state in self.db.list_escalation_states(phase=EscalationPhase.ESCALATING):
            policy = policies.get(state.policy_id)
            if policy is None or not policy.enabled:
                continue
            checked += 1
            try:
                executed, was_cancelled = self._advance(state, policy, now)
            except Exception as e:
                logger.error(f"Escalation of alert {state.instance_id} under {policy.id} failed: {e}")
                continue
            escalated += executed
            cancelled += int(was_cancelled)

        if escalated or cancelled:
            logger.info(f"Escalation scan: {checked} checked, {escalated} steps executed, {cancelled} cancelled")
        return {"checked": checked, "escalated": escalated, "cancelled": cancelled}

    def _enter_eligible(self, policy, now):
        cutoff = now - timedelta(minutes=policy.trigger_after_minutes)
        steps = policy.ordered_steps()
        for instance in self.db.get_active_alerts(
            severities=policy.trigger_severities, triggered_before=cutoff,
        ):
            state = EscalationState(
                instance_id=instance.id,
                policy_id=policy.id,
                entered_at=instance.triggered_at + timedelta(minutes=policy.trigger_after_minutes),
            )
            state.next_due_at = state.due_at(steps)
            if self.db.create_escalation_state(state):
                logger.info(f"Alert {instance.id} entered escalation under policy {policy.policy_name}")

    def _advance(self, state, policy, now):
        """Execute due steps for one record, in order. Returns (steps executed, cancelled)."""
        steps = policy.ordered_steps()
        executed = 0
        while True:
            if state.next_step_index >= len(steps):
                # Policy was shortened after this alert passed its new last step
                self.db.set_escalation_phase(state.instance_id, state.policy_id, EscalationPhase.FULLY_ESCALATED)
                return executed, False

            instance = self.db.get_alert(state.instance_id)
            if instance is None or instance.status is not AlertStatus.ACTIVE:
                self.cancel(state.instance_id)
                return executed, True
            if not policy.applies_to(instance.severity):
                logger.debug(f"Policy {policy.id} no longer covers {instance.severity.value}; alert {instance.id} held")
                return executed, False

            if state.next_step_index == 0:
                state.entered_at = instance.triggered_at + timedelta(minutes=policy.trigger_after_minutes)
            if now < state.due_at(steps):
                return executed, False

            step_index = state.next_step_index
            next_index = step_index + 1
            last = next_index >= len(steps)
            phase = EscalationPhase.FULLY_ESCALATED if last else EscalationPhase.ESCALATING
            next_due = None if last else now + timedelta(minutes=max(steps[next_index].wait_minutes, 0))

            try:
                claimed = self.db.claim_escalation_step(state, step_index, now, next_due, phase)
            except sqlite3.Error as e:
                logger.error(
                    f"Could not claim step {step_index} for alert {state.instance_id}, "
                    f"retrying next scan: {e}"
                )
                return executed, False
            if not claimed:
                logger.debug(f"Step {step_index} for alert {state.instance_id} already claimed")
                return executed, False

            state.last_executed_step = step_index
            state.last_executed_at = now
            state.next_step_index = next_index
            state.next_due_at = next_due
            state.phase = phase

            self._execute_step(state, policy, steps[step_index], step_index, now)
            executed += 1
            if last:
                logger.info(f"Alert {state.instance_id} fully escalated under {policy.policy_name}")
                return executed, False

    def _execute_step(self, state, policy, step, step_index, now):
        instance = self.db.get_alert(state.instance_id)
        if instance is None or instance.status is not AlertStatus.ACTIVE:
            logger.info(f"Alert {state.instance_id} closed before step {step_index} was sent")
            return

        recipients = self.directory.resolve(step.roles) if step.roles else []
        channels = step.channels
        if not step.roles or not channels:
            logger.warning(f"Policy {policy.id} step {step.order} has no roles or channels; advancing without notifying")
        elif not recipients:
            logger.warning(f"No recipients for roles {', '.join(step.roles)} (policy {policy.id} step {step.order})")
        else:
            minutes = int((now - instance.triggered_at).total_seconds() // 60)
            context = {
                "policy_id": policy.id,
                "policy_name": policy.policy_name,
                "step_number": step.order,
                "minutes_unacknowledged": minutes,
            }
            for channel in channels:
                self._send(recipients, channel, instance, context, state, step_index, now)

        logger.info(
            f"Executed step {step.order} of {policy.policy_name} for alert {instance.id} "
            f"({len(recipients)} recipients)"
        )
        self.events.publish(
            EventType.ESCALATION_STEP_EXECUTED, instance,
            policy_id=policy.id, step_index=step_index, step_order=step.order,
            recipients=[r.id for r in recipients],
        )

    def _send(self, recipients, channel, instance, context, state, step_index, now):
        error = None
        try:
            ok = self.dispatcher.send(recipients, channel, instance, context)
        except Exception as e:
            ok, error = False, str(e)
        if not ok:
            logger.warning(f"{channel.value} escalation for alert {instance.id} failed: {error or 'not delivered'}")
        status = "sent" if ok else "failed"
        for recipient in recipients:
            try:
                self.db.log_notification(
                    instance.id, state.policy_id, step_index, channel.value, recipient,
                    status, error_message=error, sent_at=now,
                )
            except sqlite3.Error as e:
                logger.error(f"Failed to log {channel.value} notification for alert {instance.id}: {e}")

    def get_escalation_stats(self):
        return self.db.get_escalation_stats()
