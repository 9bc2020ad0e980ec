"""SQLite database for metric samples, alert rules, alert history, and escalation state."""
import json
import sqlite3
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from models.alerts import AlertCondition, AlertInstance, AlertRule
from models.enums import AlertStatus, EscalationPhase, Severity
from models.escalation import EscalationPolicy, EscalationState, EscalationStep

logger = logging.getLogger("mspalerts.db")


def to_iso(value):
    """Serialize a datetime as a UTC ISO-8601 string (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value):
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    def __init__(self, db_path="data/alerts.db"):
        self.db_path = db_path
        self.conn = None
        # One connection is shared by the ingestion path and the scheduler thread
        self._lock = threading.RLock()

    def connect(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS devices (
                id TEXT PRIMARY KEY,
                last_metrics_received TEXT
            );

            CREATE TABLE IF NOT EXISTS metric_samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_id TEXT NOT NULL,
                collected_at TEXT NOT NULL,
                received_at TEXT NOT NULL,
                metric_values TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_samples_device_time
                ON metric_samples(device_id, collected_at);

            CREATE TABLE IF NOT EXISTS alert_rules (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                alert_type TEXT DEFAULT 'threshold',
                severity TEXT NOT NULL,
                device_id TEXT,
                conditions TEXT,
                is_active INTEGER DEFAULT 1,
                soft_deleted INTEGER DEFAULT 0,
                last_triggered TEXT,
                trigger_count INTEGER DEFAULT 0,
                description TEXT DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_rules_device
                ON alert_rules(device_id);

            CREATE TABLE IF NOT EXISTS alert_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_id TEXT NOT NULL,
                device_id TEXT NOT NULL,
                severity TEXT NOT NULL,
                message TEXT,
                metric TEXT,
                metric_value REAL,
                threshold_value REAL,
                status TEXT NOT NULL DEFAULT 'active',
                triggered_at TEXT NOT NULL,
                acknowledged_at TEXT,
                acknowledged_by TEXT,
                resolved_at TEXT,
                resolved_by TEXT,
                notes TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_alerts_status
                ON alert_history(status, severity);
            CREATE INDEX IF NOT EXISTS idx_alerts_rule_device
                ON alert_history(rule_id, device_id);
            CREATE INDEX IF NOT EXISTS idx_alerts_triggered
                ON alert_history(triggered_at);

            CREATE TABLE IF NOT EXISTS escalation_policies (
                id TEXT PRIMARY KEY,
                policy_name TEXT NOT NULL,
                description TEXT DEFAULT '',
                trigger_severities TEXT NOT NULL,
                trigger_after_minutes INTEGER NOT NULL,
                enabled INTEGER DEFAULT 1,
                steps TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS escalation_state (
                instance_id INTEGER NOT NULL,
                policy_id TEXT NOT NULL,
                entered_at TEXT NOT NULL,
                last_executed_step INTEGER NOT NULL DEFAULT -1,
                last_executed_at TEXT,
                next_step_index INTEGER NOT NULL DEFAULT 0,
                next_due_at TEXT,
                phase TEXT NOT NULL DEFAULT 'escalating',
                PRIMARY KEY (instance_id, policy_id)
            );

            CREATE INDEX IF NOT EXISTS idx_escalation_phase_due
                ON escalation_state(phase, next_due_at);

            CREATE TABLE IF NOT EXISTS escalation_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id INTEGER NOT NULL,
                policy_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                executed_at TEXT NOT NULL,
                UNIQUE (instance_id, policy_id, step_index)
            );

            CREATE TABLE IF NOT EXISTS alert_notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id INTEGER NOT NULL,
                policy_id TEXT,
                step_index INTEGER,
                channel TEXT NOT NULL,
                recipient_id TEXT,
                recipient_name TEXT,
                status TEXT NOT NULL,
                error_message TEXT,
                sent_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_notifications_instance
                ON alert_notifications(instance_id);
        """)
        self.conn.commit()

    def _write(self, sql, params=()):
        with self._lock:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
            return cur

    def _fetchone(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # --- Devices & Samples ---

    def touch_device(self, device_id, at):
        self._write("""
            INSERT INTO devices (id, last_metrics_received) VALUES (?, ?)
            ON CONFLICT(id) DO UPDATE SET last_metrics_received = excluded.last_metrics_received
        """, (device_id, to_iso(at)))

    def get_device(self, device_id):
        row = self._fetchone("SELECT * FROM devices WHERE id = ?", (device_id,))
        return dict(row) if row else None

    def save_samples(self, samples, received_at):
        with self._lock:
            self.conn.executemany("""
                INSERT INTO metric_samples (device_id, collected_at, received_at, metric_values)
                VALUES (?, ?, ?, ?)
            """, [(s.device_id, to_iso(s.collected_at), to_iso(received_at), json.dumps(s.values))
                  for s in samples])
            self.conn.commit()
        logger.debug(f"Saved {len(samples)} samples")

    def get_samples(self, device_id, limit=100):
        rows = self._fetchall("""
            SELECT * FROM metric_samples WHERE device_id = ?
            ORDER BY collected_at DESC LIMIT ?
        """, (device_id, limit))
        return [{
            "device_id": r["device_id"],
            "collected_at": from_iso(r["collected_at"]),
            "values": json.loads(r["metric_values"]),
        } for r in rows]

    # --- Alert Rules ---

    def upsert_rule(self, rule, now):
        self._write("""
            INSERT INTO alert_rules
            (id, name, alert_type, severity, device_id, conditions, is_active,
             soft_deleted, description, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                alert_type = excluded.alert_type,
                severity = excluded.severity,
                device_id = excluded.device_id,
                conditions = excluded.conditions,
                is_active = excluded.is_active,
                soft_deleted = excluded.soft_deleted,
                description = excluded.description,
                updated_at = excluded.updated_at
        """, (
            rule.id, rule.name, rule.alert_type, Severity(rule.severity).value, rule.device_id,
            json.dumps(rule.condition.to_dict()), int(rule.is_active), int(rule.soft_deleted),
            rule.description, to_iso(now), to_iso(now),
        ))

    def get_rule(self, rule_id):
        row = self._fetchone("SELECT * FROM alert_rules WHERE id = ?", (rule_id,))
        return _row_to_rule(row) if row else None

    def list_rules(self, include_deleted=False):
        query = "SELECT * FROM alert_rules"
        if not include_deleted:
            query += " WHERE soft_deleted = 0"
        query += " ORDER BY rowid ASC"
        return [_row_to_rule(r) for r in self._fetchall(query)]

    def find_rules_for_device(self, device_id):
        """Active rules scoped to ``device_id`` or global, device-specific first, then creation order."""
        rows = self._fetchall("""
            SELECT * FROM alert_rules
            WHERE (device_id = ? OR device_id IS NULL)
              AND is_active = 1
              AND soft_deleted = 0
            ORDER BY CASE WHEN device_id IS NULL THEN 1 ELSE 0 END, rowid ASC
        """, (device_id,))
        return [_row_to_rule(r) for r in rows]

    def soft_delete_rule(self, rule_id, now):
        cur = self._write("""
            UPDATE alert_rules SET soft_deleted = 1, updated_at = ?
            WHERE id = ? AND soft_deleted = 0
        """, (to_iso(now), rule_id))
        return cur.rowcount == 1

    def increment_rule_trigger(self, rule_id, at):
        self._write("""
            UPDATE alert_rules
            SET last_triggered = ?,
                trigger_count = trigger_count + 1,
                updated_at = ?
            WHERE id = ?
        """, (to_iso(at), to_iso(at), rule_id))

    # --- Alert History ---

    def insert_alert(self, instance):
        cur = self._write("""
            INSERT INTO alert_history
            (rule_id, device_id, severity, message, metric, metric_value,
             threshold_value, status, triggered_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            instance.rule_id, instance.device_id, instance.severity.value, instance.message,
            instance.metric, instance.metric_value, instance.threshold_value,
            instance.status.value, to_iso(instance.triggered_at),
        ))
        instance.id = cur.lastrowid
        return instance.id

    def get_alert(self, alert_id):
        row = self._fetchone("SELECT * FROM alert_history WHERE id = ?", (alert_id,))
        return _row_to_instance(row) if row else None

    def get_alert_status(self, alert_id):
        row = self._fetchone(
            "SELECT status FROM alert_history WHERE id = ?", (alert_id,)
        )
        return AlertStatus(row["status"]) if row else None

    def update_alert_status(self, instance, expected_status):
        """Persist a status transition only if the stored status is still ``expected_status``."""
        cur = self._write("""
            UPDATE alert_history
            SET status = ?, acknowledged_at = ?, acknowledged_by = ?,
                resolved_at = ?, resolved_by = ?, notes = COALESCE(?, notes)
            WHERE id = ? AND status = ?
        """, (
            instance.status.value, to_iso(instance.acknowledged_at), instance.acknowledged_by,
            to_iso(instance.resolved_at), instance.resolved_by, instance.notes,
            instance.id, AlertStatus(expected_status).value,
        ))
        return cur.rowcount == 1

    def list_alerts(self, status=None, device_id=None, limit=50):
        query = "SELECT * FROM alert_history WHERE 1=1"
        params = []
        if status:
            query += " AND status = ?"
            params.append(AlertStatus(status).value)
        if device_id:
            query += " AND device_id = ?"
            params.append(device_id)
        query += " ORDER BY triggered_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [_row_to_instance(r) for r in self._fetchall(query, params)]

    def get_active_alerts(self, severities=None, triggered_before=None):
        query = "SELECT * FROM alert_history WHERE status = 'active'"
        params = []
        if severities:
            values = [Severity(s).value for s in severities]
            query += f" AND severity IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        if triggered_before:
            query += " AND triggered_at <= ?"
            params.append(to_iso(triggered_before))
        query += " ORDER BY triggered_at ASC, id ASC"
        return [_row_to_instance(r) for r in self._fetchall(query, params)]

    def find_unresolved_alerts(self, rule_id, device_id, since=None):
        query = """
            SELECT * FROM alert_history
            WHERE rule_id = ? AND device_id = ? AND status != 'resolved'
        """
        params = [rule_id, device_id]
        if since:
            query += " AND triggered_at >= ?"
            params.append(to_iso(since))
        query += " ORDER BY triggered_at ASC, id ASC"
        return [_row_to_instance(r) for r in self._fetchall(query, params)]

    def delete_resolved_alerts(self, resolved_before):
        """Delete resolved alerts whose resolution predates ``resolved_before``; unresolved rows are never touched."""
        with self._lock:
            cur = self.conn.execute("""
                DELETE FROM alert_history
                WHERE status = 'resolved'
                  AND resolved_at IS NOT NULL
                  AND resolved_at < ?
            """, (to_iso(resolved_before),))
            deleted = cur.rowcount
            self.conn.execute("""
                DELETE FROM escalation_state
                WHERE instance_id NOT IN (SELECT id FROM alert_history)
            """)
            self.conn.commit()
        return deleted

    def get_alert_stats(self, days=30, now=None):
        now = now or datetime.now(timezone.utc)
        cutoff = to_iso(now - timedelta(days=days))
        row = self._fetchone("""
            SELECT
                COUNT(*) AS total_alerts,
                COUNT(CASE WHEN severity = 'critical' THEN 1 END) AS critical_count,
                COUNT(CASE WHEN severity = 'high' THEN 1 END) AS high_count,
                COUNT(CASE WHEN severity = 'medium' THEN 1 END) AS medium_count,
                COUNT(CASE WHEN severity = 'low' THEN 1 END) AS low_count,
                COUNT(acknowledged_at) AS acknowledged_count,
                COUNT(resolved_at) AS resolved_count,
                AVG(CASE WHEN acknowledged_at IS NOT NULL
                    THEN (julianday(acknowledged_at) - julianday(triggered_at)) * 86400 END)
                    AS avg_acknowledge_seconds,
                AVG(CASE WHEN resolved_at IS NOT NULL
                    THEN (julianday(resolved_at) - julianday(triggered_at)) * 86400 END)
                    AS avg_resolution_seconds
            FROM alert_history
            WHERE triggered_at >= ?
        """, (cutoff,))
        return dict(row)

    # --- Escalation Policies ---

    def upsert_policy(self, policy, now):
        self._write("""
            INSERT INTO escalation_policies
            (id, policy_name, description, trigger_severities, trigger_after_minutes,
             enabled, steps, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                policy_name = excluded.policy_name,
                description = excluded.description,
                trigger_severities = excluded.trigger_severities,
                trigger_after_minutes = excluded.trigger_after_minutes,
                enabled = excluded.enabled,
                steps = excluded.steps,
                updated_at = excluded.updated_at
        """, (
            policy.id, policy.policy_name, policy.description,
            json.dumps(sorted(Severity(s).value for s in policy.trigger_severities)),
            policy.trigger_after_minutes, int(policy.enabled),
            json.dumps([s.to_dict() for s in policy.steps]), to_iso(now), to_iso(now),
        ))

    def get_policy(self, policy_id):
        row = self._fetchone(
            "SELECT * FROM escalation_policies WHERE id = ?", (policy_id,)
        )
        return _row_to_policy(row) if row else None

    def list_policies(self, enabled_only=False):
        query = "SELECT * FROM escalation_policies"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY trigger_after_minutes ASC, rowid ASC"
        return [_row_to_policy(r) for r in self._fetchall(query)]

    # --- Escalation State ---

    def create_escalation_state(self, state):
        """Insert a new scheduled-action record; an existing one for the same pair is kept."""
        cur = self._write("""
            INSERT OR IGNORE INTO escalation_state
            (instance_id, policy_id, entered_at, last_executed_step, last_executed_at,
             next_step_index, next_due_at, phase)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            state.instance_id, state.policy_id, to_iso(state.entered_at),
            state.last_executed_step, to_iso(state.last_executed_at),
            state.next_step_index, to_iso(state.next_due_at), state.phase.value,
        ))
        return cur.rowcount == 1

    def get_escalation_state(self, instance_id, policy_id):
        row = self._fetchone("""
            SELECT * FROM escalation_state WHERE instance_id = ? AND policy_id = ?
        """, (instance_id, policy_id))
        return _row_to_state(row) if row else None

    def list_escalation_states(self, phase=None, instance_id=None):
        query = "SELECT * FROM escalation_state WHERE 1=1"
        params = []
        if phase:
            query += " AND phase = ?"
            params.append(EscalationPhase(phase).value)
        if instance_id is not None:
            query += " AND instance_id = ?"
            params.append(instance_id)
        query += " ORDER BY next_due_at ASC, instance_id ASC"
        return [_row_to_state(r) for r in self._fetchall(query, params)]

    def claim_escalation_step(self, state, step_index, executed_at, next_due_at, phase):
        """Atomically mark ``step_index`` executed for ``state``.

        Compare-and-set on ``last_executed_step``: only the caller that moves it from
        ``step_index - 1`` to ``step_index`` wins; the claim and its log row commit together.
        Returns False if another scan already claimed the step or the state left ESCALATING.
        """
        with self._lock:
            try:
                cur = self.conn.execute("""
                    UPDATE escalation_state
                    SET last_executed_step = ?, last_executed_at = ?,
                        next_step_index = ?, next_due_at = ?, phase = ?
                    WHERE instance_id = ? AND policy_id = ?
                      AND last_executed_step = ? AND phase = 'escalating'
                """, (
                    step_index, to_iso(executed_at), step_index + 1, to_iso(next_due_at),
                    EscalationPhase(phase).value, state.instance_id, state.policy_id,
                    step_index - 1,
                ))
                if cur.rowcount != 1:
                    self.conn.rollback()
                    return False
                self.conn.execute("""
                    INSERT INTO escalation_log (instance_id, policy_id, step_index, executed_at)
                    VALUES (?, ?, ?, ?)
                """, (state.instance_id, state.policy_id, step_index, to_iso(executed_at)))
                self.conn.commit()
                return True
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def set_escalation_phase(self, instance_id, policy_id, phase):
        cur = self._write("""
            UPDATE escalation_state SET phase = ?, next_due_at = NULL
            WHERE instance_id = ? AND policy_id = ? AND phase = 'escalating'
        """, (EscalationPhase(phase).value, instance_id, policy_id))
        return cur.rowcount == 1

    def cancel_escalations(self, instance_id):
        cur = self._write("""
            UPDATE escalation_state SET phase = 'cancelled', next_due_at = NULL
            WHERE instance_id = ? AND phase = 'escalating'
        """, (instance_id,))
        return cur.rowcount

    def get_executed_steps(self, instance_id, policy_id):
        rows = self._fetchall("""
            SELECT step_index FROM escalation_log
            WHERE instance_id = ? AND policy_id = ?
            ORDER BY id ASC
        """, (instance_id, policy_id))
        return [r["step_index"] for r in rows]

    # --- Notifications ---

    def log_notification(self, instance_id, policy_id, step_index, channel, recipient,
                         status, error_message=None, sent_at=None):
        self._write("""
            INSERT INTO alert_notifications
            (instance_id, policy_id, step_index, channel, recipient_id, recipient_name,
             status, error_message, sent_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            instance_id, policy_id, step_index, channel,
            recipient.id if recipient else None, recipient.name if recipient else None,
            status, error_message, to_iso(sent_at or datetime.now(timezone.utc)),
        ))

    def get_notifications(self, instance_id):
        rows = self._fetchall("""
            SELECT * FROM alert_notifications WHERE instance_id = ? ORDER BY id ASC
        """, (instance_id,))
        return [dict(r) for r in rows]

    def get_escalation_stats(self):
        row = self._fetchone("""
            SELECT
                COUNT(*) AS total_notifications,
                COUNT(CASE WHEN status = 'sent' THEN 1 END) AS successful,
                COUNT(CASE WHEN status = 'failed' THEN 1 END) AS failed,
                COUNT(DISTINCT instance_id) AS unique_alerts_escalated,
                COUNT(CASE WHEN channel = 'email' THEN 1 END) AS email,
                COUNT(CASE WHEN channel = 'sms' THEN 1 END) AS sms,
                COUNT(CASE WHEN channel = 'realtime' THEN 1 END) AS realtime
            FROM alert_notifications
            WHERE policy_id IS NOT NULL
        """)
        stats = dict(row)
        stats["steps_executed"] = self._fetchone(
            "SELECT COUNT(*) AS cnt FROM escalation_log"
        )["cnt"]
        return stats


def _row_to_rule(row):
    try:
        conditions = json.loads(row["conditions"]) if row["conditions"] else {}
    except ValueError:
        logger.warning(f"Rule {row['id']} has unreadable conditions: {row['conditions']!r}")
        conditions = {}
    return AlertRule(
        id=row["id"],
        name=row["name"],
        alert_type=row["alert_type"],
        severity=Severity(row["severity"]),
        device_id=row["device_id"],
        condition=AlertCondition.from_dict(conditions),
        is_active=bool(row["is_active"]),
        soft_deleted=bool(row["soft_deleted"]),
        last_triggered=from_iso(row["last_triggered"]),
        trigger_count=row["trigger_count"],
        description=row["description"] or "",
    )


def _row_to_instance(row):
    return AlertInstance(
        id=row["id"],
        rule_id=row["rule_id"],
        device_id=row["device_id"],
        severity=Severity(row["severity"]),
        message=row["message"] or "",
        metric=row["metric"] or "",
        metric_value=row["metric_value"],
        threshold_value=row["threshold_value"],
        status=AlertStatus(row["status"]),
        triggered_at=from_iso(row["triggered_at"]),
        acknowledged_at=from_iso(row["acknowledged_at"]),
        acknowledged_by=row["acknowledged_by"],
        resolved_at=from_iso(row["resolved_at"]),
        resolved_by=row["resolved_by"],
        notes=row["notes"],
    )


def _row_to_policy(row):
    return EscalationPolicy(
        id=row["id"],
        policy_name=row["policy_name"],
        description=row["description"] or "",
        trigger_severities=frozenset(Severity(s) for s in json.loads(row["trigger_severities"])),
        trigger_after_minutes=row["trigger_after_minutes"],
        enabled=bool(row["enabled"]),
        steps=[EscalationStep.from_dict(s) for s in json.loads(row["steps"])],
    )


def _row_to_state(row):
    return EscalationState(
        instance_id=row["instance_id"],
        policy_id=row["policy_id"],
        entered_at=from_iso(row["entered_at"]),
        last_executed_step=row["last_executed_step"],
        last_executed_at=from_iso(row["last_executed_at"]),
        next_step_index=row["next_step_index"],
        next_due_at=from_iso(row["next_due_at"]),
        phase=EscalationPhase(row["phase"]),
    )
