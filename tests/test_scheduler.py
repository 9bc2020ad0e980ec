"""Tests for the escalation scheduler and retention cleanup."""
import logging
from datetime import timedelta
from unittest.mock import MagicMock

from models.alerts import AlertInstance
from models.enums import AlertStatus, Severity
from monitor.scheduler import EscalationScheduler
from conftest import T0


class MockEngine:
    def __init__(self, failures=0):
        self.failures = failures
        self.scans = 0

    def scan(self, now=None):
        self.scans += 1
        if self.scans <= self.failures:
            raise RuntimeError("db unavailable")
        return {"checked": 0, "escalated": 0, "cancelled": 0}


def test_scan_job_returns_result():
    sched = EscalationScheduler(MockEngine(), db=None)
    assert sched.scan_job() == {"checked": 0, "escalated": 0, "cancelled": 0}


def test_consecutive_failures_escalate_to_critical(caplog):
    engine = MockEngine(failures=5)
    sched = EscalationScheduler(engine, db=None)
    with caplog.at_level(logging.ERROR, logger="mspalerts.scheduler"):
        for _ in range(5):
            assert sched.scan_job() is None
    assert sched._consecutive_failures == 5
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    sched.scan_job()
    assert sched._consecutive_failures == 0


def test_start_registers_jobs_and_stop_clears():
    engine = MockEngine()
    sched = EscalationScheduler(engine, db=MagicMock(), interval_seconds=30, cleanup_time="04:15")
    sched.start()
    try:
        assert len(sched._scheduler.jobs) == 2
        sched.start()
        assert len(sched._scheduler.jobs) == 2
    finally:
        sched.stop()
    assert sched._scheduler.jobs == []
    assert engine.scans >= 1


def test_cleanup_job_deletes_old_resolved(temp_db):
    old = AlertInstance(rule_id="r", device_id="D1", severity=Severity.HIGH, triggered_at=T0 - timedelta(days=400))
    temp_db.insert_alert(old)
    old.transition(AlertStatus.RESOLVED, at=T0 - timedelta(days=400))
    temp_db.update_alert_status(old, AlertStatus.ACTIVE)
    kept = AlertInstance(rule_id="r", device_id="D1", severity=Severity.HIGH, triggered_at=T0 - timedelta(days=400))
    temp_db.insert_alert(kept)

    sched = EscalationScheduler(MockEngine(), temp_db, retention_days=365)
    assert sched.cleanup_job(now=T0) == 1
    assert temp_db.get_alert(old.id) is None
    assert temp_db.get_alert(kept.id).status is AlertStatus.ACTIVE


def test_cleanup_job_failure_logged():
    db = MagicMock()
    db.delete_resolved_alerts.side_effect = RuntimeError("disk full")
    assert EscalationScheduler(MockEngine(), db).cleanup_job(now=T0) is None
