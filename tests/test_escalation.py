"""Tests for escalation policies, the escalation engine, and role resolution."""
import sqlite3
import threading
import pytest
from datetime import timedelta

from alerts.evaluator import RuleEvaluator
from alerts.instances import AlertInstanceManager
from alerts.rule_store import RuleStore
from escalation import EscalationEngine, PolicyStore, PolicyValidationError, StaticDirectory
from escalation.policies import parse_policy
from models.enums import AlertStatus, EscalationPhase, EventType, Severity
from models.escalation import EscalationPolicy, EscalationStep
from conftest import T0, make_rule, make_sample


DIRECTORY_CONFIG = {"directory": {"roles": {
    "manager": [{"id": "m1", "name": "Mia Lopez", "email": "mia@example.com", "phone": "+15550100"}],
    "executive": [
        {"id": "e1", "name": "Eli Park", "email": "eli@example.com"},
        {"id": "m1", "name": "Mia Lopez", "email": "mia@example.com", "phone": "+15550100"},
    ],
}}}


class MockDispatcher:
    """Records every send; channels in ``failing`` report failure."""
    def __init__(self, failing=(), raising=()):
        self.sent = []
        self.failing = set(failing)
        self.raising = set(raising)

    def send(self, recipients, channel, instance, context=None):
        self.sent.append({
            "instance_id": instance.id,
            "channel": channel.value,
            "recipients": [r.id for r in recipients],
            "step_number": context["step_number"],
            "policy_id": context["policy_id"],
        })
        if channel.value in self.raising:
            raise ConnectionError("gateway down")
        return channel.value not in self.failing


def _step(order=1, wait=0, roles=("manager",), email=True, sms=False, realtime=False):
    return EscalationStep(order=order, wait_minutes=wait, roles=list(roles),
                          notify_email=email, notify_sms=sms, notify_realtime=realtime)


def _policy(id="critical_path", trigger_after=30, steps=None,
            severities=(Severity.HIGH, Severity.CRITICAL), enabled=True):
    return EscalationPolicy(
        id=id,
        policy_name=id.replace("_", " ").title(),
        trigger_severities=frozenset(severities),
        trigger_after_minutes=trigger_after,
        enabled=enabled,
        steps=steps if steps is not None else [_step()],
    )


@pytest.fixture
def dispatcher():
    return MockDispatcher()


@pytest.fixture
def stack(temp_db, events, dispatcher):
    rules = RuleStore(temp_db)
    rules.save_rule(make_rule(severity=Severity.CRITICAL))
    rules.save_rule(make_rule("mem_low_sev", metric="memory_percent", severity=Severity.LOW))
    policies = PolicyStore(temp_db)
    return {
        "db": temp_db,
        "rules": rules,
        "instances": AlertInstanceManager(temp_db, events),
        "policies": policies,
        "dispatcher": dispatcher,
        "engine": EscalationEngine(temp_db, policies, StaticDirectory(DIRECTORY_CONFIG), dispatcher, events),
    }


def _open_alert(stack, at=T0, **values):
    values = values or {"cpu_percent": 95}
    sample = make_sample(at=at, **values)
    fired = RuleEvaluator().evaluate([sample], stack["rules"].find_effective_rules("D1"))
    return stack["instances"].record(fired, now=at)[0]


# ── Entry & first step ──────────────────────────────────

def test_first_step_runs_after_trigger_delay(stack):
    stack["policies"].save_policy(_policy())
    inst = _open_alert(stack)
    engine, db = stack["engine"], stack["db"]

    assert engine.scan(now=T0 + timedelta(minutes=29))["escalated"] == 0
    assert db.list_escalation_states() == []

    result = engine.scan(now=T0 + timedelta(minutes=31))
    assert result == {"checked": 1, "escalated": 1, "cancelled": 0}
    assert stack["dispatcher"].sent == [{
        "instance_id": inst.id, "channel": "email", "recipients": ["m1"],
        "step_number": 1, "policy_id": "critical_path",
    }]
    state = db.get_escalation_state(inst.id, "critical_path")
    assert state.last_executed_step == 0
    assert state.entered_at == T0 + timedelta(minutes=30)
    assert state.phase is EscalationPhase.FULLY_ESCALATED
    assert db.get_executed_steps(inst.id, "critical_path") == [0]


def test_acknowledged_before_threshold_never_escalates(stack):
    stack["policies"].save_policy(_policy())
    inst = _open_alert(stack)
    stack["instances"].acknowledge(inst.id, by="tech", now=T0 + timedelta(minutes=29))

    result = stack["engine"].scan(now=T0 + timedelta(minutes=31))
    assert result["escalated"] == 0
    assert stack["dispatcher"].sent == []
    assert stack["db"].list_escalation_states(instance_id=inst.id) == []


def test_second_step_waits_after_first(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60, roles=["executive"])]))
    inst = _open_alert(stack)
    engine, sent = stack["engine"], stack["dispatcher"].sent

    assert engine.scan(now=T0 + timedelta(minutes=30))["escalated"] == 1
    assert engine.scan(now=T0 + timedelta(minutes=45))["escalated"] == 0
    assert len(sent) == 1
    assert engine.scan(now=T0 + timedelta(minutes=91))["escalated"] == 1

    assert [s["step_number"] for s in sent] == [1, 2]
    assert sent[1]["recipients"] == ["e1", "m1"]
    assert stack["db"].get_executed_steps(inst.id, "critical_path") == [0, 1]


def test_steps_sorted_by_order(stack):
    stack["policies"].save_policy(_policy(steps=[_step(2, 10, roles=["executive"]), _step(1, 0)]))
    _open_alert(stack)
    stack["engine"].scan(now=T0 + timedelta(minutes=30))
    stack["engine"].scan(now=T0 + timedelta(minutes=40))
    assert [s["step_number"] for s in stack["dispatcher"].sent] == [1, 2]


def test_zero_wait_steps_run_in_one_scan(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 0, roles=["executive"])]))
    inst = _open_alert(stack)
    assert stack["engine"].scan(now=T0 + timedelta(minutes=31))["escalated"] == 2
    assert stack["db"].get_executed_steps(inst.id, "critical_path") == [0, 1]


def test_later_waits_count_from_actual_execution(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 10, roles=["executive"])]))
    inst = _open_alert(stack)
    engine = stack["engine"]

    # scanned long after both steps would have been due
    assert engine.scan(now=T0 + timedelta(minutes=120))["escalated"] == 1
    assert engine.scan(now=T0 + timedelta(minutes=125))["escalated"] == 0
    assert engine.scan(now=T0 + timedelta(minutes=130))["escalated"] == 1
    assert stack["db"].get_executed_steps(inst.id, "critical_path") == [0, 1]


# ── Live policy edits ───────────────────────────────────

def test_severity_removed_from_policy_holds_escalation(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60)]))
    inst = _open_alert(stack)
    engine, db = stack["engine"], stack["db"]
    engine.scan(now=T0 + timedelta(minutes=31))

    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60)], severities=[Severity.LOW]))
    assert engine.scan(now=T0 + timedelta(minutes=95))["escalated"] == 0
    assert db.get_executed_steps(inst.id, "critical_path") == [0]
    assert db.get_escalation_state(inst.id, "critical_path").phase is EscalationPhase.ESCALATING

    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60)]))
    assert engine.scan(now=T0 + timedelta(minutes=100))["escalated"] == 1
    assert db.get_executed_steps(inst.id, "critical_path") == [0, 1]


def test_trigger_delay_change_moves_first_step(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 60)]))
    inst = _open_alert(stack)
    engine = stack["engine"]
    assert engine.scan(now=T0 + timedelta(minutes=31))["checked"] == 1

    stack["policies"].save_policy(_policy(trigger_after=120, steps=[_step(1, 60)]))
    assert engine.scan(now=T0 + timedelta(minutes=91))["escalated"] == 0
    assert engine.scan(now=T0 + timedelta(minutes=179))["escalated"] == 0
    assert engine.scan(now=T0 + timedelta(minutes=180))["escalated"] == 1
    assert stack["db"].get_executed_steps(inst.id, "critical_path") == [0]


def test_severity_not_in_policy_is_ignored(stack):
    stack["policies"].save_policy(_policy())
    _open_alert(stack, memory_percent=99)
    assert stack["engine"].scan(now=T0 + timedelta(hours=2))["checked"] == 0
    assert stack["dispatcher"].sent == []


def test_disabled_policy_is_ignored(stack):
    stack["policies"].save_policy(_policy(enabled=False))
    _open_alert(stack)
    assert stack["engine"].scan(now=T0 + timedelta(hours=2)) == {"checked": 0, "escalated": 0, "cancelled": 0}


def test_multiple_policies_escalate_independently(stack):
    stack["policies"].save_policy(_policy("fast", trigger_after=5))
    stack["policies"].save_policy(_policy("slow", trigger_after=60, steps=[_step(roles=["executive"])]))
    inst = _open_alert(stack)
    engine = stack["engine"]

    engine.scan(now=T0 + timedelta(minutes=10))
    assert [s["policy_id"] for s in stack["dispatcher"].sent] == ["fast"]
    engine.scan(now=T0 + timedelta(minutes=61))
    assert [s["policy_id"] for s in stack["dispatcher"].sent] == ["fast", "slow"]
    assert stack["db"].get_executed_steps(inst.id, "fast") == [0]
    assert stack["db"].get_executed_steps(inst.id, "slow") == [0]


def test_step_executed_event(stack, recorded_events):
    stack["policies"].save_policy(_policy())
    inst = _open_alert(stack)
    stack["engine"].scan(now=T0 + timedelta(minutes=31))
    executed = [e for e in recorded_events if e.type is EventType.ESCALATION_STEP_EXECUTED]
    assert len(executed) == 1
    assert executed[0].instance.id == inst.id
    assert executed[0].data["policy_id"] == "critical_path"
    assert executed[0].data["step_index"] == 0
    assert executed[0].data["recipients"] == ["m1"]


# ── Monotonic step order ────────────────────────────────

def test_duplicate_scans_never_repeat_a_step(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60)]))
    inst = _open_alert(stack)
    engine = stack["engine"]
    for minute in (31, 31, 32, 50, 95, 95, 200, 300):
        engine.scan(now=T0 + timedelta(minutes=minute))
    assert stack["db"].get_executed_steps(inst.id, "critical_path") == [0, 1]
    assert len(stack["dispatcher"].sent) == 2


def test_stale_claim_is_rejected(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60)]))
    inst = _open_alert(stack)
    db = stack["db"]
    stack["engine"].scan(now=T0 + timedelta(minutes=30))

    stale = db.get_escalation_state(inst.id, "critical_path")
    stale.last_executed_step = -1
    now = T0 + timedelta(minutes=31)
    assert db.claim_escalation_step(stale, 0, now, None, EscalationPhase.ESCALATING) is False

    # step 1 cannot be claimed twice either
    state = db.get_escalation_state(inst.id, "critical_path")
    assert db.claim_escalation_step(state, 1, now, None, EscalationPhase.FULLY_ESCALATED) is True
    assert db.claim_escalation_step(state, 1, now, None, EscalationPhase.FULLY_ESCALATED) is False
    assert db.get_executed_steps(inst.id, "critical_path") == [0, 1]


def test_step_cannot_be_claimed_out_of_order(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60)]))
    inst = _open_alert(stack)
    db = stack["db"]
    stack["engine"].scan(now=T0 + timedelta(minutes=29))
    stack["engine"]._enter_eligible(stack["policies"].get_policy("critical_path"), T0 + timedelta(minutes=30))

    state = db.get_escalation_state(inst.id, "critical_path")
    assert db.claim_escalation_step(state, 1, T0, None, EscalationPhase.FULLY_ESCALATED) is False
    assert db.get_executed_steps(inst.id, "critical_path") == []


def test_overlapping_scans_from_threads(stack, temp_db, events):
    stack["policies"].save_policy(_policy())
    inst = _open_alert(stack)
    dispatcher = stack["dispatcher"]
    engines = [
        EscalationEngine(temp_db, stack["policies"], StaticDirectory(DIRECTORY_CONFIG), dispatcher, events)
        for _ in range(4)
    ]
    barrier = threading.Barrier(len(engines))

    def run(engine):
        barrier.wait()
        engine.scan(now=T0 + timedelta(minutes=31))

    threads = [threading.Thread(target=run, args=(e,)) for e in engines]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(dispatcher.sent) == 1
    assert temp_db.get_executed_steps(inst.id, "critical_path") == [0]


# ── Cancellation ────────────────────────────────────────

def test_acknowledge_cancels_pending_steps(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60)]))
    inst = _open_alert(stack)
    engine, db = stack["engine"], stack["db"]

    engine.scan(now=T0 + timedelta(minutes=31))
    stack["instances"].acknowledge(inst.id, now=T0 + timedelta(minutes=40))
    assert db.get_escalation_state(inst.id, "critical_path").phase is EscalationPhase.CANCELLED

    for minute in (95, 200, 1000):
        engine.scan(now=T0 + timedelta(minutes=minute))
    assert db.get_executed_steps(inst.id, "critical_path") == [0]
    assert len(stack["dispatcher"].sent) == 1


def test_resolve_cancels_pending_steps(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60)]))
    inst = _open_alert(stack)
    stack["engine"].scan(now=T0 + timedelta(minutes=31))
    stack["instances"].resolve(inst.id, now=T0 + timedelta(minutes=40))
    stack["engine"].scan(now=T0 + timedelta(minutes=200))
    assert stack["db"].get_executed_steps(inst.id, "critical_path") == [0]


def test_status_reread_before_claim(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60)]))
    inst = _open_alert(stack)
    db = stack["db"]
    stack["engine"].scan(now=T0 + timedelta(minutes=31))

    # status changed without going through the event bus
    db.conn.execute("UPDATE alert_history SET status = 'acknowledged' WHERE id = ?", (inst.id,))
    db.conn.commit()

    result = stack["engine"].scan(now=T0 + timedelta(minutes=95))
    assert result["cancelled"] == 1
    assert result["escalated"] == 0
    assert db.get_executed_steps(inst.id, "critical_path") == [0]
    assert db.get_escalation_state(inst.id, "critical_path").phase is EscalationPhase.CANCELLED


# ── Failure handling ────────────────────────────────────

def test_zero_recipients_still_advances(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0, roles=["night_shift"]), _step(2, 10)]))
    inst = _open_alert(stack)
    engine = stack["engine"]
    engine.scan(now=T0 + timedelta(minutes=30))
    assert stack["dispatcher"].sent == []
    assert stack["db"].get_executed_steps(inst.id, "critical_path") == [0]

    engine.scan(now=T0 + timedelta(minutes=40))
    assert [s["step_number"] for s in stack["dispatcher"].sent] == [2]


def test_step_without_channels_still_advances(stack, temp_db):
    # bypasses authoring validation, as with hand-edited stored data
    policy = _policy(steps=[_step(1, 0, email=False)])
    temp_db.upsert_policy(policy, T0)
    inst = _open_alert(stack)
    assert stack["engine"].scan(now=T0 + timedelta(minutes=31))["escalated"] == 1
    assert stack["dispatcher"].sent == []
    assert temp_db.get_escalation_state(inst.id, "critical_path").phase is EscalationPhase.FULLY_ESCALATED


def test_dispatch_failure_does_not_roll_back(temp_db, events):
    rules = RuleStore(temp_db)
    rules.save_rule(make_rule(severity=Severity.CRITICAL))
    policies = PolicyStore(temp_db)
    policies.save_policy(_policy(steps=[_step(1, 0, sms=True, realtime=True), _step(2, 30)]))
    dispatcher = MockDispatcher(failing={"email"}, raising={"sms"})
    engine = EscalationEngine(temp_db, policies, StaticDirectory(DIRECTORY_CONFIG), dispatcher, events)
    manager = AlertInstanceManager(temp_db, events)
    fired = RuleEvaluator().evaluate([make_sample(cpu_percent=99)], rules.find_effective_rules("D1"))
    inst = manager.record(fired, now=T0)[0]

    engine.scan(now=T0 + timedelta(minutes=30))
    assert temp_db.get_executed_steps(inst.id, "critical_path") == [0]

    rows = {r["channel"]: r for r in temp_db.get_notifications(inst.id)}
    assert rows["email"]["status"] == "failed"
    assert rows["sms"]["status"] == "failed"
    assert rows["sms"]["error_message"] == "gateway down"
    assert rows["realtime"]["status"] == "sent"
    assert rows["realtime"]["recipient_id"] == "m1"

    engine.scan(now=T0 + timedelta(minutes=60))
    assert temp_db.get_executed_steps(inst.id, "critical_path") == [0, 1]


def test_claim_failure_retries_next_scan(stack, monkeypatch):
    stack["policies"].save_policy(_policy())
    inst = _open_alert(stack)
    db = stack["db"]
    real_claim = db.claim_escalation_step
    calls = {"n": 0}

    def flaky_claim(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise sqlite3.OperationalError("database is locked")
        return real_claim(*args, **kwargs)

    monkeypatch.setattr(db, "claim_escalation_step", flaky_claim)

    assert stack["engine"].scan(now=T0 + timedelta(minutes=31))["escalated"] == 0
    assert stack["dispatcher"].sent == []
    assert db.get_escalation_state(inst.id, "critical_path").last_executed_step == -1

    assert stack["engine"].scan(now=T0 + timedelta(minutes=32))["escalated"] == 1
    assert db.get_executed_steps(inst.id, "critical_path") == [0]


def test_shrunk_policy_marks_fully_escalated(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0), _step(2, 60)]))
    inst = _open_alert(stack)
    stack["engine"].scan(now=T0 + timedelta(minutes=31))

    stack["policies"].save_policy(_policy(steps=[_step(1, 0)]))
    stack["engine"].scan(now=T0 + timedelta(minutes=120))
    state = stack["db"].get_escalation_state(inst.id, "critical_path")
    assert state.phase is EscalationPhase.FULLY_ESCALATED
    assert len(stack["dispatcher"].sent) == 1


def test_escalation_stats(stack):
    stack["policies"].save_policy(_policy(steps=[_step(1, 0, roles=["executive"], sms=True)]))
    _open_alert(stack)
    stack["engine"].scan(now=T0 + timedelta(minutes=31))
    stats = stack["engine"].get_escalation_stats()
    assert stats["email"] == 2
    assert stats["sms"] == 2
    assert stats["successful"] == 4
    assert stats["failed"] == 0
    assert stats["unique_alerts_escalated"] == 1
    assert stats["steps_executed"] == 1


# ── Directory ───────────────────────────────────────────

def test_directory_resolves_and_deduplicates():
    directory = StaticDirectory(DIRECTORY_CONFIG)
    recipients = directory.resolve(["manager", "executive"])
    assert [r.id for r in recipients] == ["m1", "e1"]
    assert recipients[0].realtime_id == "m1"
    assert directory.resolve(["unknown"]) == []
    assert directory.roles() == ["executive", "manager"]


def test_directory_skips_entries_without_id():
    directory = StaticDirectory({"directory": {"roles": {"manager": [{"name": "No Id"}]}}})
    assert directory.resolve(["manager"]) == []


# ── Policy authoring ────────────────────────────────────

@pytest.mark.parametrize("policy", [
    _policy(trigger_after=0),
    _policy(severities=()),
    _policy(steps=[]),
    _policy(steps=[_step(roles=[])]),
    _policy(steps=[_step(email=False)]),
    _policy(steps=[_step(1, wait=-5)]),
    _policy(steps=[_step(1), _step(1)]),
])
def test_invalid_policies_rejected(temp_db, policy):
    with pytest.raises(PolicyValidationError):
        PolicyStore(temp_db).save_policy(policy)


def test_blank_policy_name_rejected(temp_db):
    policy = _policy()
    policy.policy_name = "  "
    with pytest.raises(PolicyValidationError):
        PolicyStore(temp_db).save_policy(policy)


def test_disabled_policy_may_have_no_steps(temp_db):
    PolicyStore(temp_db).save_policy(_policy(enabled=False, steps=[]))
    assert PolicyStore(temp_db).list_policies(enabled_only=True) == []


def test_policy_roundtrip(temp_db):
    store = PolicyStore(temp_db)
    store.save_policy(_policy(steps=[_step(1, 0, sms=True), _step(2, 45, roles=["executive"])]))
    policy = store.get_policy("critical_path")
    assert policy.trigger_severities == frozenset({Severity.HIGH, Severity.CRITICAL})
    assert [s.wait_minutes for s in policy.ordered_steps()] == [0, 45]
    assert policy.steps[0].notify_sms is True
    assert policy.applies_to("critical")
    assert not policy.applies_to(Severity.LOW)


def test_policy_load_yaml(temp_db, tmp_path):
    path = tmp_path / "policies.yaml"
    path.write_text("""
policies:
  - id: ok
    policy_name: OK
    trigger_severities: [critical]
    trigger_after_minutes: 15
    steps:
      - {order: 1, wait_minutes: 0, roles: [manager], notify_email: true}
  - id: no_steps
    policy_name: Nothing to do
  - id: bad_severity
    trigger_severities: [urgent]
    steps:
      - {order: 1, roles: [manager], notify_email: true}
""")
    loaded = PolicyStore(temp_db).load_yaml(path)
    assert [p.id for p in loaded] == ["ok"]
    assert PolicyStore(temp_db).get_policy("ok").trigger_after_minutes == 15


def test_bundled_policies_file_loads(temp_db):
    import os
    path = os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "escalation_policies.yaml")
    loaded = PolicyStore(temp_db).load_yaml(path)
    assert [p.id for p in loaded] == ["default_critical"]
    assert len(loaded[0].steps) == 2


def test_parse_policy_defaults():
    policy = parse_policy({"id": "p", "steps": [{"roles": ["manager"], "notify_email": True}]})
    assert policy.policy_name == "p"
    assert policy.trigger_after_minutes == 30
    assert policy.trigger_severities == frozenset({Severity.HIGH, Severity.CRITICAL})
    assert policy.enabled is True
    assert policy.steps[0].order == 1


def test_static_directory_satisfies_role_directory():
    from escalation import RoleDirectory
    assert isinstance(StaticDirectory(DIRECTORY_CONFIG), RoleDirectory)
