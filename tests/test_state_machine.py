"""Tests for alert status transitions and history."""
import json
import threading
import pytest

from alerts.evaluator import evaluate
from alerts.state_machine import AlertStateMachine
from models.enums import AlertStatus


@pytest.fixture
def machine(temp_db, clock):
    return AlertStateMachine(temp_db, clock, max_history_per_rule=5)


@pytest.fixture
def rule(temp_db, make_rule, clock):
    r = make_rule(created_at=clock.now(), updated_at=clock.now())
    r.id = temp_db.insert_rule(r)
    return r


def test_initial_ok_check_logs_nothing(machine, rule, temp_db, clock):
    outcome = machine.check(rule, 50)
    assert outcome.old_status == AlertStatus.OK
    assert outcome.new_status == AlertStatus.OK
    assert not outcome.changed
    assert outcome.history_id is None
    assert temp_db.count_history(rule.id) == 0

    stored = temp_db.get_rule(rule.id)
    assert stored.last_checked_at == clock.now()
    assert stored.last_value == 50.0


def test_breach_transition_is_logged(machine, rule, temp_db):
    outcome = machine.check(rule, 85)
    assert outcome.changed
    assert outcome.new_status == AlertStatus.WARNING
    assert outcome.history_id is not None
    assert temp_db.get_rule(rule.id).current_status == AlertStatus.WARNING

    entry = temp_db.get_rule_history(rule.id)[0]
    assert entry.previous_status == AlertStatus.OK
    assert entry.new_status == AlertStatus.WARNING
    assert entry.threshold_value == 80.0
    assert entry.threshold_kind == "warning"
    assert json.loads(entry.evaluation_details)["status"] == "warning"
    assert not entry.notified


def test_continuing_breach_is_logged_but_unchanged(machine, rule, temp_db, clock):
    machine.check(rule, 85)
    clock.advance(seconds=600)
    outcome = machine.check(rule, 88)
    assert not outcome.changed
    assert outcome.new_status == AlertStatus.WARNING
    assert outcome.history_id is not None
    assert temp_db.count_history(rule.id) == 2


def test_recovery_is_label_only(machine, rule, temp_db):
    machine.check(rule, 99)
    outcome = machine.check(rule, 10)
    assert outcome.changed
    assert outcome.old_status == AlertStatus.CRITICAL
    assert outcome.new_status == AlertStatus.RECOVERY
    assert outcome.persisted_status == AlertStatus.OK

    stored = temp_db.get_rule(rule.id)
    assert stored.current_status == AlertStatus.OK
    assert temp_db.get_rule_history(rule.id)[0].new_status == AlertStatus.RECOVERY


@pytest.mark.parametrize("values,expected", [
    ([85, 99], [AlertStatus.WARNING, AlertStatus.CRITICAL]),
    ([99, 85], [AlertStatus.CRITICAL, AlertStatus.WARNING]),
    ([85, 10], [AlertStatus.WARNING, AlertStatus.RECOVERY]),
    ([99, 99, 10, 10], [AlertStatus.CRITICAL, AlertStatus.CRITICAL, AlertStatus.RECOVERY, AlertStatus.OK]),
])
def test_transition_sequences(machine, rule, values, expected):
    assert [machine.check(rule, v).new_status for v in values] == expected


def test_scenario_history_count(machine, rule, temp_db, clock):
    statuses = []
    for v in (70, 82, 97, 60):
        statuses.append(machine.check(rule, v).new_status)
        clock.advance(hours=1)
    assert statuses == [AlertStatus.OK, AlertStatus.WARNING, AlertStatus.CRITICAL, AlertStatus.RECOVERY]
    assert temp_db.count_history(rule.id) == 3


def test_history_capped_per_rule(machine, rule, temp_db, clock):
    for i in range(9):
        machine.check(rule, 90 + i * 0.1)
        clock.advance(seconds=300)
    history = temp_db.get_rule_history(rule.id, limit=100)
    assert len(history) == 5
    assert history[0].metric_value == pytest.approx(90.8)


def test_mark_notified(machine, rule, temp_db, clock):
    outcome = machine.check(rule, 99)
    machine.mark_notified(outcome)
    assert temp_db.get_rule(rule.id).last_alert_sent_at == clock.now()
    assert temp_db.get_rule_history(rule.id)[0].notified


def test_scope_history_includes_names(machine, temp_db, make_rule, clock):
    r = make_rule(name="Active users", created_at=clock.now(), updated_at=clock.now())
    r.id = temp_db.insert_rule(r)
    machine.check(r, 99)
    rows = machine.scope_history("dash-1")
    assert len(rows) == 1
    entry, name = rows[0]
    assert name == "Active users"
    assert entry.rule_id == r.id


def test_sweep_history(machine, rule, temp_db, clock):
    machine.check(rule, 99)
    clock.advance(days=200)
    machine.check(rule, 99)
    assert machine.sweep_history(max_age_days=180) == 1
    assert temp_db.count_history(rule.id) == 1


def test_rule_lock_serialises_same_rule(machine):
    order = []

    def worker():
        with machine.rule_lock(7):
            order.append("second")

    with machine.rule_lock(7):
        t = threading.Thread(target=worker)
        t.start()
        t.join(timeout=0.2)
        order.append("first")
    t.join(timeout=2)
    assert order == ["first", "second"]


def test_apply_uses_given_evaluation(machine, rule, clock):
    evaluation = evaluate(rule, 97)
    outcome = machine.apply(rule, evaluation, now=clock.now())
    assert outcome.evaluation is evaluation
    assert rule.current_status == AlertStatus.CRITICAL
