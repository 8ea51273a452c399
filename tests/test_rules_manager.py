"""Tests for rule validation, upsert and YAML import."""
import pytest

from alerts.rules_manager import RulesManager, RuleValidationError
from alerts.state_machine import AlertStateMachine
from models.enums import AlertStatus, Operator


@pytest.fixture
def manager(temp_db, clock):
    return RulesManager(temp_db, clock)


def test_create_rule(manager):
    rule = manager.save_rule("dash-1", "users", operator="gt", warning_threshold=10,
                             notify_roles="manager, editor", notify_emails="a@x.org")
    assert rule.id is not None
    assert rule.operator == Operator.GT
    assert rule.warning_threshold == 10.0
    assert rule.critical_threshold is None
    assert rule.notify_roles == ["manager", "editor"]
    assert rule.check_interval_seconds == 3600
    assert rule.cooldown_seconds == 3600
    assert rule.current_status == AlertStatus.OK


@pytest.mark.parametrize("options,message", [
    ({}, "operator is required"),
    ({"operator": "between", "warning_threshold": 1}, "Invalid operator"),
    ({"operator": "gt"}, "At least one threshold"),
    ({"operator": "gt", "warning_threshold": "", "critical_threshold": None}, "At least one threshold"),
    ({"operator": "gt", "warning_threshold": "lots"}, "must be a number"),
    ({"operator": "gt", "warning_threshold": 1, "cooldown_seconds": -5}, "cooldown_seconds"),
    ({"operator": "gt", "warning_threshold": 1, "check_interval_seconds": "often"}, "integers"),
    ({"operator": "gt", "warning_threshold": 1, "baseline_period": "year"}, "baseline_period"),
])
def test_invalid_rules_are_rejected_without_write(manager, temp_db, options, message):
    with pytest.raises(RuleValidationError, match=message):
        manager.save_rule("dash-1", "users", **options)
    assert temp_db.list_rules() == []


def test_scope_and_metric_required(manager):
    with pytest.raises(RuleValidationError):
        manager.save_rule("", "users", operator="gt", warning_threshold=1)
    with pytest.raises(RuleValidationError):
        manager.save_rule("dash-1", "  ", operator="gt", warning_threshold=1)


def test_validation_error_is_value_error(manager):
    with pytest.raises(ValueError):
        manager.save_rule("dash-1", "users", operator="gt")


def test_check_interval_is_clamped(manager):
    rule = manager.save_rule("dash-1", "users", operator="gt", warning_threshold=1,
                             check_interval_seconds=30)
    assert rule.check_interval_seconds == 300


def test_unknown_options_are_ignored(manager, caplog):
    rule = manager.save_rule("dash-1", "users", operator="gt", warning_threshold=1, colour="red")
    assert not hasattr(rule, "colour")
    assert "colour" in caplog.text


def test_operator_is_case_insensitive(manager):
    rule = manager.save_rule("dash-1", "users", operator="CHANGE_PCT", warning_threshold=5)
    assert rule.operator == Operator.CHANGE_PCT


def test_save_existing_rule_updates_config_and_keeps_state(manager, temp_db, clock):
    rule = manager.save_rule("dash-1", "users", operator="gt", warning_threshold=10)
    AlertStateMachine(temp_db, clock).check(rule, 50)

    clock.advance(hours=1)
    updated = manager.save_rule("dash-1", "users", operator="gt", warning_threshold=100)
    assert updated.id == rule.id
    assert updated.warning_threshold == 100.0
    assert updated.current_status == AlertStatus.WARNING
    assert updated.last_value == 50.0
    assert updated.updated_at == clock.now()
    assert len(manager.list_rules("dash-1")) == 1


def test_set_enabled(manager):
    rule = manager.save_rule("dash-1", "users", operator="gt", warning_threshold=1)
    assert manager.set_enabled(rule.id, False).enabled is False
    assert manager.get_enabled_rules("dash-1") == []
    assert manager.set_enabled(999, True) is None


def test_delete_rule_and_scope(manager):
    a = manager.save_rule("dash-1", "a", operator="gt", warning_threshold=1)
    manager.save_rule("dash-1", "b", operator="gt", warning_threshold=1)
    assert manager.delete_rule(a.id)
    assert [r.metric_key for r in manager.list_rules()] == ["b"]
    counts = manager.delete_scope("dash-1")
    assert counts["alert_rules"] == 1
    assert manager.list_rules() == []


def test_load_yaml(manager, tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("""
rules:
  - scope: dash-1
    metric_key: users
    operator: lt
    warning_threshold: 100
    critical_threshold: 50
    name: Active users
  - scope: dash-1
    metric_key: broken
    operator: gt
  - scope: dash-2
    metric_key: signups
    operator: increase_pct
    warning_threshold: 20
    notify_email: true
    notify_emails: ops@example.com
""")
    saved = manager.load_yaml(path)
    assert [r.metric_key for r in saved] == ["users", "signups"]
    assert saved[0].name == "Active users"
    assert saved[1].notify_email is True


def test_load_missing_yaml(manager, tmp_path):
    assert manager.load_yaml(tmp_path / "nope.yaml") == []


def test_shipped_rules_file_is_valid(manager):
    from pathlib import Path
    path = Path(__file__).parent.parent / "config" / "alert_rules.yaml"
    assert len(manager.load_yaml(path)) == 3
