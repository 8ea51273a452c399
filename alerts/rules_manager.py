"""Alert rule validation, persistence and YAML import."""
import logging
from dataclasses import replace
from pathlib import Path

import yaml

from models.alerts import AlertRule
from models.enums import Operator
from utils.clock import SystemClock

logger = logging.getLogger("kpiwatch.alerts.rules")

MIN_CHECK_INTERVAL = 300
DEFAULT_CHECK_INTERVAL = 3600
DEFAULT_COOLDOWN_SECONDS = 3600

# Options a caller may set on a rule; state fields are not configurable
RULE_OPTIONS = {
    "operator", "warning_threshold", "critical_threshold", "check_interval_seconds",
    "cooldown_seconds", "baseline_value", "baseline_period", "notify_on_warning",
    "notify_on_critical", "notify_on_recovery", "notify_roles", "notify_emails",
    "notify_message", "notify_email", "enabled", "name", "description",
}
BASELINE_PERIODS = {"previous", "day", "week", "month"}


class RuleValidationError(ValueError):
    """Rule configuration rejected before anything was written."""


def _optional_float(options, key):
    val = options.get(key)
    if val is None or val == "":
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        raise RuleValidationError(f"{key} must be a number, got {val!r}")


def _as_bool(val):
    if isinstance(val, str):
        return val.strip().lower() in {"1", "true", "yes", "on"}
    return bool(val)


class RulesManager:
    def __init__(self, db, clock=None, min_check_interval=MIN_CHECK_INTERVAL,
                 default_check_interval=DEFAULT_CHECK_INTERVAL,
                 default_cooldown=DEFAULT_COOLDOWN_SECONDS):
        self.db = db
        self.clock = clock or SystemClock()
        self.min_check_interval = min_check_interval
        self.default_check_interval = default_check_interval
        self.default_cooldown = default_cooldown

    def parse_options(self, options):
        """Turn a loose options mapping into validated rule fields.

        Unknown keys are dropped with a warning.
        """
        unknown = set(options) - RULE_OPTIONS
        if unknown:
            logger.warning(f"Ignoring unknown rule options: {sorted(unknown)}")

        raw_op = options.get("operator")
        if not raw_op:
            raise RuleValidationError("operator is required")
        try:
            operator = Operator(str(raw_op).lower())
        except ValueError:
            raise RuleValidationError(f"Invalid operator: {raw_op}")

        warning = _optional_float(options, "warning_threshold")
        critical = _optional_float(options, "critical_threshold")
        if warning is None and critical is None:
            raise RuleValidationError("At least one threshold (warning or critical) must be set")

        try:
            interval = int(options.get("check_interval_seconds") or self.default_check_interval)
            cooldown = int(options.get("cooldown_seconds", self.default_cooldown))
        except (TypeError, ValueError):
            raise RuleValidationError("check_interval_seconds and cooldown_seconds must be integers")
        if cooldown < 0:
            raise RuleValidationError("cooldown_seconds must be >= 0")

        baseline_period = options.get("baseline_period", "previous")
        if baseline_period not in BASELINE_PERIODS:
            raise RuleValidationError(f"Invalid baseline_period: {baseline_period}")

        roles = options.get("notify_roles") or []
        if isinstance(roles, str):
            roles = [r.strip() for r in roles.split(",") if r.strip()]

        return {
            "operator": operator,
            "warning_threshold": warning,
            "critical_threshold": critical,
            "check_interval_seconds": max(self.min_check_interval, interval),
            "cooldown_seconds": cooldown,
            "baseline_value": _optional_float(options, "baseline_value"),
            "baseline_period": baseline_period,
            "notify_on_warning": _as_bool(options.get("notify_on_warning", True)),
            "notify_on_critical": _as_bool(options.get("notify_on_critical", True)),
            "notify_on_recovery": _as_bool(options.get("notify_on_recovery", True)),
            "notify_roles": list(roles),
            "notify_emails": options.get("notify_emails") or "",
            "notify_message": _as_bool(options.get("notify_message", True)),
            "notify_email": _as_bool(options.get("notify_email", False)),
            "enabled": _as_bool(options.get("enabled", True)),
            "name": options.get("name") or "",
            "description": options.get("description") or "",
        }

    def save_rule(self, scope, metric_key, **options):
        """Create a rule, or update the configuration of the existing one for (scope, metric_key).

        Updating keeps the rule's status, last value and timestamps.
        """
        if not scope:
            raise RuleValidationError("scope is required")
        metric_key = (metric_key or "").strip()
        if not metric_key:
            raise RuleValidationError("metric_key is required")

        fields = self.parse_options(options)
        now = self.clock.now()

        existing = self.db.find_rule(scope, metric_key)
        if existing:
            rule = replace(existing, updated_at=now, **fields)
            self.db.update_rule(rule)
            logger.info(f"Updated rule {rule.id} ({scope}/{metric_key})")
            return rule

        rule = AlertRule(scope=scope, metric_key=metric_key, created_at=now, updated_at=now, **fields)
        rule.id = self.db.insert_rule(rule)
        logger.info(f"Created rule {rule.id} ({scope}/{metric_key}, {rule.operator.value})")
        return rule

    def get_rule(self, rule_id):
        return self.db.get_rule(rule_id)

    def list_rules(self, scope=None, enabled_only=False):
        return self.db.list_rules(scope, enabled_only=enabled_only)

    def get_enabled_rules(self, scope=None):
        return self.db.list_rules(scope, enabled_only=True)

    def set_enabled(self, rule_id, enabled):
        rule = self.db.get_rule(rule_id)
        if rule is None:
            return None
        rule.enabled = bool(enabled)
        rule.updated_at = self.clock.now()
        self.db.update_rule(rule)
        return rule

    def delete_rule(self, rule_id):
        deleted = self.db.delete_rule(rule_id)
        if deleted:
            logger.info(f"Deleted rule {rule_id} with its history and ledger entries")
        return deleted

    def delete_scope(self, scope):
        counts = self.db.delete_scope(scope)
        logger.info(f"Deleted scope {scope}: {counts}")
        return counts

    def load_yaml(self, rules_path):
        """Import rules from a YAML file. Invalid entries are logged and skipped."""
        path = Path(rules_path)
        if not path.exists():
            logger.warning(f"Alert rules file not found: {path}")
            return []
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        saved = []
        for raw in data.get("rules", []):
            raw = dict(raw)
            scope = raw.pop("scope", None)
            metric_key = raw.pop("metric_key", None)
            try:
                saved.append(self.save_rule(scope, metric_key, **raw))
            except RuleValidationError as e:
                logger.warning(f"Skipping rule {scope}/{metric_key}: {e}")
        logger.info(f"Loaded {len(saved)} rules from {path}")
        return saved
