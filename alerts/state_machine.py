"""Alert status transitions and the alert history audit trail."""
import json
import logging
import threading
from contextlib import contextmanager
from datetime import timedelta

from alerts.evaluator import evaluate
from models.alerts import AlertHistoryEntry, ApplyOutcome
from models.enums import AlertStatus
from utils.clock import SystemClock

logger = logging.getLogger("kpiwatch.alerts.state")

MAX_HISTORY_PER_RULE = 100
HISTORY_RETENTION_DAYS = 180


class AlertStateMachine:
    """Sole writer of a rule's status fields.

    Persisted states are OK, WARNING and CRITICAL. Leaving a non-OK state for OK
    is labelled RECOVERY in the outcome and the history entry, but the rule is
    stored as OK.
    """

    def __init__(self, db, clock=None, max_history_per_rule=MAX_HISTORY_PER_RULE):
        self.db = db
        self.clock = clock or SystemClock()
        self.max_history_per_rule = max_history_per_rule
        self._locks = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, rule_id):
        with self._locks_guard:
            lock = self._locks.get(rule_id)
            if lock is None:
                lock = self._locks[rule_id] = threading.RLock()
            return lock

    def forget_rule(self, rule_id):
        """Drop the lock of a deleted rule."""
        with self._locks_guard:
            self._locks.pop(rule_id, None)

    @contextmanager
    def rule_lock(self, rule_id):
        """Serialise all state mutation for one rule id."""
        lock = self._lock_for(rule_id)
        with lock:
            yield

    def apply(self, rule, evaluation, now=None):
        now = now or self.clock.now()
        with self.rule_lock(rule.id):
            old_status = AlertStatus(rule.current_status)
            new_status = AlertStatus(evaluation.status)
            changed = old_status != new_status

            if old_status != AlertStatus.OK and new_status == AlertStatus.OK:
                new_status = AlertStatus.RECOVERY
                changed = True

            rule.last_checked_at = now
            rule.last_value = evaluation.value
            rule.current_status = AlertStatus.OK if new_status == AlertStatus.RECOVERY else new_status
            rule.updated_at = now

            history_id = None
            # Continuing breaches are logged too, not only transitions
            if changed or new_status != AlertStatus.OK:
                history_id = self._log_event(rule, old_status, new_status, evaluation, now)

            self.db.update_rule(rule)

        if changed:
            logger.info(
                f"Rule {rule.id} ({rule.scope}/{rule.metric_key}): "
                f"{old_status.value} -> {new_status.value} ({evaluation.details})"
            )
        return ApplyOutcome(
            rule_id=rule.id,
            old_status=old_status,
            new_status=new_status,
            changed=changed,
            history_id=history_id,
            evaluation=evaluation,
        )

    def check(self, rule, value, previous_value=None, now=None):
        """Evaluate a value and apply the result in one step."""
        return self.apply(rule, evaluate(rule, value, previous_value), now=now)

    def _log_event(self, rule, old_status, new_status, evaluation, now):
        entry = AlertHistoryEntry(
            rule_id=rule.id,
            scope=rule.scope,
            metric_key=rule.metric_key,
            previous_status=old_status,
            new_status=new_status,
            metric_value=evaluation.value,
            threshold_value=evaluation.breached_threshold,
            threshold_kind=evaluation.threshold_kind.value if evaluation.threshold_kind else None,
            evaluation_details=json.dumps(evaluation.to_dict()),
            created_at=now,
        )
        history_id = self.db.insert_history(entry)
        self._cleanup_excess_history(rule.id)
        return history_id

    def _cleanup_excess_history(self, rule_id):
        if self.db.count_history(rule_id) > self.max_history_per_rule:
            self.db.trim_history(rule_id, self.max_history_per_rule)

    def mark_notified(self, outcome, now=None):
        """Record a confirmed delivery on the rule and its history entry."""
        now = now or self.clock.now()
        with self.rule_lock(outcome.rule_id):
            rule = self.db.get_rule(outcome.rule_id)
            if rule is not None:
                rule.last_alert_sent_at = now
                self.db.update_rule(rule)
            if outcome.history_id is not None:
                self.db.mark_history_notified(outcome.history_id)

    def rule_history(self, rule_id, limit=50):
        return self.db.get_rule_history(rule_id, limit)

    def scope_history(self, scope, limit=50):
        return self.db.get_scope_history(scope, limit)

    def sweep_history(self, max_age_days=HISTORY_RETENTION_DAYS):
        cutoff = self.clock.now() - timedelta(days=max_age_days)
        deleted = self.db.delete_history_before(cutoff)
        logger.info(f"Alert history sweep removed {deleted} entries older than {max_age_days}d")
        return deleted
