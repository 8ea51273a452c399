"""Alert engine: the surface used by write paths and periodic runners."""
import logging
from concurrent.futures import ThreadPoolExecutor

from alerts.channels import build_sink
from alerts.dispatcher import NotificationDispatcher
from alerts.evaluator import evaluate
from alerts.ledger import NotificationDedupeLedger
from alerts.recipients import ConfigRecipientResolver, CachingRecipientResolver
from alerts.rules_manager import RulesManager
from alerts.state_machine import AlertStateMachine
from models.alerts import ApplyOutcome, StatusSummary
from models.enums import AlertStatus, Severity
from monitor.scheduler import AlertScheduler
from monitor.series_store import MetricSeriesStore
from utils.clock import SystemClock

logger = logging.getLogger("kpiwatch.alerts.engine")

_SEVERITY_RANK = {AlertStatus.OK: 0, AlertStatus.WARNING: 1, AlertStatus.CRITICAL: 2}


class AlertEngine:
    def __init__(self, db, rules_manager, series_store, state_machine, ledger, dispatcher,
                 clock=None, evaluate_on_record=True, workers=4):
        self.db = db
        self.rules = rules_manager
        self.series = series_store
        self.state = state_machine
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.evaluate_on_record = evaluate_on_record
        self.workers = max(1, int(workers))

    @classmethod
    def from_config(cls, config, db, clock=None, sink=None, resolver=None):
        """Wire every component from a loaded configuration dict."""
        clock = clock or SystemClock()
        metrics_cfg = config.get("metrics", {})
        alerts_cfg = config.get("alerts", {})
        ledger_cfg = config.get("ledger", {})
        notif = config.get("notifications", {})

        if resolver is None:
            resolver = CachingRecipientResolver(
                ConfigRecipientResolver(notif.get("recipients"), notif.get("admins")),
                clock=clock,
                ttl=notif.get("recipient_cache_ttl", 300),
            )
        dispatcher = NotificationDispatcher(
            sink if sink is not None else build_sink(config),
            resolver,
            site_name=notif.get("site_name", "KPI Watch"),
            site_url=notif.get("site_url", ""),
            fallback_policy=notif.get("fallback_policy", "none"),
            timeout=config.get("email", {}).get("timeout_seconds", 30),
        )
        return cls(
            db,
            RulesManager(
                db, clock,
                min_check_interval=alerts_cfg.get("min_check_interval", 300),
                default_check_interval=alerts_cfg.get("default_check_interval", 3600),
                default_cooldown=alerts_cfg.get("default_cooldown_seconds", 3600),
            ),
            MetricSeriesStore(
                db, clock,
                min_interval_seconds=metrics_cfg.get("min_interval_seconds", 3600),
                max_points=metrics_cfg.get("max_points_per_series", 30),
            ),
            AlertStateMachine(db, clock, max_history_per_rule=alerts_cfg.get("max_history_per_rule", 100)),
            NotificationDedupeLedger(db, clock,
                                     protect_active_breaches=ledger_cfg.get("protect_active_breaches", False)),
            dispatcher,
            clock=clock,
            evaluate_on_record=alerts_cfg.get("evaluate_on_record", True),
            workers=alerts_cfg.get("workers", 4),
        )

    # ── Ingestion ─────────────────────────────────────────

    def record_metric(self, scope, series_key, value, **options):
        """Store a sample and, when it was stored, evaluate the rules watching that series."""
        result = self.series.record(scope, series_key, value, **options)
        if result.stored and self.evaluate_on_record:
            result.outcomes = self.evaluate_due_alerts(scope, {series_key: float(value)})
        return result

    # ── Evaluation ────────────────────────────────────────

    def evaluate_due_alerts(self, scope, current_values):
        """Evaluate every enabled, due rule of a scope that has a value in ``current_values``.

        Returns {rule_id: ApplyOutcome}. Rules without a value or not yet due are
        left out. A rule that fails is reported with ``outcome.error`` set and does
        not stop the others.
        """
        now = self.clock.now()
        candidates = [
            rule for rule in self.rules.get_enabled_rules(scope)
            if rule.metric_key in current_values and AlertScheduler.is_due(rule, now)
        ]
        if not candidates:
            return {}

        outcomes = {}
        with ThreadPoolExecutor(max_workers=min(self.workers, len(candidates))) as pool:
            futures = {
                rule.id: pool.submit(self._process_rule, rule.id, current_values[rule.metric_key], now)
                for rule in candidates
            }
            for rule_id, future in futures.items():
                outcome = future.result()
                if outcome is not None:
                    outcomes[rule_id] = outcome

        changed = sum(1 for o in outcomes.values() if o.changed)
        logger.info(f"Evaluated {len(outcomes)} rule(s) in {scope}; {changed} status change(s)")
        return outcomes

    def evaluate_from_latest(self, scope):
        """Evaluate a scope using the newest stored sample of each of its series."""
        values = {}
        for key in self.series.series_keys(scope):
            latest = self.series.last_value(scope, key)
            if latest is not None:
                values[key] = latest
        return self.evaluate_due_alerts(scope, values)

    def evaluate_all(self):
        """Evaluate every scope that has rules. Used by the periodic driver."""
        results = {}
        for scope in self.db.list_scopes():
            try:
                results[scope] = self.evaluate_from_latest(scope)
            except Exception as e:
                logger.error(f"Evaluation of scope {scope} failed: {e}")
        return results

    def _process_rule(self, rule_id, value, now):
        try:
            with self.state.rule_lock(rule_id):
                # Re-read under the lock; another worker may have just checked it
                rule = self.rules.get_rule(rule_id)
                if rule is None or not AlertScheduler.is_due(rule, now):
                    return None
                previous = None
                if rule.operator.is_percentage:
                    previous = self.series.previous_value(rule.scope, rule.metric_key)
                evaluation = evaluate(rule, float(value), previous)
                outcome = self.state.apply(rule, evaluation, now)
            self._notify(rule, outcome, now)
            return outcome
        except Exception as e:
            logger.error(f"Rule {rule_id} evaluation failed: {e}", exc_info=True)
            return ApplyOutcome(rule_id=rule_id, error=str(e))

    def _notify(self, rule, outcome, now):
        severity = Severity.for_status(outcome.new_status)
        if severity is None:
            return
        if not rule.notifies_for(severity):
            # Muted severities still advance the cycle
            self.ledger.reset_cycle(rule.scope, rule.id, severity)
            return
        outcome.severity = severity

        evaluation = outcome.evaluation
        fields = {
            "metric_key": rule.metric_key,
            "alert_name": rule.display_name,
            "triggered_value": evaluation.value,
            "threshold_value": evaluation.breached_threshold,
        }
        if not self.ledger.claim(rule.scope, rule.id, severity, now=now, **fields):
            outcome.suppressed = True
            return

        try:
            result = self.dispatcher.send(rule, severity, evaluation)
        except Exception:
            self._abandon(rule, severity)
            raise

        outcome.notification_count = result.succeeded
        outcome.notification_errors = list(result.errors)
        if not result.success:
            self._abandon(rule, severity)
            logger.warning(f"No notification delivered for rule {rule.id} ({severity.value}); claim released")
            return

        self.ledger.mark_sent(rule.scope, rule.id, severity, details=evaluation.details, now=now, **fields)
        self.state.mark_notified(outcome, now)
        outcome.notified = True

    def _abandon(self, rule, severity):
        """Release an undelivered claim. The cycle still moves on, so a failed
        recovery cannot leave the breach rows behind."""
        self.ledger.release(rule.scope, rule.id, severity)
        self.ledger.reset_cycle(rule.scope, rule.id, severity)

    # ── Rule removal ──────────────────────────────────────

    def delete_rule(self, rule_id):
        """Delete a rule with its history and ledger rows, then drop its lock."""
        with self.state.rule_lock(rule_id):
            deleted = self.rules.delete_rule(rule_id)
        self.state.forget_rule(rule_id)
        return deleted

    def delete_scope(self, scope):
        rule_ids = [r.id for r in self.rules.list_rules(scope)]
        counts = self.rules.delete_scope(scope)
        for rule_id in rule_ids:
            self.state.forget_rule(rule_id)
        return counts

    # ── Reporting ─────────────────────────────────────────

    def get_status_summary(self, scope):
        summary = StatusSummary()
        for rule in self.rules.get_enabled_rules(scope):
            status = AlertStatus(rule.current_status)
            summary.total += 1
            if status == AlertStatus.CRITICAL:
                summary.critical += 1
            elif status == AlertStatus.WARNING:
                summary.warning += 1
            else:
                summary.ok += 1
            if status != AlertStatus.OK:
                summary.active_rules.append(rule)
            if _SEVERITY_RANK.get(status, 0) > _SEVERITY_RANK[summary.highest_severity]:
                summary.highest_severity = status
        return summary

    # ── Retention ─────────────────────────────────────────

    def sweep_metric_history(self, max_age_days=90):
        return self.series.global_retention_sweep(max_age_days)

    def sweep_alert_history(self, max_age_days=180):
        return self.state.sweep_history(max_age_days)

    def sweep_ledger(self, max_age_days=365):
        return self.ledger.housekeeping(max_age_days)

    def sweep_all(self, config):
        """Run every retention sweep with the windows from configuration."""
        return {
            "metric_samples": self.sweep_metric_history(config.get("metrics", {}).get("retention_days", 90)),
            "alert_history": self.sweep_alert_history(config.get("alerts", {}).get("history_retention_days", 180)),
            "ledger": self.sweep_ledger(config.get("ledger", {}).get("retention_days", 365)),
        }
