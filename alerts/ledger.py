"""Fire-once-per-severity notification ledger."""
import logging
from datetime import timedelta

from models.alerts import NotificationLedgerEntry
from models.enums import Severity
from utils.clock import SystemClock

logger = logging.getLogger("kpiwatch.alerts.ledger")

LEDGER_RETENTION_DAYS = 365

# Firing a severity clears the opposite class so it may fire again
CYCLE_RESETS = {
    Severity.RECOVERY: (Severity.WARNING, Severity.CRITICAL),
    Severity.WARNING: (Severity.RECOVERY,),
    Severity.CRITICAL: (Severity.RECOVERY,),
}


class NotificationDedupeLedger:
    """At most one notification per (scope, rule, severity) within a cycle.

    A row's presence means that severity already fired. Recovery clears the
    warning and critical rows; warning or critical clears the recovery row.
    """

    def __init__(self, db, clock=None, protect_active_breaches=False):
        self.db = db
        self.clock = clock or SystemClock()
        self.protect_active_breaches = protect_active_breaches

    def should_send(self, scope, rule_id, severity):
        if self.db.ledger_exists(scope, rule_id, Severity(severity)):
            logger.debug(f"Skip {severity} for rule {rule_id} in {scope}: already fired this cycle")
            return False
        return True

    def claim(self, scope, rule_id, severity, now=None, **fields):
        """Reserve the ledger slot before dispatching.

        Exactly one concurrent caller gets True; the others must not send.
        """
        entry = NotificationLedgerEntry(
            scope=scope,
            rule_id=rule_id,
            severity=Severity(severity),
            confirmed=False,
            created_at=now or self.clock.now(),
            **fields,
        )
        claimed = self.db.insert_ledger_if_absent(entry)
        if not claimed:
            logger.debug(f"Lost claim for {severity} on rule {rule_id} in {scope}")
        return claimed

    def release(self, scope, rule_id, severity):
        """Drop an unconfirmed claim after a dispatch that delivered nothing."""
        return self.db.delete_ledger(scope, rule_id, Severity(severity), unconfirmed_only=True) > 0

    def mark_sent(self, scope, rule_id, severity, details="", now=None, **fields):
        """Record a confirmed delivery, applying the cycle reset first."""
        severity = Severity(severity)
        entry = NotificationLedgerEntry(
            scope=scope,
            rule_id=rule_id,
            severity=severity,
            details=details,
            confirmed=True,
            created_at=now or self.clock.now(),
            **fields,
        )
        self.db.record_ledger_fire(entry, CYCLE_RESETS[severity])
        logger.info(f"Ledger: {severity.value} fired for rule {rule_id} in {scope}")

    def entries(self, scope, rule_id=None):
        return self.db.get_ledger(scope, rule_id)

    def reset_cycle(self, scope, rule_id, severity):
        """Apply the cycle reset for a severity that occurred but was not recorded.

        Used when the rule mutes that severity or no delivery succeeded. The
        condition still changed, so the opposite class must be able to fire again.
        """
        severity = Severity(severity)
        cleared = sum(self.db.delete_ledger(scope, rule_id, s) for s in CYCLE_RESETS[severity])
        if cleared:
            logger.debug(f"Ledger: {severity.value} on rule {rule_id} in {scope} cleared {cleared} entries")
        return cleared

    def housekeeping(self, max_age_days=LEDGER_RETENTION_DAYS):
        """Purge entries older than the retention window.

        A purged warning/critical row lets that severity fire again without a
        real recovery; set ``protect_active_breaches`` to keep rows of rules
        that are still in breach.
        """
        cutoff = self.clock.now() - timedelta(days=max_age_days)
        deleted = self.db.delete_ledger_before(cutoff, protect_active=self.protect_active_breaches)
        logger.info(f"Ledger housekeeping removed {deleted} entries older than {max_age_days}d")
        return deleted
