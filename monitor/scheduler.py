"""Due-check gate for alert rules and the optional periodic driver."""
import logging
import threading
import time

import schedule

logger = logging.getLogger("kpiwatch.scheduler")

MAX_CONSECUTIVE_FAILURES = 5


class AlertScheduler:
    """Decides whether a rule should be evaluated now."""

    @staticmethod
    def is_due(rule, now):
        if not rule.enabled:
            return False
        if rule.last_checked_at is None:
            return True
        elapsed = (now - rule.last_checked_at).total_seconds()
        return elapsed >= rule.check_interval_seconds

    @classmethod
    def due_rules(cls, rules, now):
        return [r for r in rules if cls.is_due(r, now)]


class MonitorScheduler:
    """Run alert evaluation and retention sweeps in a background thread.

    The core never schedules itself; this driver is what ``main.py run`` starts.
    """

    def __init__(self, engine, config, interval_seconds=900, sweep_interval_hours=24):
        self.engine = engine
        self.config = config
        self.interval = interval_seconds
        self.sweep_interval_hours = sweep_interval_hours
        self.jobs = schedule.Scheduler()
        self._thread = None
        self._running = False
        self._callbacks = []
        self._consecutive_failures = 0

    def on_evaluate(self, callback):
        """Register callback called with the results of each evaluation pass."""
        self._callbacks.append(callback)

    def start(self):
        if self._running:
            return
        self._running = True

        self.jobs.every(self.interval).seconds.do(self._evaluate_job)
        self.jobs.every(self.sweep_interval_hours).hours.do(self._sweep_job)

        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started (evaluate every {self.interval}s, "
                    f"sweep every {self.sweep_interval_hours}h)")

    def stop(self):
        self._running = False
        self.jobs.clear()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Scheduler stopped")

    @property
    def running(self):
        return self._running

    def _run_loop(self):
        # Evaluate once immediately
        self._evaluate_job()
        while self._running:
            self.jobs.run_pending()
            time.sleep(1)

    def _evaluate_job(self):
        try:
            results = self.engine.evaluate_all()
            self._consecutive_failures = 0
            for cb in self._callbacks:
                try:
                    cb(results)
                except Exception as e:
                    logger.warning(f"Callback error: {e}")
        except Exception as e:
            self._consecutive_failures += 1
            logger.error(f"Evaluation pass failed ({self._consecutive_failures} consecutive): {e}")
            if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                logger.critical(f"{MAX_CONSECUTIVE_FAILURES}+ consecutive evaluation failures!")

    def _sweep_job(self):
        try:
            counts = self.engine.sweep_all(self.config)
            logger.info(f"Retention sweep: {counts}")
        except Exception as e:
            logger.error(f"Retention sweep failed: {e}")
