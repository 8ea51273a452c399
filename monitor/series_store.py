"""Bounded per-series storage of metric samples."""
import logging
from datetime import timedelta

from models.enums import TrendDirection
from models.metrics import MetricSample, RecordResult, Trend, SeriesStatistics
from models.database import from_db_time
from utils.clock import SystemClock

logger = logging.getLogger("kpiwatch.metrics.store")

DEFAULT_INTERVAL_SECONDS = 3600
MAX_HISTORY_POINTS = 30
RETENTION_DAYS = 90
# Changes within +/- this many percent are reported as neutral
TREND_DEADBAND_PCT = 0.5


class MetricSeriesStore:
    def __init__(self, db, clock=None, min_interval_seconds=DEFAULT_INTERVAL_SECONDS,
                 max_points=MAX_HISTORY_POINTS):
        self.db = db
        self.clock = clock or SystemClock()
        self.min_interval_seconds = min_interval_seconds
        self.max_points = max_points

    def record(self, scope, series_key, value, label=None, row_count=0, source="report",
               actor=None, interval=None):
        """Store a sample unless the series already has one younger than the interval.

        Returns a RecordResult; ``stored`` is False when the write was skipped.
        """
        interval = self.min_interval_seconds if interval is None else interval
        now = self.clock.now()

        last = self.last_sample(scope, series_key)
        if last is not None:
            elapsed = (now - last.created_at).total_seconds()
            if elapsed < interval:
                logger.debug(
                    f"Skipping {scope}/{series_key}: last sample {elapsed:.0f}s old (< {interval}s)"
                )
                return RecordResult(stored=False, sample_id=None)

        sample = MetricSample(
            scope=scope,
            series_key=series_key,
            value=float(value),
            label=label,
            row_count=row_count or 0,
            source=source,
            actor=actor,
            created_at=now,
        )
        sample_id = self.db.insert_sample(sample)
        self.evict_excess(scope, series_key)
        return RecordResult(stored=True, sample_id=sample_id)

    def evict_excess(self, scope, series_key):
        """Keep only the newest ``max_points`` samples for the series."""
        if self.db.count_samples(scope, series_key) <= self.max_points:
            return 0
        removed = self.db.trim_samples(scope, series_key, self.max_points)
        if removed:
            logger.debug(f"Evicted {removed} old samples from {scope}/{series_key}")
        return removed

    def last_sample(self, scope, series_key):
        rows = self.db.get_latest_samples(scope, series_key, limit=1)
        return rows[0] if rows else None

    def last_value(self, scope, series_key):
        sample = self.last_sample(scope, series_key)
        return sample.value if sample else None

    def previous_value(self, scope, series_key):
        """Second most recent value, the comparison point for percentage rules."""
        rows = self.db.get_latest_samples(scope, series_key, limit=1, offset=1)
        return rows[0].value if rows else None

    def history(self, scope, series_key, limit=10):
        """Samples oldest first, ready for sparklines."""
        rows = self.db.get_latest_samples(scope, series_key, limit=limit)
        return list(reversed(rows))

    def sparkline(self, scope, series_key, points=10):
        return [s.value for s in self.history(scope, series_key, points)]

    def trend(self, scope, series_key, current_value):
        """Compare a current value with the most recent stored sample."""
        previous = self.last_sample(scope, series_key)
        if previous is None:
            return Trend()
        return compute_trend(previous.value, current_value)

    def statistics(self, scope, series_key):
        stats = self.db.get_series_stats(scope, series_key)
        return SeriesStatistics(
            count=int(stats["count"]),
            min=float(stats["min_value"]) if stats["min_value"] is not None else None,
            max=float(stats["max_value"]) if stats["max_value"] is not None else None,
            avg=round(float(stats["avg_value"]), 2) if stats["avg_value"] is not None else None,
            first_recorded=from_db_time(stats["first_recorded"]),
            last_recorded=from_db_time(stats["last_recorded"]),
        )

    def series_keys(self, scope):
        return self.db.list_series(scope)

    def global_retention_sweep(self, max_age_days=RETENTION_DAYS):
        """Delete every sample older than the cutoff, across all series."""
        cutoff = self.clock.now() - timedelta(days=max_age_days)
        deleted = self.db.delete_samples_before(cutoff)
        logger.info(f"Metric retention sweep removed {deleted} samples older than {max_age_days}d")
        return deleted


def compute_trend(previous_value, current_value):
    previous_value = float(previous_value)
    if previous_value != 0:
        change = (current_value - previous_value) / abs(previous_value) * 100
    elif current_value > 0:
        change = 100.0
    else:
        change = 0.0

    if change > TREND_DEADBAND_PCT:
        direction = TrendDirection.UP
    elif change < -TREND_DEADBAND_PCT:
        direction = TrendDirection.DOWN
    else:
        direction = TrendDirection.NEUTRAL

    return Trend(
        direction=direction,
        percentage=round(change, 1),
        previous_value=previous_value,
        has_history=True,
    )
