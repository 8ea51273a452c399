"""Data models."""
from models.enums import Operator, AlertStatus, Severity, ThresholdKind, TrendDirection, FallbackPolicy
from models.metrics import MetricSample, RecordResult, Trend, SeriesStatistics
from models.alerts import (
    AlertRule, AlertEvaluation, AlertHistoryEntry, NotificationLedgerEntry, ApplyOutcome, StatusSummary,
)
