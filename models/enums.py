"""Enums for operators, alert status, notification severity and trends."""
from enum import Enum


class Operator(str, Enum):
    GT = "gt"
    LT = "lt"
    EQ = "eq"
    GTE = "gte"
    LTE = "lte"
    # Percentage change against a baseline
    CHANGE_PCT = "change_pct"
    INCREASE_PCT = "increase_pct"
    DECREASE_PCT = "decrease_pct"

    @property
    def is_percentage(self):
        return self in PERCENTAGE_OPERATORS


PERCENTAGE_OPERATORS = frozenset({Operator.CHANGE_PCT, Operator.INCREASE_PCT, Operator.DECREASE_PCT})

OPERATOR_LABELS = {
    Operator.GT: "Greater than",
    Operator.LT: "Less than",
    Operator.EQ: "Equals",
    Operator.GTE: "Greater than or equal",
    Operator.LTE: "Less than or equal",
    Operator.CHANGE_PCT: "Changes by %",
    Operator.INCREASE_PCT: "Increases by %",
    Operator.DECREASE_PCT: "Decreases by %",
}


class AlertStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    # Transition label only, never persisted on a rule
    RECOVERY = "recovery"


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    RECOVERY = "recovery"

    @classmethod
    def for_status(cls, status):
        """Map a transition label to the severity that may notify, or None for OK."""
        return {
            AlertStatus.WARNING: cls.WARNING,
            AlertStatus.CRITICAL: cls.CRITICAL,
            AlertStatus.RECOVERY: cls.RECOVERY,
        }.get(AlertStatus(status))


class ThresholdKind(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


class FallbackPolicy(str, Enum):
    NONE = "none"
    ADMINS = "admins"


# Seconds -> label, offered by the CLI
CHECK_INTERVALS = {
    300: "5 minutes",
    900: "15 minutes",
    1800: "30 minutes",
    3600: "1 hour",
    7200: "2 hours",
    14400: "4 hours",
    28800: "8 hours",
    86400: "24 hours",
}
