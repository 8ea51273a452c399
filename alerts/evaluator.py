"""Threshold evaluation. Pure functions, no storage access."""
from models.alerts import AlertEvaluation
from models.enums import AlertStatus, Operator, ThresholdKind

# Tolerance for EQ comparisons and for treating a baseline as zero
EPSILON = 1e-4

OPERATOR_MAP = {
    Operator.GT: lambda v, t: v > t,
    Operator.LT: lambda v, t: v < t,
    Operator.EQ: lambda v, t: abs(v - t) < EPSILON,
    Operator.GTE: lambda v, t: v >= t,
    Operator.LTE: lambda v, t: v <= t,
}

PERCENT_OPERATOR_MAP = {
    Operator.CHANGE_PCT: lambda pct, t: abs(pct) >= t,
    Operator.INCREASE_PCT: lambda pct, t: pct >= t,
    Operator.DECREASE_PCT: lambda pct, t: pct <= -t,
}

_OPERATOR_PHRASES = {
    Operator.GT: "exceeds",
    Operator.LT: "is below",
    Operator.EQ: "equals",
    Operator.GTE: "is at or above",
    Operator.LTE: "is at or below",
}

NO_BASELINE_DETAILS = "No baseline value available for percentage comparison"


def percent_change(value, baseline):
    return (value - baseline) / abs(baseline) * 100


def evaluate(rule, value, previous_value=None):
    """Evaluate ``value`` against the rule's thresholds.

    Critical is checked before warning for every operator. Percentage operators
    compare against ``previous_value`` when given, else the rule's static
    baseline; a missing or near-zero baseline yields OK with an explanatory
    detail rather than a breach.
    """
    operator = Operator(rule.operator)
    value = float(value)
    result = AlertEvaluation(status=AlertStatus.OK, value=value, previous_value=previous_value)

    if operator.is_percentage:
        baseline = previous_value if previous_value is not None else rule.baseline_value
        if baseline is None or abs(baseline) < EPSILON:
            result.details = NO_BASELINE_DETAILS
            return result

        pct = percent_change(value, baseline)
        result.percent_change = pct
        check = PERCENT_OPERATOR_MAP[operator]
        for kind, threshold in _ordered_thresholds(rule):
            if check(pct, threshold):
                result.status = AlertStatus(kind.value)
                result.breached_threshold = threshold
                result.threshold_kind = kind
                result.details = (
                    f"{pct:.1f}% change exceeds {kind.value} threshold of {threshold:.1f}%"
                )
                return result
        result.details = f"{pct:.1f}% change is within thresholds"
        return result

    check = OPERATOR_MAP[operator]
    for kind, threshold in _ordered_thresholds(rule):
        if check(value, threshold):
            result.status = AlertStatus(kind.value)
            result.breached_threshold = threshold
            result.threshold_kind = kind
            result.details = format_threshold_message(operator, value, threshold)
            return result

    result.details = f"Value {value:.2f} is within thresholds"
    return result


def _ordered_thresholds(rule):
    """Configured thresholds, critical first."""
    pairs = []
    if rule.critical_threshold is not None:
        pairs.append((ThresholdKind.CRITICAL, float(rule.critical_threshold)))
    if rule.warning_threshold is not None:
        pairs.append((ThresholdKind.WARNING, float(rule.warning_threshold)))
    return pairs


def format_threshold_message(operator, value, threshold):
    phrase = _OPERATOR_PHRASES.get(Operator(operator), "meets condition of")
    return f"Value {value:.2f} {phrase} threshold {threshold:.2f}"
