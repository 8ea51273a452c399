"""Formatting utilities for display."""
from datetime import datetime, timezone

SPARK_CHARS = "▁▂▃▄▅▆▇█"


def format_value(value, decimals=2):
    """Format a metric value with thousands separators."""
    if value is None:
        return "N/A"
    return f"{float(value):,.{decimals}f}"


def format_pct(value, decimals=1, with_color=False):
    """Format percentage with sign. Optionally include rich color markup."""
    if value is None:
        return "N/A"
    value = float(value)
    sign = "+" if value >= 0 else ""
    formatted = f"{sign}{value:.{decimals}f}%"
    if with_color:
        color = "green" if value >= 0 else "red"
        return f"[{color}]{formatted}[/{color}]"
    return formatted


def format_threshold(value):
    if value is None:
        return "-"
    return format_value(value)


def time_ago(dt, now=None):
    """Human-readable relative time string."""
    if dt is None:
        return "never"
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    seconds = int((now - dt).total_seconds())
    if seconds < 0:
        return "just now"
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


def sparkline(values, width=20):
    """Generate Unicode sparkline from a list of values."""
    if not values:
        return ""
    vals = [v for v in values if v is not None]
    if not vals:
        return ""
    # Subsample if longer than width
    if len(vals) > width:
        step = len(vals) / width
        vals = [vals[int(i * step)] for i in range(width)]
    mn, mx = min(vals), max(vals)
    rng = mx - mn if mx != mn else 1
    return "".join(SPARK_CHARS[min(7, int((v - mn) / rng * 7))] for v in vals)
