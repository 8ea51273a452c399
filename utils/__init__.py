"""Utility modules for KPI Watch."""
from utils.logger import setup_logging
from utils.formatters import format_value, format_pct, format_threshold, sparkline, time_ago
from utils.clock import SystemClock, ManualClock
from utils.cache import TTLCache
