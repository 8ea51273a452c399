"""Configuration management."""
import os
import yaml
from pathlib import Path

_config = None
_DEFAULT_CONFIG = Path(__file__).parent / "default_config.yaml"

ENV_MAP = {
    "KPIWATCH_DB_PATH": ("database", "path"),
    "KPIWATCH_LOG_LEVEL": ("logging", "level"),
    "KPIWATCH_MIN_INTERVAL": ("metrics", "min_interval_seconds"),
    "KPIWATCH_SMTP_USER": ("email", "smtp_username"),
    "KPIWATCH_SMTP_PASS": ("email", "smtp_password"),
}


def load_config(path=None):
    """Load config from YAML, merging defaults with optional overrides."""
    global _config

    with open(_DEFAULT_CONFIG) as f:
        config = yaml.safe_load(f)

    if path and Path(path).exists():
        with open(path) as f:
            overrides = yaml.safe_load(f) or {}
        config = _deep_merge(config, overrides)

    # Environment variable overrides
    for env_key, config_path in ENV_MAP.items():
        val = os.environ.get(env_key)
        if val:
            d = config
            for k in config_path[:-1]:
                d = d.setdefault(k, {})
            try:
                d[config_path[-1]] = int(val)
            except ValueError:
                d[config_path[-1]] = val

    _validate_config(config)
    _config = config
    return config


def get_config():
    """Return cached config, loading defaults if needed."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _deep_merge(base, override):
    """Recursively merge override into base dict."""
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _validate_config(config):
    """Basic config validation."""
    required_sections = ["database", "metrics", "alerts", "ledger", "notifications", "email"]
    for section in required_sections:
        if section not in config:
            raise ValueError(f"Missing required config section: {section}")

    if config["metrics"]["min_interval_seconds"] < 0:
        raise ValueError("metrics.min_interval_seconds must be >= 0")
    if config["metrics"]["max_points_per_series"] < 1:
        raise ValueError("metrics.max_points_per_series must be >= 1")
    if config["alerts"]["min_check_interval"] < 300:
        raise ValueError("alerts.min_check_interval must be >= 300 seconds")
    if config["alerts"].get("workers", 1) < 1:
        raise ValueError("alerts.workers must be >= 1")
