"""Configuration loading: packaged defaults, an optional override file, then environment."""
import os
import yaml
from pathlib import Path

DEFAULT_CONFIG_PATH = Path(__file__).parent / "default_config.yaml"

# env var -> (section, key)
ENV_MAP = {
    "TELEMON_DB_PATH": ("database", "path"),
    "TELEMON_SINK_URL": ("sink", "base_url"),
    "TELEMON_LOG_LEVEL": ("logging", "level"),
    "TELEMON_FLUSH_INTERVAL": ("scheduler", "flush_interval_seconds"),
    "TELEMON_RULES_PATH": ("alerts", "rules_path"),
}

REQUIRED_SECTIONS = ["database", "sink", "queue", "scheduler", "rate_limit", "alerts"]


def load_config(path=None):
    """Load the effective configuration.

    ``path`` falls back to ``$TELEMON_CONFIG``. A missing override file is
    ignored; an invalid result raises ``ValueError``.
    """
    with open(DEFAULT_CONFIG_PATH) as f:
        config = yaml.safe_load(f)

    path = path or os.environ.get("TELEMON_CONFIG")
    if path and Path(path).exists():
        with open(path) as f:
            overrides = yaml.safe_load(f) or {}
        config = _deep_merge(config, overrides)

    _apply_env(config)
    _validate_config(config)
    return config


def _apply_env(config):
    for env_key, (section, key) in ENV_MAP.items():
        val = os.environ.get(env_key)
        if val:
            config.setdefault(section, {})[key] = _coerce(val)


def _coerce(val):
    for cast in (int, float):
        try:
            return cast(val)
        except ValueError:
            continue
    return val


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
    missing = [s for s in REQUIRED_SECTIONS if s not in config]
    if missing:
        raise ValueError(f"Missing required config section(s): {', '.join(missing)}")

    if config["scheduler"]["flush_interval_seconds"] < 1:
        raise ValueError("flush_interval_seconds must be >= 1")

    rl = config["rate_limit"]
    if rl["window_ms"] <= 0 or rl["max_requests"] < 1:
        raise ValueError("rate_limit window_ms and max_requests must be positive")
    if rl["blacklist_threshold"] < rl["max_requests"]:
        raise ValueError("rate_limit blacklist_threshold must be >= max_requests")

    if config["queue"]["max_flush_retries"] < 0:
        raise ValueError("queue max_flush_retries must be >= 0")
