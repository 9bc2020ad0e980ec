"""Configuration: bundled defaults, an optional override file, then environment variables."""
import os
import yaml
from pathlib import Path

_config = None
_DEFAULT_CONFIG = Path(__file__).parent / "default_config.yaml"

# env var -> (section, key, type)
ENV_OVERRIDES = {
    "MSP_ALERTS_DB_PATH": ("database", "path", str),
    "MSP_ALERTS_SCAN_INTERVAL": ("escalation", "scan_interval_seconds", int),
    "MSP_ALERTS_RETENTION_DAYS": ("retention", "resolved_days", int),
    "MSP_ALERTS_SUPPRESSION_MINUTES": ("alerts", "suppression_minutes", int),
    "MSP_ALERTS_LOG_LEVEL": ("logging", "level", str),
    "MSP_ALERTS_REALTIME_URL": ("realtime", "gateway_url", str),
}


def load_config(path=None):
    """Build the effective config and cache it for ``get_config``."""
    global _config

    config = _read_yaml(_DEFAULT_CONFIG)
    if path and Path(path).exists():
        config = _deep_merge(config, _read_yaml(path))
    _apply_env(config, os.environ)

    _validate_config(config)
    _config = config
    return config


def get_config():
    """Return cached config, loading defaults if needed."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _read_yaml(path):
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _apply_env(config, environ):
    for env_key, (section, key, cast) in ENV_OVERRIDES.items():
        raw = environ.get(env_key)
        if not raw:
            continue
        try:
            value = cast(raw)
        except ValueError:
            raise ValueError(f"{env_key} must be {cast.__name__}, got {raw!r}") from None
        config.setdefault(section, {})[key] = value


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
    for section in ("database", "alerts", "escalation", "retention", "directory", "logging"):
        if not isinstance(config.get(section), dict):
            raise ValueError(f"Missing required config section: {section}")

    checks = [
        (config["escalation"].get("scan_interval_seconds", 0) >= 10,
         "escalation.scan_interval_seconds must be >= 10"),
        (config["alerts"].get("suppression_minutes", 0) >= 0,
         "alerts.suppression_minutes cannot be negative"),
        (config["retention"].get("resolved_days", 0) >= 1,
         "retention.resolved_days must be >= 1"),
        (isinstance(config["directory"].get("subscribers") or [], list),
         "directory.subscribers must be a list"),
    ]
    for ok, message in checks:
        if not ok:
            raise ValueError(message)
