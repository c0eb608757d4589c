"""
Server configuration: defaults, optional YAML file, environment overrides.
"""

import os
from dataclasses import dataclass, field, fields
from datetime import time, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from fleetwatch.errors import ConfigError

DEFAULT_DB_URL = 'sqlite:///./data/monitor.db'


@dataclass
class Settings:
    """Runtime settings for the fleetwatch server"""
    db_url: str = DEFAULT_DB_URL
    host: str = '0.0.0.0'
    port: int = 8080
    auth_token: str = ''
    retention_days: int = 90
    online_threshold_minutes: int = 70
    warning_threshold: float = 85.0
    cleanup_time: time = field(default_factory=lambda: time(3, 0))
    prune_on_start: bool = True
    shutdown_grace_seconds: float = 10.0
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    log_json: bool = True

    @property
    def online_threshold(self) -> timedelta:
        return timedelta(minutes=self.online_threshold_minutes)

    @property
    def retention_window(self) -> timedelta:
        return timedelta(days=self.retention_days)


# Environment variable -> Settings field
ENV_VARS = {
    'FLEETWATCH_DB_URL': 'db_url',
    'FLEETWATCH_HOST': 'host',
    'PORT': 'port',
    'AUTH_TOKEN': 'auth_token',
    'RETENTION_DAYS': 'retention_days',
    'ONLINE_THRESHOLD_MINUTES': 'online_threshold_minutes',
    'WARNING_THRESHOLD': 'warning_threshold',
    'CLEANUP_TIME': 'cleanup_time',
    'PRUNE_ON_START': 'prune_on_start',
    'LOG_LEVEL': 'log_level',
    'LOG_FILE': 'log_file',
    'LOG_FORMAT': 'log_json',
}


def parse_clock(value: str) -> time:
    """Parse an 'HH:MM' wall-clock time"""
    try:
        hour, minute = value.strip().split(':')
        return time(int(hour), int(minute))
    except ValueError:
        raise ConfigError(f"Invalid time of day '{value}', expected HH:MM")


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw YAML/env value to the type of the Settings field"""
    if name == 'cleanup_time':
        if isinstance(value, time):
            return value
        # YAML 1.1 reads an unquoted 03:00 as the base-60 integer 180
        if isinstance(value, int) and not isinstance(value, bool) and 0 <= value < 24 * 60:
            return time(value // 60, value % 60)
        return parse_clock(str(value))

    if name == 'log_json':
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text not in ('json', 'text', 'true', 'false'):
            raise ConfigError(f"Invalid log format '{value}', expected json or text")
        return text in ('json', 'true')

    if name == 'prune_on_start':
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ('1', 'true', 'yes', 'on')

    if name in ('port', 'retention_days', 'online_threshold_minutes'):
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got '{value}'")
        if number <= 0:
            raise ConfigError(f"{name} must be positive, got {number}")
        return number

    if name in ('warning_threshold', 'shutdown_grace_seconds'):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be a number, got '{value}'")

    if isinstance(value, str):
        return os.path.expandvars(value)
    return value


def _load_yaml(config_path: str) -> Dict[str, Any]:
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with path.open() as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    section = data.get('server', {}) or {}
    if not isinstance(section, dict):
        raise ConfigError("'server' section must be a mapping")
    return section


def load_settings(
    config_path: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None
) -> Settings:
    """
    Build Settings from defaults, an optional config.yml and the environment.

    Environment variables take precedence over the file, which takes
    precedence over the defaults.

    Args:
        config_path: Optional path to a YAML file with a 'server' section
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Populated Settings
    """
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(Settings)}
    values: Dict[str, Any] = {}

    if config_path:
        for key, raw in _load_yaml(config_path).items():
            if key not in known:
                raise ConfigError(f"Unknown setting '{key}' in {config_path}")
            values[key] = _coerce(key, raw)

    for env_name, key in ENV_VARS.items():
        raw = environ.get(env_name)
        if raw:
            values[key] = _coerce(key, raw)

    return Settings(**values)
