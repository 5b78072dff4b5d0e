"""Service configuration for workstreams.

Settings are layered: dataclass defaults, then ``config/settings.yaml``, then
``WORKSTREAMS_*`` environment variables.
"""

import logging
import os
from dataclasses import dataclass, fields
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "WORKSTREAMS_"


@dataclass
class WorkstreamSettings:
    """Runtime settings for the supervision core and its HTTP surface."""

    database_path: str = "~/.workstreams/workstreams.db"
    log_dir: str = "/tmp/workstreams_logs"
    log_level: str = "INFO"
    server_host: str = "localhost"
    server_port: int = 8765
    failure_threshold: int = 3
    backoff_base_seconds: int = 5
    backoff_cap_seconds: int = 300
    poll_timeout_seconds: float = 5.0
    stop_timeout_seconds: float = 10.0
    health_poll_interval_seconds: float = 30.0
    max_worker_threads: int = 32
    max_line_chars: int = 4096
    ring_buffer_lines: int = 200
    mock_heartbeat_every: int = 5
    keystroke_delay: float = 0.05
    webhook_timeout_seconds: float = 8.0
    conversation_default_limit: int = 50
    conversation_max_limit: int = 500

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be at least 1")
        if self.health_poll_interval_seconds < 0:
            raise ConfigurationError("health_poll_interval_seconds must not be negative")
        if self.max_worker_threads < 1:
            raise ConfigurationError("max_worker_threads must be at least 1")
        if self.ring_buffer_lines < 1:
            raise ConfigurationError("ring_buffer_lines must be at least 1")
        if self.max_line_chars < 16:
            raise ConfigurationError("max_line_chars must be at least 16")
        if not 1 <= self.conversation_default_limit <= self.conversation_max_limit:
            raise ConfigurationError(
                "conversation_default_limit must be between 1 and conversation_max_limit"
            )

    @property
    def resolved_database_path(self) -> str:
        if self.database_path == ":memory:":
            return self.database_path
        return str(Path(self.database_path).expanduser())


def _settings_path() -> Path:
    return Path(__file__).parent.parent.parent / "config" / "settings.yaml"


@lru_cache(maxsize=1)
def _load_settings_file() -> dict:
    """Load settings overrides from YAML.

    Returns:
        Settings dict (empty when the file does not exist)

    Raises:
        ConfigurationError: If YAML parsing fails or the document is not a mapping
    """
    config_path = _settings_path()

    if not config_path.exists():
        logger.debug(f"No settings file at {config_path}, using defaults")
        return {}

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse settings YAML: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {config_path} must contain a mapping")

    logger.debug(f"Loaded settings from {config_path}")
    return data


def _coerce(name: str, raw: Any, target: type) -> Any:
    try:
        if target is bool:
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        return target(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from e


def load_settings(overrides: dict[str, Any] | None = None) -> WorkstreamSettings:
    """Build settings from defaults, YAML file, environment and explicit overrides.

    Args:
        overrides: Values that win over every other source

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If any source holds an invalid value
    """
    known = {f.name: f.type for f in fields(WorkstreamSettings)}
    values: dict[str, Any] = {}

    for key, value in _load_settings_file().items():
        if key not in known:
            logger.warning(f"Ignoring unknown settings key: {key}")
            continue
        values[key] = value

    for name in known:
        env_value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if env_value is not None:
            values[name] = env_value

    values.update(overrides or {})

    type_map = {"str": str, "int": int, "float": float, "bool": bool}
    coerced = {}
    for name, value in values.items():
        if name not in known:
            raise ConfigurationError(f"Unknown setting: {name}")
        target = known[name]
        if isinstance(target, str):
            target = type_map.get(target, str)
        coerced[name] = _coerce(name, value, target)

    return WorkstreamSettings(**coerced)
