"""
Configuration for Marketplace Job Orchestrator

Settings can be built from a dictionary, a YAML file or ``MJO_*`` environment
variables. Unknown keys and invalid values raise ``ConfigurationError``.
"""

import os
from dataclasses import dataclass, fields, asdict
from datetime import timedelta
from typing import Dict, Any, Optional, Mapping

import yaml

from .exceptions import ConfigurationError

ENV_PREFIX = "MJO_"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


@dataclass
class OrchestratorConfig:
    """Runtime settings for the job orchestrator."""

    # Entity store
    database_url: Optional[str] = None
    pool_size: int = 10

    # Time boxes
    posting_ttl_hours: float = 24
    expiring_warning_hours: float = 2
    change_order_ttl_hours: float = 24
    sweep_interval_seconds: float = 300

    # Notifications
    notification_timeout_seconds: float = 10

    # Validation and reporting
    enforce_id_prefixes: bool = False
    recent_jobs_days: int = 7

    # Logging
    log_level: str = "INFO"
    structured_logging: bool = True

    def __post_init__(self):
        self.validate()

    @property
    def posting_ttl(self) -> timedelta:
        return timedelta(hours=self.posting_ttl_hours)

    @property
    def expiring_warning(self) -> timedelta:
        return timedelta(hours=self.expiring_warning_hours)

    @property
    def change_order_ttl(self) -> timedelta:
        return timedelta(hours=self.change_order_ttl_hours)

    def validate(self):
        """Check value ranges."""
        for name in ("posting_ttl_hours", "change_order_ttl_hours", "sweep_interval_seconds",
                     "notification_timeout_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(name, "must be greater than zero")

        if self.expiring_warning_hours < 0:
            raise ConfigurationError("expiring_warning_hours", "must not be negative")
        if self.expiring_warning_hours >= self.posting_ttl_hours:
            raise ConfigurationError("expiring_warning_hours", "must be shorter than posting_ttl_hours")
        if self.pool_size < 1:
            raise ConfigurationError("pool_size", "must be at least 1")
        if self.recent_jobs_days < 1:
            raise ConfigurationError("recent_jobs_days", "must be at least 1")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ConfigurationError("log_level", f"must be one of {', '.join(_LOG_LEVELS)}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OrchestratorConfig":
        """Build a config from a mapping, coercing string values."""
        known = {f.name: f for f in fields(cls)}
        values = {}
        for key, raw in (data or {}).items():
            if key not in known:
                raise ConfigurationError(key, "unknown configuration key")
            values[key] = _coerce(key, known[key].type, raw)
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: str) -> "OrchestratorConfig":
        """
        Load configuration from a YAML file.

        The file may hold the settings at top level or under an
        ``orchestrator`` key.
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigurationError("config_file", f"cannot read {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError("config_file", f"invalid YAML in {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError("config_file", "top-level YAML value must be a mapping")

        return cls.from_dict(data.get("orchestrator", data))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OrchestratorConfig":
        """Load configuration from ``MJO_<FIELD>`` environment variables."""
        environ = os.environ if environ is None else environ
        names = {f.name for f in fields(cls)}
        data = {}
        for key, value in environ.items():
            if key.startswith(ENV_PREFIX):
                name = key[len(ENV_PREFIX):].lower()
                if name in names:
                    data[name] = value
        return cls.from_dict(data)


def _coerce(key: str, annotation: Any, raw: Any) -> Any:
    if raw is None:
        if annotation == Optional[str]:
            return None
        raise ConfigurationError(key, "value is required")

    try:
        if annotation is bool:
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in _TRUE_VALUES:
                return True
            if text in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {raw!r}")
        if annotation in (int, float):
            if isinstance(raw, bool):
                raise ValueError("booleans are not numbers")
            return annotation(raw)
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(key, str(e))
