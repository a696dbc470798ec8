"""
Configuration management and loading.

Settings come from an optional YAML file and are then overridden by
environment variables with the upper-case setting name (``DELAY_HOURS``,
``SCHEDULER_GROUP``, ...). Every value is validated at load time so a
misconfigured deployment fails on its first invocation, not halfway through
a collection.
"""

import logging
import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

CONFIG_PATH_ENV = "LEASE_COSTS_CONFIG"

ROLE_ARN_PATTERN = re.compile(r"^arn:aws:iam::\d{12}:role\/[\w+=,.@-]+$")
LAMBDA_ARN_PATTERN = re.compile(r"^arn:aws:lambda:[a-z0-9-]+:\d{12}:function:[\w-]+$")
EVENT_BUS_NAME_PATTERN = re.compile(r"^[.\-_A-Za-z0-9]{1,256}$")
_INTEGER_PATTERN = re.compile(r"^-?\d+$")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# name: (minimum, maximum) inclusive
_INT_BOUNDS = {
    "delay_hours": (0, 720),
    "billing_padding_hours": (0, 168),
    "jitter_max_minutes": (0, 60),
    "flexible_window_minutes": (1, 15),
    "max_pages": (1, 1000),
    "max_retry_attempts": (1, 10),
    "credential_duration_seconds": (900, 43200),
    "reaper_threshold_hours": (1, 720),
    "rate_limit_delay_ms": (0, 5000),
    "resource_lookback_days": (1, 14),
    "presigned_url_expiry_days": (1, 7),
}


@dataclass(frozen=True)
class CollectorSettings:
    """Tunables and deployment names shared by the handlers and the CLI."""
    delay_hours: int = 24
    billing_padding_hours: int = 8
    jitter_max_minutes: int = 30
    flexible_window_minutes: int = 5
    max_pages: int = 100
    max_retry_attempts: int = 3
    credential_duration_seconds: int = 7200
    reaper_threshold_hours: int = 72
    rate_limit_delay_ms: int = 200
    time_budget_fraction: float = 0.9
    resource_lookback_days: int = 14
    include_resources: bool = True
    presigned_url_expiry_days: int = 7
    log_level: str = "INFO"

    scheduler_group: Optional[str] = None
    scheduler_role_arn: Optional[str] = None
    cost_collector_lambda_arn: Optional[str] = None
    cost_explorer_role_arn: Optional[str] = None
    s3_bucket_name: Optional[str] = None
    event_bus_name: Optional[str] = None
    lease_api_base_url: Optional[str] = None
    lease_api_jwt_secret_path: Optional[str] = None

    def __post_init__(self):
        """Validate ranges and the shape of ARN-like values."""
        for name, (minimum, maximum) in _INT_BOUNDS.items():
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer")
            if not minimum <= value <= maximum:
                raise ValueError(f"{name} must be between {minimum} and {maximum}, got {value}")

        fraction = self.time_budget_fraction
        if isinstance(fraction, bool) or not isinstance(fraction, (int, float)) or not 0 < fraction <= 1:
            raise ValueError("time_budget_fraction must be in (0, 1]")
        if not isinstance(self.include_resources, bool):
            raise ValueError("include_resources must be a boolean")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {list(LOG_LEVELS)}")

        for name in ("scheduler_role_arn", "cost_explorer_role_arn"):
            value = getattr(self, name)
            if value is not None and not ROLE_ARN_PATTERN.match(value):
                raise ValueError(
                    f"Invalid {name.upper()} format: {value}. "
                    "Expected format: arn:aws:iam::<account-id>:role/<role-name>"
                )
        if self.cost_collector_lambda_arn is not None and not LAMBDA_ARN_PATTERN.match(self.cost_collector_lambda_arn):
            raise ValueError(
                f"Invalid COST_COLLECTOR_LAMBDA_ARN format: {self.cost_collector_lambda_arn}. "
                "Expected format: arn:aws:lambda:<region>:<account-id>:function:<function-name>"
            )
        if self.event_bus_name is not None and not EVENT_BUS_NAME_PATTERN.match(self.event_bus_name):
            raise ValueError(
                f"Invalid EVENT_BUS_NAME format: {self.event_bus_name}. Event bus names must contain only "
                "alphanumeric characters, dots, hyphens and underscores, and be 1-256 characters long"
            )

    def require(self, *names: str, component: str = "lease costs") -> None:
        """Fail fast when a deployment name the caller needs is unset.

        Raises:
            ValueError: Naming the component and the first missing setting
        """
        for name in names:
            if not getattr(self, name):
                raise ValueError(
                    f"Missing required setting {name.upper()} for {component}. "
                    f"Set the {name.upper()} environment variable or '{name}' in the config file."
                )


def _coerce(name: str, value: Any, source: str) -> Any:
    """Convert a raw YAML or environment value to the field's type."""
    if name in _INT_BOUNDS:
        if isinstance(value, bool):
            raise ValueError(f"{name} from {source} must be an integer")
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not _INTEGER_PATTERN.match(text):
            raise ValueError(f"{name} from {source} must be an integer, got {value!r}")
        return int(text)

    if name == "time_budget_fraction":
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name} from {source} must be a number, got {value!r}")

    if name == "include_resources":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "1", "yes"):
            return True
        if text in ("false", "0", "no"):
            return False
        raise ValueError(f"{name} from {source} must be a boolean, got {value!r}")

    if name == "log_level":
        return str(value).strip().upper()

    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _load_yaml(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")
    return raw_config


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> CollectorSettings:
    """Load and validate settings.

    Args:
        path: YAML file; defaults to $LEASE_COSTS_CONFIG when set
        environ: Environment mapping; defaults to os.environ

    Returns:
        Validated CollectorSettings

    Raises:
        FileNotFoundError: If the config file doesn't exist
        yaml.YAMLError: If the YAML is invalid
        ValueError: If any setting is unknown or out of range
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(CONFIG_PATH_ENV)
    known = {f.name for f in fields(CollectorSettings)}

    values: Dict[str, Any] = {}
    if path:
        raw_config = _load_yaml(path)
        unknown_keys = set(raw_config.keys()) - known
        if unknown_keys:
            raise ValueError(f"Unknown configuration keys: {unknown_keys}")
        for name, value in raw_config.items():
            values[name] = _coerce(name, value, path)

    for name in known:
        env_value = environ.get(name.upper())
        if env_value is not None and env_value.strip() != "":
            values[name] = _coerce(name, env_value, f"environment variable {name.upper()}")

    return CollectorSettings(**values)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for handlers and the CLI."""
    root = logging.getLogger()
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        root.addHandler(handler)
    # botocore logs every retry and credential refresh at INFO
    logging.getLogger("botocore").setLevel(max(logging.WARNING, root.level))
