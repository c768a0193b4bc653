"""
Configuration management and loading.

Handles meter settings from a YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from usage_meter.storage.db import DEFAULT_DB_PATH

CONFIG_ENV_VAR = "USAGE_METER_CONFIG"

DEFAULT_RETENTION_DAYS = 30
DEFAULT_ANOMALY_MULTIPLIER = 2.0
DEFAULT_PRICE_CACHE_TTL_SECONDS = 300.0
DEFAULT_P95_THRESHOLD_MS = 3000.0
DEFAULT_AVG_SPIKE_THRESHOLD = 1.5
DEFAULT_ALERT_COOLDOWN_MINUTES = 60
DEFAULT_MONTHLY_BUDGET_USD = 100.0
DEFAULT_BUDGET_ALERT_PERCENT = 80.0


@dataclass(frozen=True)
class AlertDefaults:
    """Compiled-in alert thresholds used when no override row matches."""
    p95_threshold_ms: float = DEFAULT_P95_THRESHOLD_MS
    avg_spike_threshold: float = DEFAULT_AVG_SPIKE_THRESHOLD
    alert_enabled: bool = True
    alert_cooldown_minutes: int = DEFAULT_ALERT_COOLDOWN_MINUTES

    def __post_init__(self):
        """Validate alert defaults."""
        if self.p95_threshold_ms <= 0:
            raise ValueError("p95_threshold_ms must be > 0")
        if self.avg_spike_threshold <= 1:
            raise ValueError("avg_spike_threshold must be > 1")
        if self.alert_cooldown_minutes < 0:
            raise ValueError("alert_cooldown_minutes cannot be negative")


@dataclass(frozen=True)
class BudgetDefaults:
    """Monthly budget applied to tenants without an override."""
    monthly_usd: float = DEFAULT_MONTHLY_BUDGET_USD
    alert_threshold_percent: float = DEFAULT_BUDGET_ALERT_PERCENT

    def __post_init__(self):
        """Validate budget defaults."""
        if self.monthly_usd <= 0:
            raise ValueError("monthly budget must be > 0")
        if not 0 < self.alert_threshold_percent <= 100:
            raise ValueError("budget alert threshold must be between 0 and 100")


@dataclass(frozen=True)
class MeterConfig:
    """Complete meter configuration."""
    database_path: str = DEFAULT_DB_PATH
    retention_days: int = DEFAULT_RETENTION_DAYS
    anomaly_threshold_multiplier: float = DEFAULT_ANOMALY_MULTIPLIER
    price_cache_ttl_seconds: float = DEFAULT_PRICE_CACHE_TTL_SECONDS
    alerts: AlertDefaults = field(default_factory=AlertDefaults)
    budget: BudgetDefaults = field(default_factory=BudgetDefaults)

    def __post_init__(self):
        """Validate meter settings."""
        if not self.database_path:
            raise ValueError("database path cannot be empty")
        if self.retention_days <= 0:
            raise ValueError("retention days must be > 0")
        if self.anomaly_threshold_multiplier <= 0:
            raise ValueError("anomaly threshold multiplier must be > 0")
        if self.price_cache_ttl_seconds < 0:
            raise ValueError("price cache ttl cannot be negative")


_SECTIONS = {
    "database": {"path"},
    "retention": {"days"},
    "anomaly": {"threshold_multiplier"},
    "pricing": {"cache_ttl_seconds"},
    "alerts": {
        "p95_threshold_ms",
        "avg_spike_threshold",
        "alert_enabled",
        "alert_cooldown_minutes",
    },
    "budget": {"monthly_usd", "alert_threshold_percent"},
}


def load_meter_config(path: str) -> MeterConfig:
    """Load and validate meter configuration from YAML file.

    Strict validation ensures no silent misconfigurations; every section
    is optional and falls back to the compiled-in defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Meter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return MeterConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTIONS}

    alerts_data = sections["alerts"]
    alerts = AlertDefaults(
        p95_threshold_ms=_number(
            alerts_data, "p95_threshold_ms", "alerts", DEFAULT_P95_THRESHOLD_MS
        ),
        avg_spike_threshold=_number(
            alerts_data, "avg_spike_threshold", "alerts", DEFAULT_AVG_SPIKE_THRESHOLD
        ),
        alert_enabled=_boolean(alerts_data, "alert_enabled", "alerts", True),
        alert_cooldown_minutes=_integer(
            alerts_data, "alert_cooldown_minutes", "alerts", DEFAULT_ALERT_COOLDOWN_MINUTES
        ),
    )

    budget_data = sections["budget"]
    budget = BudgetDefaults(
        monthly_usd=_number(budget_data, "monthly_usd", "budget", DEFAULT_MONTHLY_BUDGET_USD),
        alert_threshold_percent=_number(
            budget_data, "alert_threshold_percent", "budget", DEFAULT_BUDGET_ALERT_PERCENT
        ),
    )

    database_path = sections["database"].get("path", DEFAULT_DB_PATH)
    if not isinstance(database_path, str):
        raise ValueError("'database.path' must be a string")

    return MeterConfig(
        database_path=database_path,
        retention_days=_integer(
            sections["retention"], "days", "retention", DEFAULT_RETENTION_DAYS
        ),
        anomaly_threshold_multiplier=_number(
            sections["anomaly"], "threshold_multiplier", "anomaly", DEFAULT_ANOMALY_MULTIPLIER
        ),
        price_cache_ttl_seconds=_number(
            sections["pricing"], "cache_ttl_seconds", "pricing", DEFAULT_PRICE_CACHE_TTL_SECONDS
        ),
        alerts=alerts,
        budget=budget,
    )


def resolve_config(path: Optional[str] = None) -> MeterConfig:
    """Load config from ``path``, else from ``$USAGE_METER_CONFIG``, else defaults."""
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return MeterConfig()
    return load_meter_config(path)


def _section(raw_config: Dict, name: str) -> Dict[str, Any]:
    """Return a validated config section (empty when absent)."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTIONS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _number(data: Dict, key: str, path: str, default: float) -> float:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _integer(data: Dict, key: str, path: str, default: int) -> int:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _boolean(data: Dict, key: str, path: str, default: bool) -> bool:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value
