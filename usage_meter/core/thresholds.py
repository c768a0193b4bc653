"""
Alert threshold resolution.

Thresholds cascade from the most specific scope to the least:

1. chatbot row for the tenant (both ids given)
2. tenant-wide row
3. global row
4. compiled-in defaults

Resolution always ends at the defaults, so callers never handle a
"not configured" case.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from usage_meter.config.loader import AlertDefaults
from usage_meter.storage.latency_repository import THRESHOLD_FIELDS, ThresholdRepository
from usage_meter.storage.models import AlertThreshold, Serializable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdConfig(Serializable):
    """Fully resolved alert thresholds for a scope."""
    p95_threshold_ms: float
    avg_spike_threshold: float
    alert_enabled: bool
    alert_cooldown_minutes: int

    @classmethod
    def from_defaults(cls, defaults: AlertDefaults) -> "ThresholdConfig":
        return cls(
            p95_threshold_ms=defaults.p95_threshold_ms,
            avg_spike_threshold=defaults.avg_spike_threshold,
            alert_enabled=defaults.alert_enabled,
            alert_cooldown_minutes=defaults.alert_cooldown_minutes,
        )


class ThresholdResolver:
    """Resolves and stores alert thresholds per scope."""

    def __init__(
        self,
        repository: ThresholdRepository,
        defaults: Optional[AlertDefaults] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.defaults = ThresholdConfig.from_defaults(defaults or AlertDefaults())
        self._clock = clock

    def get_threshold(
        self,
        tenant_id: Optional[str] = None,
        chatbot_id: Optional[str] = None
    ) -> ThresholdConfig:
        """Resolve the thresholds that apply to a tenant/chatbot.

        Fields left unset on the matching row fall back to the defaults.
        A data-store failure resolves to the defaults.
        """
        try:
            row = self._find(tenant_id, chatbot_id)
        except sqlite3.Error:
            logger.error("Failed to get threshold: tenant=%s chatbot=%s",
                         tenant_id, chatbot_id, exc_info=True)
            return self.defaults

        if row is None:
            return self.defaults
        return self._merge(row)

    def save_threshold(
        self,
        config: Mapping[str, Any],
        tenant_id: Optional[str] = None,
        chatbot_id: Optional[str] = None
    ) -> None:
        """Create or update the override row for exactly this scope.

        Only fields present in ``config`` are written on update.

        Args:
            config: Subset of p95_threshold_ms, avg_spike_threshold,
                alert_enabled, alert_cooldown_minutes
            tenant_id: Tenant scope (None for global)
            chatbot_id: Chatbot scope (None for tenant-wide)

        Raises:
            ValueError: If config has unknown fields or invalid values
            sqlite3.Error: If the override cannot be stored
        """
        if isinstance(config, ThresholdConfig):
            config = config.to_dict()
        _validate_threshold_values(config)
        try:
            self.repository.upsert_threshold(tenant_id, chatbot_id, config, self._clock())
        except sqlite3.Error:
            logger.error("Failed to save threshold: tenant=%s chatbot=%s",
                         tenant_id, chatbot_id, exc_info=True)
            raise
        logger.info("Threshold saved: tenant=%s chatbot=%s config=%s",
                    tenant_id, chatbot_id, dict(config))

    def _find(self, tenant_id: Optional[str], chatbot_id: Optional[str]) -> Optional[AlertThreshold]:
        if tenant_id and chatbot_id:
            row = self.repository.find_threshold(tenant_id, chatbot_id)
            if row is not None:
                return row
        if tenant_id:
            row = self.repository.find_threshold(tenant_id, None)
            if row is not None:
                return row
        return self.repository.find_threshold(None, None)

    def _merge(self, row: AlertThreshold) -> ThresholdConfig:
        defaults = self.defaults
        return ThresholdConfig(
            p95_threshold_ms=(
                row.p95_threshold_ms if row.p95_threshold_ms is not None
                else defaults.p95_threshold_ms
            ),
            avg_spike_threshold=(
                row.avg_spike_threshold if row.avg_spike_threshold is not None
                else defaults.avg_spike_threshold
            ),
            alert_enabled=(
                row.alert_enabled if row.alert_enabled is not None
                else defaults.alert_enabled
            ),
            alert_cooldown_minutes=(
                row.alert_cooldown_minutes if row.alert_cooldown_minutes is not None
                else defaults.alert_cooldown_minutes
            ),
        )


def _validate_threshold_values(config: Mapping[str, Any]) -> None:
    unknown = set(config) - set(THRESHOLD_FIELDS)
    if unknown:
        raise ValueError(f"Unknown threshold fields: {sorted(unknown)}")

    p95 = config.get("p95_threshold_ms")
    if p95 is not None and p95 <= 0:
        raise ValueError("p95_threshold_ms must be > 0")
    spike = config.get("avg_spike_threshold")
    if spike is not None and spike <= 1:
        raise ValueError("avg_spike_threshold must be > 1")
    cooldown = config.get("alert_cooldown_minutes")
    if cooldown is not None and cooldown < 0:
        raise ValueError("alert_cooldown_minutes cannot be negative")
