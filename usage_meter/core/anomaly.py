"""
Anomaly detection for cost patterns.

Flags tenants whose spend today is a multiple of their spend over the
same stretch of yesterday.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List

from usage_meter.config.loader import DEFAULT_ANOMALY_MULTIPLIER
from usage_meter.storage.models import Serializable
from usage_meter.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CostAnomaly(Serializable):
    """Tenant whose day-over-day cost ratio crossed the multiplier."""
    tenant_id: str
    today_cost: float
    yesterday_cost: float
    increase_ratio: float


def detect_anomalies(
    repository: UsageRepository,
    threshold_multiplier: float = DEFAULT_ANOMALY_MULTIPLIER,
    clock: Callable[[], datetime] = datetime.now
) -> List[CostAnomaly]:
    """Compare each tenant's cost so far today with yesterday.

    Yesterday is cut at the same time of day as now, so a morning check
    is not measured against a full day. Tenants with no cost yesterday
    have no meaningful ratio and are never flagged.

    Args:
        repository: Usage ledger
        threshold_multiplier: Ratio at or above which a tenant is flagged
        clock: Source of "now"

    Returns:
        Anomalies sorted by ratio, highest first (empty on store errors)

    Raises:
        ValueError: If threshold_multiplier is not positive
    """
    if threshold_multiplier <= 0:
        raise ValueError("threshold_multiplier must be > 0")

    now = clock()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    yesterday_start = today_start - timedelta(days=1)

    try:
        today = repository.cost_by_tenant(today_start, None)
        yesterday = repository.cost_by_tenant(yesterday_start, now - timedelta(days=1))
    except sqlite3.Error:
        logger.error("Failed to detect anomalies", exc_info=True)
        return []

    yesterday_costs = {row["tenant_id"]: float(row["total_cost"]) for row in yesterday}

    anomalies = []
    for row in today:
        yesterday_cost = yesterday_costs.get(row["tenant_id"], 0.0)
        if yesterday_cost <= 0:
            continue
        today_cost = float(row["total_cost"])
        ratio = today_cost / yesterday_cost
        if ratio >= threshold_multiplier:
            anomalies.append(CostAnomaly(
                tenant_id=row["tenant_id"],
                today_cost=today_cost,
                yesterday_cost=yesterday_cost,
                increase_ratio=ratio,
            ))

    anomalies.sort(key=lambda a: a.increase_ratio, reverse=True)
    if anomalies:
        logger.warning("Detected %d cost anomalies (multiplier=%.2f)",
                       len(anomalies), threshold_multiplier)
    return anomalies
