"""
Cost analytics and month-end forecasting.

Dashboard queries over the usage ledger. Results are read-only and
deterministic for a given clock; a data-store failure yields a zeroed
result instead of an error.
"""

import calendar
import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from usage_meter.config.loader import DEFAULT_ANOMALY_MULTIPLIER
from usage_meter.storage.models import Serializable, price_key
from usage_meter.storage.repository import UsageRepository, fetch_all_prices

from .anomaly import CostAnomaly, detect_anomalies

logger = logging.getLogger(__name__)

PERIODS = ("today", "week", "month")

TREND_WINDOW = timedelta(days=7)
# Relative change beyond which the trailing week counts as a trend
TREND_CHANGE_RATIO = 0.1

HIGH_CONFIDENCE_DAYS = 20
MEDIUM_CONFIDENCE_DAYS = 7


class UsageTrend(Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class ConfidenceLevel(Enum):
    """How far a linear month-end extrapolation can be trusted."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ModelUsage(Serializable):
    provider: str
    model_id: str
    display_name: str
    input_tokens: int
    output_tokens: int
    total_cost: float
    percentage: float


@dataclass(frozen=True)
class FeatureUsage(Serializable):
    feature_type: str
    total_tokens: int
    total_cost: float
    percentage: float


@dataclass(frozen=True)
class UsageOverview(Serializable):
    """Totals for a period with model and feature breakdowns."""
    period: str
    start: datetime
    input_tokens: int
    output_tokens: int
    total_tokens: int
    total_cost: float
    by_model: List[ModelUsage] = field(default_factory=list)
    by_feature: List[FeatureUsage] = field(default_factory=list)


@dataclass(frozen=True)
class ModelDayUsage(Serializable):
    tokens: int
    cost: float


@dataclass(frozen=True)
class DailyUsage(Serializable):
    """One calendar day of the usage trend, keyed models as ``provider:model``."""
    date: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    total_cost: float
    by_model: Dict[str, ModelDayUsage] = field(default_factory=dict)


@dataclass(frozen=True)
class Forecast(Serializable):
    current_month_usage: float
    projected_monthly_usage: float
    daily_average: float
    days_passed: int
    days_remaining: int
    days_in_month: int
    trend: UsageTrend
    confidence_level: ConfidenceLevel


@dataclass(frozen=True)
class TenantUsage(Serializable):
    tenant_id: str
    total_tokens: int
    total_cost: float


def classify_trend(previous_cost: float, recent_cost: float) -> UsageTrend:
    """Compare two equal-length windows; a zero previous window is stable."""
    if previous_cost <= 0:
        return UsageTrend.STABLE
    change = (recent_cost - previous_cost) / previous_cost
    if change > TREND_CHANGE_RATIO:
        return UsageTrend.INCREASING
    if change < -TREND_CHANGE_RATIO:
        return UsageTrend.DECREASING
    return UsageTrend.STABLE


def confidence_for(days_passed: int) -> ConfidenceLevel:
    if days_passed >= HIGH_CONFIDENCE_DAYS:
        return ConfidenceLevel.HIGH
    if days_passed >= MEDIUM_CONFIDENCE_DAYS:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def _percentage(part: float, whole: float) -> float:
    return part / whole * 100.0 if whole > 0 else 0.0


class CostAnalytics:
    """Usage overviews, trends, forecasts and rankings for dashboards."""

    def __init__(
        self,
        repository: UsageRepository,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self._clock = clock

    def period_start(self, period: str) -> datetime:
        """Start of a dashboard period relative to now.

        Raises:
            ValueError: If period is not today, week or month
        """
        now = self._clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if period == "today":
            return midnight
        if period == "week":
            return now - timedelta(days=7)
        if period == "month":
            return midnight.replace(day=1)
        raise ValueError(f"Unknown period: {period!r} (expected one of {', '.join(PERIODS)})")

    def get_usage_overview(self, period: str, tenant_id: Optional[str] = None) -> UsageOverview:
        """Sum tokens and cost for a period, broken down by model and feature.

        Args:
            period: "today", "week" (trailing 7 days) or "month"
            tenant_id: Optional tenant scope

        Returns:
            UsageOverview; breakdown percentages are shares of total cost
        """
        start = self.period_start(period)
        try:
            totals = self.repository.sum_usage(start, None, tenant_id)
            by_model = self.repository.usage_by_model(start, None, tenant_id)
            by_feature = self.repository.usage_by_feature(start, None, tenant_id)
            display_names = {
                entry.key: entry.display_name
                for entry in fetch_all_prices(self.repository.db_path)
            }
        except sqlite3.Error:
            logger.error("Failed to get usage overview", exc_info=True)
            return UsageOverview(period=period, start=start, input_tokens=0,
                                 output_tokens=0, total_tokens=0, total_cost=0.0)

        total_cost = totals["total_cost"]
        return UsageOverview(
            period=period,
            start=start,
            input_tokens=totals["input_tokens"],
            output_tokens=totals["output_tokens"],
            total_tokens=totals["total_tokens"],
            total_cost=total_cost,
            by_model=[
                ModelUsage(
                    provider=row["model_provider"],
                    model_id=row["model_id"],
                    display_name=display_names.get(
                        price_key(row["model_provider"], row["model_id"]), row["model_id"]
                    ),
                    input_tokens=row["input_tokens"],
                    output_tokens=row["output_tokens"],
                    total_cost=float(row["total_cost"]),
                    percentage=_percentage(float(row["total_cost"]), total_cost),
                )
                for row in by_model
            ],
            by_feature=[
                FeatureUsage(
                    feature_type=row["feature_type"],
                    total_tokens=row["total_tokens"],
                    total_cost=float(row["total_cost"]),
                    percentage=_percentage(float(row["total_cost"]), total_cost),
                )
                for row in by_feature
            ],
        )

    def get_usage_trend(self, days: int = 30, tenant_id: Optional[str] = None) -> List[DailyUsage]:
        """Daily totals over the trailing ``days``, oldest day first.

        Days without usage are omitted.
        """
        start = self._clock() - timedelta(days=days)
        try:
            rows = self.repository.daily_usage_by_model(start, None, tenant_id)
        except sqlite3.Error:
            logger.error("Failed to get usage trend", exc_info=True)
            return []

        days_seen: Dict[str, Dict] = {}
        for row in rows:
            day = days_seen.setdefault(row["day"], {
                "input_tokens": 0,
                "output_tokens": 0,
                "total_tokens": 0,
                "total_cost": 0.0,
                "by_model": {},
            })
            day["input_tokens"] += row["input_tokens"]
            day["output_tokens"] += row["output_tokens"]
            day["total_tokens"] += row["total_tokens"]
            day["total_cost"] += float(row["total_cost"])
            day["by_model"][row["model_key"]] = ModelDayUsage(
                tokens=row["total_tokens"], cost=float(row["total_cost"])
            )

        return [DailyUsage(date=date, **values) for date, values in sorted(days_seen.items())]

    def get_forecast(self, tenant_id: Optional[str] = None) -> Forecast:
        """Project month-end cost from the month-to-date daily average.

        ``days_passed`` counts the current partial day, so on the 10th at
        noon it is 10. The trend compares the trailing 7 days with the 7
        before them.
        """
        now = self._clock()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        days_passed = math.ceil((now - month_start) / timedelta(days=1))
        days_remaining = days_in_month - days_passed

        try:
            month_cost = self.repository.sum_usage(month_start, None, tenant_id)["total_cost"]
            recent_cost = self.repository.sum_usage(
                now - TREND_WINDOW, None, tenant_id
            )["total_cost"]
            previous_cost = self.repository.sum_usage(
                now - 2 * TREND_WINDOW, now - TREND_WINDOW, tenant_id
            )["total_cost"]
        except sqlite3.Error:
            logger.error("Failed to get forecast", exc_info=True)
            month_cost = recent_cost = previous_cost = 0.0

        daily_average = month_cost / max(days_passed, 1)
        return Forecast(
            current_month_usage=month_cost,
            projected_monthly_usage=daily_average * days_in_month,
            daily_average=daily_average,
            days_passed=days_passed,
            days_remaining=days_remaining,
            days_in_month=days_in_month,
            trend=classify_trend(previous_cost, recent_cost),
            confidence_level=confidence_for(days_passed),
        )

    def get_top_tenants_by_usage(self, period: str, limit: int = 10) -> List[TenantUsage]:
        """Tenants ranked by cost over the period, most expensive first."""
        start = self.period_start(period)
        try:
            rows = self.repository.cost_by_tenant(start, None, limit)
        except sqlite3.Error:
            logger.error("Failed to get top tenants", exc_info=True)
            return []
        return [
            TenantUsage(
                tenant_id=row["tenant_id"],
                total_tokens=row["total_tokens"],
                total_cost=float(row["total_cost"]),
            )
            for row in rows
        ]

    def detect_anomalies(
        self,
        threshold_multiplier: float = DEFAULT_ANOMALY_MULTIPLIER
    ) -> List[CostAnomaly]:
        return detect_anomalies(self.repository, threshold_multiplier, self._clock)
