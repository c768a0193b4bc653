"""
Monthly budget status for tenants.

Compares each tenant's accrued current-month cost with its budget: an
admin override when one is set, otherwise the configured default.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from usage_meter.config.loader import BudgetDefaults
from usage_meter.storage.models import Serializable, TenantBudgetStatus
from usage_meter.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

CRITICAL_PERCENT = 90.0
EXCEEDED_PERCENT = 100.0


class BudgetAlertLevel(Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class BudgetLimit(Serializable):
    monthly_budget_usd: float
    alert_threshold_percent: float
    is_overridden: bool


@dataclass(frozen=True)
class BudgetStatus(Serializable):
    """A tenant's spend against its monthly budget."""
    tenant_id: str
    monthly_budget_usd: float
    current_usage_usd: float
    usage_percentage: float
    remaining_budget_usd: float
    is_over_budget: bool
    alert_level: BudgetAlertLevel
    is_overridden: bool


def budget_alert_level(usage_percentage: float, alert_threshold_percent: float) -> BudgetAlertLevel:
    """Classify usage; exceeded and critical win over the configured warning threshold."""
    if usage_percentage >= EXCEEDED_PERCENT:
        return BudgetAlertLevel.EXCEEDED
    if usage_percentage >= CRITICAL_PERCENT:
        return BudgetAlertLevel.CRITICAL
    if usage_percentage >= alert_threshold_percent:
        return BudgetAlertLevel.WARNING
    return BudgetAlertLevel.NORMAL


class BudgetMonitor:
    """Reads tenant budget rows and reports usage against limits."""

    def __init__(
        self,
        repository: UsageRepository,
        defaults: Optional[BudgetDefaults] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.defaults = defaults or BudgetDefaults()
        self._clock = clock

    def get_budget_limit(self, tenant_id: str) -> BudgetLimit:
        """Return the tenant's override, or the configured default budget."""
        return self._limit_for(self.repository.get_budget_status(tenant_id))

    def check_budget_status(self, tenant_id: str) -> BudgetStatus:
        """Report a tenant's spend against its budget.

        Tenants without a budget row have spent nothing and use the default
        limit. A zero budget override reports 0% usage.

        Raises:
            sqlite3.Error: If the budget row cannot be read
        """
        row = self.repository.get_budget_status(tenant_id)
        usage = row.current_month_usage if row else 0.0
        return self._status_for(tenant_id, usage, self._limit_for(row))

    def is_over_budget(self, tenant_id: str) -> bool:
        return self.check_budget_status(tenant_id).is_over_budget

    def set_budget_override(self, tenant_id: str, monthly_budget_usd: Optional[float]) -> None:
        """Set a tenant's monthly budget, or clear the override with None.

        Raises:
            ValueError: If the budget is negative
        """
        if monthly_budget_usd is not None and monthly_budget_usd < 0:
            raise ValueError("monthly budget cannot be negative")
        self.repository.set_budget_override(tenant_id, monthly_budget_usd, self._clock())
        logger.info("Tenant budget override updated: tenant=%s monthly_budget_usd=%s",
                    tenant_id, monthly_budget_usd)

    def get_all_budget_statuses(self) -> List[BudgetStatus]:
        """Every tenant with a budget row, highest usage percentage first.

        Store errors are logged and yield an empty list.
        """
        try:
            rows = self.repository.get_budget_statuses()
        except sqlite3.Error:
            logger.error("Failed to get budget statuses", exc_info=True)
            return []

        statuses = [
            self._status_for(row.tenant_id, row.current_month_usage, self._limit_for(row))
            for row in rows
        ]
        statuses.sort(key=lambda status: (-status.usage_percentage, status.tenant_id))
        return statuses

    def get_tenants_needing_budget_alert(self) -> List[BudgetStatus]:
        """Tenants at warning level or above."""
        statuses = [
            status for status in self.get_all_budget_statuses()
            if status.alert_level != BudgetAlertLevel.NORMAL
        ]
        if statuses:
            logger.warning("Tenants over budget alert threshold: %d", len(statuses))
        return statuses

    def _limit_for(self, row: Optional[TenantBudgetStatus]) -> BudgetLimit:
        if row is not None and row.override_monthly_budget is not None:
            return BudgetLimit(
                monthly_budget_usd=row.override_monthly_budget,
                alert_threshold_percent=self.defaults.alert_threshold_percent,
                is_overridden=True,
            )
        return BudgetLimit(
            monthly_budget_usd=self.defaults.monthly_usd,
            alert_threshold_percent=self.defaults.alert_threshold_percent,
            is_overridden=False,
        )

    @staticmethod
    def _status_for(tenant_id: str, usage: float, limit: BudgetLimit) -> BudgetStatus:
        budget = limit.monthly_budget_usd
        percentage = usage / budget * 100.0 if budget > 0 else 0.0
        return BudgetStatus(
            tenant_id=tenant_id,
            monthly_budget_usd=budget,
            current_usage_usd=usage,
            usage_percentage=percentage,
            remaining_budget_usd=max(0.0, budget - usage),
            is_over_budget=percentage >= EXCEEDED_PERCENT,
            alert_level=budget_alert_level(percentage, limit.alert_threshold_percent),
            is_overridden=limit.is_overridden,
        )
