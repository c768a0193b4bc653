"""
Response-time alert detection.

Decides which tenant/chatbot scopes breach their resolved thresholds.
Delivering the alerts (email, webhook, chat) belongs to the caller.
"""

import logging
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from usage_meter.storage.latency_repository import LatencyRepository
from usage_meter.storage.models import LatencyRecord, Serializable

from .stats import compute_percentile, mean
from .thresholds import ThresholdResolver

logger = logging.getLogger(__name__)

ALERT_WINDOW = timedelta(hours=1)

# Minimum sample sizes before a scope is judged
MIN_P95_REQUESTS = 10
MIN_SPIKE_REQUESTS = 5
# Previous-hour averages below this are too small for a meaningful ratio
MIN_SPIKE_BASELINE_MS = 100.0


class AlertType(Enum):
    RESPONSE_TIME_P95 = "response_time_p95"
    RESPONSE_TIME_SPIKE = "response_time_spike"


class AlertSeverity(Enum):
    """Severity levels for detected alerts."""
    WARNING = "warning"
    CRITICAL = "critical"


ALERT_SEVERITY = {
    AlertType.RESPONSE_TIME_P95: AlertSeverity.CRITICAL,
    AlertType.RESPONSE_TIME_SPIKE: AlertSeverity.WARNING,
}


@dataclass(frozen=True)
class ResponseTimeAlert(Serializable):
    """Detected response-time breach with details and explanation."""
    alert_type: AlertType
    severity: AlertSeverity
    tenant_id: str
    tenant_name: str
    chatbot_id: Optional[str]
    chatbot_name: Optional[str]
    threshold: float
    actual_value: float
    message: str
    created_at: datetime
    cooldown_minutes: int
    current_avg_ms: Optional[float] = None
    previous_avg_ms: Optional[float] = None


_Scope = Tuple[str, Optional[str]]


class ResponseTimeAlertChecker:
    """Checks p95 breaches and average spikes against resolved thresholds."""

    def __init__(
        self,
        repository: LatencyRepository,
        resolver: ThresholdResolver,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.resolver = resolver
        self._clock = clock

    def check_p95_thresholds(self) -> List[ResponseTimeAlert]:
        """Flag scopes whose last-hour p95 exceeds their threshold.

        Cache hits are excluded and scopes with fewer than
        ``MIN_P95_REQUESTS`` requests are skipped.
        """
        now = self._clock()
        try:
            groups, names = self._grouped(now - ALERT_WINDOW)
        except sqlite3.Error:
            logger.error("Failed to check P95 thresholds", exc_info=True)
            return []

        alerts = []
        for (tenant_id, chatbot_id), records in groups.items():
            if len(records) < MIN_P95_REQUESTS:
                continue

            threshold = self.resolver.get_threshold(tenant_id, chatbot_id)
            if not threshold.alert_enabled:
                continue

            p95_ms = compute_percentile([r.total_duration_ms for r in records], 95)
            if p95_ms <= threshold.p95_threshold_ms:
                continue

            tenant_name, chatbot_name = names[(tenant_id, chatbot_id)]
            alerts.append(ResponseTimeAlert(
                alert_type=AlertType.RESPONSE_TIME_P95,
                severity=ALERT_SEVERITY[AlertType.RESPONSE_TIME_P95],
                tenant_id=tenant_id,
                tenant_name=tenant_name,
                chatbot_id=chatbot_id,
                chatbot_name=chatbot_name,
                threshold=threshold.p95_threshold_ms,
                actual_value=p95_ms,
                message=(
                    f"P95 response time {p95_ms:.0f}ms exceeds "
                    f"{threshold.p95_threshold_ms:.0f}ms for {chatbot_name or tenant_name}"
                ),
                created_at=now,
                cooldown_minutes=threshold.alert_cooldown_minutes,
            ))

        logger.info("P95 threshold check completed: checked=%d alerts=%d",
                    len(groups), len(alerts))
        return alerts

    def check_response_time_spike(self) -> List[ResponseTimeAlert]:
        """Flag scopes whose current-hour average jumped versus the hour before.

        Both hours need ``MIN_SPIKE_REQUESTS`` non-cached requests and the
        previous average must be at least ``MIN_SPIKE_BASELINE_MS``.
        """
        now = self._clock()
        current_start = now - ALERT_WINDOW
        try:
            groups, names = self._grouped(current_start - ALERT_WINDOW)
        except sqlite3.Error:
            logger.error("Failed to check response time spike", exc_info=True)
            return []

        alerts = []
        for (tenant_id, chatbot_id), records in groups.items():
            current = [r.total_duration_ms for r in records if r.timestamp >= current_start]
            previous = [r.total_duration_ms for r in records if r.timestamp < current_start]
            if len(current) < MIN_SPIKE_REQUESTS or len(previous) < MIN_SPIKE_REQUESTS:
                continue

            previous_avg = mean(previous)
            if previous_avg < MIN_SPIKE_BASELINE_MS:
                continue

            threshold = self.resolver.get_threshold(tenant_id, chatbot_id)
            if not threshold.alert_enabled:
                continue

            current_avg = mean(current)
            ratio = current_avg / previous_avg
            if ratio < threshold.avg_spike_threshold:
                continue

            tenant_name, chatbot_name = names[(tenant_id, chatbot_id)]
            alerts.append(ResponseTimeAlert(
                alert_type=AlertType.RESPONSE_TIME_SPIKE,
                severity=ALERT_SEVERITY[AlertType.RESPONSE_TIME_SPIKE],
                tenant_id=tenant_id,
                tenant_name=tenant_name,
                chatbot_id=chatbot_id,
                chatbot_name=chatbot_name,
                threshold=threshold.avg_spike_threshold,
                actual_value=ratio,
                message=(
                    f"Average response time rose {(ratio - 1) * 100:.0f}% "
                    f"({previous_avg:.0f}ms -> {current_avg:.0f}ms) "
                    f"for {chatbot_name or tenant_name}"
                ),
                created_at=now,
                cooldown_minutes=threshold.alert_cooldown_minutes,
                current_avg_ms=current_avg,
                previous_avg_ms=previous_avg,
            ))

        logger.info("Response time spike check completed: checked=%d alerts=%d",
                    len(groups), len(alerts))
        return alerts

    def check_all_response_time_alerts(self) -> List[ResponseTimeAlert]:
        return self.check_p95_thresholds() + self.check_response_time_spike()

    def _grouped(
        self,
        start: datetime
    ) -> Tuple[Dict[_Scope, List[LatencyRecord]], Dict[_Scope, Tuple[str, Optional[str]]]]:
        groups: Dict[_Scope, List[LatencyRecord]] = defaultdict(list)
        names: Dict[_Scope, Tuple[str, Optional[str]]] = {}
        labelled = self.repository.fetch_labelled_records(start, exclude_cache_hits=True)
        for record, tenant_name, chatbot_name in labelled:
            scope = (record.tenant_id, record.chatbot_id)
            groups[scope].append(record)
            names[scope] = (tenant_name or record.tenant_id, chatbot_name)
        return groups, names
