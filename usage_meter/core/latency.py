"""
Latency statistics for SLA dashboards.

Read-only queries over the raw response-time log and its rollups. Every
query degrades to a zeroed result when the data store fails, so a broken
telemetry table never takes the dashboard down with it.
"""

import logging
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from usage_meter.storage.latency_repository import LatencyRepository
from usage_meter.storage.models import LatencyRecord, PeriodType, Serializable

from .stats import percent_change, summarize_latency

logger = logging.getLogger(__name__)

REALTIME_WINDOW = timedelta(hours=1)
COMPARISON_OFFSET = timedelta(hours=24)

UNKNOWN_CHATBOT_ID = "unknown"
DEFAULT_CHATBOT_NAME = "Default chatbot"


@dataclass(frozen=True)
class RealtimeStats(Serializable):
    """Total-duration statistics over the last rolling hour."""
    avg_ms: float
    p50_ms: float
    p95_ms: float
    p99_ms: float
    request_count: int
    cache_hit_rate: float

    @classmethod
    def zero(cls) -> "RealtimeStats":
        return cls(avg_ms=0.0, p50_ms=0.0, p95_ms=0.0, p99_ms=0.0,
                   request_count=0, cache_hit_rate=0.0)


@dataclass(frozen=True)
class PerformanceComparison(Serializable):
    avg_change_percent: float
    p95_change_percent: float


@dataclass(frozen=True)
class PerformanceOverview(Serializable):
    """Current hour plus change versus the same hour yesterday."""
    current: RealtimeStats
    comparison: PerformanceComparison


@dataclass(frozen=True)
class TrendDataPoint(Serializable):
    period_start: datetime
    avg_ms: float
    p50_ms: float
    p95_ms: float
    p99_ms: float
    request_count: int
    cache_hit_rate: float


@dataclass(frozen=True)
class StageLatency(Serializable):
    avg_ms: float
    p95_ms: float


@dataclass(frozen=True)
class LatencyBreakdown(Serializable):
    """Per-stage latency of non-cached requests.

    ``other_avg_ms`` is the residual of the total average not explained by
    the measured stages, clamped at zero.
    """
    llm: StageLatency
    search: StageLatency
    rewrite: StageLatency
    other_avg_ms: float

    @classmethod
    def zero(cls) -> "LatencyBreakdown":
        empty = StageLatency(avg_ms=0.0, p95_ms=0.0)
        return cls(llm=empty, search=empty, rewrite=empty, other_avg_ms=0.0)


@dataclass(frozen=True)
class ChatbotPerformance(Serializable):
    chatbot_id: str
    chatbot_name: str
    tenant_id: str
    tenant_name: str
    avg_ms: float
    p95_ms: float
    request_count: int
    cache_hit_rate: float


def _or_zero(value: Optional[float]) -> float:
    return float(value) if value is not None else 0.0


def _stats_for(records: List[LatencyRecord]) -> RealtimeStats:
    summary = summarize_latency(records)
    return RealtimeStats(
        avg_ms=_or_zero(summary.total_avg_ms),
        p50_ms=_or_zero(summary.total_p50_ms),
        p95_ms=_or_zero(summary.total_p95_ms),
        p99_ms=_or_zero(summary.total_p99_ms),
        request_count=summary.request_count,
        cache_hit_rate=summary.cache_hit_rate,
    )


class LatencyAnalytics:
    """Realtime and trend queries over response-time telemetry.

    All queries accept optional tenant and chatbot scoping.
    """

    def __init__(
        self,
        repository: LatencyRepository,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self._clock = clock

    def get_realtime_stats(
        self,
        tenant_id: Optional[str] = None,
        chatbot_id: Optional[str] = None
    ) -> RealtimeStats:
        """Count, cache-hit rate, mean and p50/p95/p99 over the last hour."""
        try:
            records = self.repository.fetch_latency_records(
                self._clock() - REALTIME_WINDOW,
                tenant_id=tenant_id,
                chatbot_id=chatbot_id,
            )
        except sqlite3.Error:
            logger.error("Failed to get realtime stats", exc_info=True)
            return RealtimeStats.zero()
        return _stats_for(records)

    def get_performance_overview(
        self,
        tenant_id: Optional[str] = None,
        chatbot_id: Optional[str] = None
    ) -> PerformanceOverview:
        """Realtime stats plus avg/p95 change versus the same hour 24h earlier.

        A zero value in the earlier window yields a 0% change.
        """
        current = self.get_realtime_stats(tenant_id, chatbot_id)

        now = self._clock()
        previous_end = now - COMPARISON_OFFSET
        try:
            records = self.repository.fetch_latency_records(
                previous_end - REALTIME_WINDOW,
                previous_end,
                tenant_id=tenant_id,
                chatbot_id=chatbot_id,
            )
        except sqlite3.Error:
            logger.error("Failed to get performance overview", exc_info=True)
            return PerformanceOverview(
                current=current,
                comparison=PerformanceComparison(avg_change_percent=0.0, p95_change_percent=0.0),
            )

        previous = _stats_for(records)
        return PerformanceOverview(
            current=current,
            comparison=PerformanceComparison(
                avg_change_percent=percent_change(previous.avg_ms, current.avg_ms),
                p95_change_percent=percent_change(previous.p95_ms, current.p95_ms),
            ),
        )

    def get_response_time_trend(
        self,
        period_type: PeriodType,
        limit: int = 24,
        tenant_id: Optional[str] = None,
        chatbot_id: Optional[str] = None
    ) -> List[TrendDataPoint]:
        """Read pre-computed rollups, newest period first.

        Without a chatbot the tenant-wide rollups are returned.
        """
        try:
            rollups = self.repository.fetch_rollups(
                PeriodType(period_type),
                limit=limit,
                tenant_id=tenant_id,
                chatbot_id=chatbot_id,
            )
        except sqlite3.Error:
            logger.error("Failed to get response time trend", exc_info=True)
            return []

        return [
            TrendDataPoint(
                period_start=rollup.period_start,
                avg_ms=_or_zero(rollup.total_avg_ms),
                p50_ms=_or_zero(rollup.total_p50_ms),
                p95_ms=_or_zero(rollup.total_p95_ms),
                p99_ms=_or_zero(rollup.total_p99_ms),
                request_count=rollup.request_count,
                cache_hit_rate=(
                    rollup.cache_hit_count / rollup.request_count
                    if rollup.request_count > 0 else 0.0
                ),
            )
            for rollup in rollups
        ]

    def get_realtime_trend(
        self,
        hours: int = 24,
        tenant_id: Optional[str] = None,
        chatbot_id: Optional[str] = None
    ) -> List[TrendDataPoint]:
        """Aggregate raw records by clock hour, newest first.

        Used for windows the hourly rollup hasn't covered yet.
        """
        try:
            records = self.repository.fetch_latency_records(
                self._clock() - timedelta(hours=hours),
                tenant_id=tenant_id,
                chatbot_id=chatbot_id,
            )
        except sqlite3.Error:
            logger.error("Failed to get realtime trend", exc_info=True)
            return []

        by_hour: Dict[datetime, List[LatencyRecord]] = defaultdict(list)
        for record in records:
            by_hour[record.timestamp.replace(minute=0, second=0, microsecond=0)].append(record)

        points = []
        for hour in sorted(by_hour, reverse=True):
            stats = _stats_for(by_hour[hour])
            points.append(TrendDataPoint(
                period_start=hour,
                avg_ms=stats.avg_ms,
                p50_ms=stats.p50_ms,
                p95_ms=stats.p95_ms,
                p99_ms=stats.p99_ms,
                request_count=stats.request_count,
                cache_hit_rate=stats.cache_hit_rate,
            ))
        return points

    def get_latency_breakdown(
        self,
        tenant_id: Optional[str] = None,
        chatbot_id: Optional[str] = None
    ) -> LatencyBreakdown:
        """Per-stage avg and p95 over the last hour, cache hits excluded.

        Cache hits skip the LLM, search and rewrite stages and would dilute
        the stage averages.
        """
        try:
            records = self.repository.fetch_latency_records(
                self._clock() - REALTIME_WINDOW,
                tenant_id=tenant_id,
                chatbot_id=chatbot_id,
                exclude_cache_hits=True,
            )
        except sqlite3.Error:
            logger.error("Failed to get latency breakdown", exc_info=True)
            return LatencyBreakdown.zero()

        summary = summarize_latency(records)
        llm = StageLatency(avg_ms=_or_zero(summary.llm.avg_ms), p95_ms=_or_zero(summary.llm.p95_ms))
        search = StageLatency(
            avg_ms=_or_zero(summary.search.avg_ms), p95_ms=_or_zero(summary.search.p95_ms)
        )
        rewrite = StageLatency(
            avg_ms=_or_zero(summary.rewrite.avg_ms), p95_ms=_or_zero(summary.rewrite.p95_ms)
        )
        total_avg = _or_zero(summary.total_avg_ms)

        return LatencyBreakdown(
            llm=llm,
            search=search,
            rewrite=rewrite,
            other_avg_ms=max(0.0, total_avg - llm.avg_ms - search.avg_ms - rewrite.avg_ms),
        )

    def get_top_slow_chatbots(
        self,
        limit: int = 10,
        tenant_id: Optional[str] = None
    ) -> List[ChatbotPerformance]:
        """Rank chatbots by last-hour p95 total duration, slowest first."""
        try:
            labelled = self.repository.fetch_labelled_records(
                self._clock() - REALTIME_WINDOW,
                tenant_id=tenant_id,
            )
        except sqlite3.Error:
            logger.error("Failed to get top slow chatbots", exc_info=True)
            return []

        groups: Dict[Tuple[str, Optional[str]], List[LatencyRecord]] = defaultdict(list)
        names: Dict[Tuple[str, Optional[str]], Tuple[Optional[str], Optional[str]]] = {}
        for record, tenant_name, chatbot_name in labelled:
            key = (record.tenant_id, record.chatbot_id)
            groups[key].append(record)
            names[key] = (tenant_name, chatbot_name)

        ranking = []
        for (group_tenant, group_chatbot), records in groups.items():
            stats = _stats_for(records)
            tenant_name, chatbot_name = names[(group_tenant, group_chatbot)]
            ranking.append(ChatbotPerformance(
                chatbot_id=group_chatbot or UNKNOWN_CHATBOT_ID,
                chatbot_name=chatbot_name or DEFAULT_CHATBOT_NAME,
                tenant_id=group_tenant,
                tenant_name=tenant_name or group_tenant,
                avg_ms=stats.avg_ms,
                p95_ms=stats.p95_ms,
                request_count=stats.request_count,
                cache_hit_rate=stats.cache_hit_rate,
            ))

        ranking.sort(key=lambda item: (-item.p95_ms, item.tenant_id, item.chatbot_id))
        return ranking[:limit]
