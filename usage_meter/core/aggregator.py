"""
Scheduled latency rollups and raw-log retention.

An external scheduler runs these entry points:

- ``aggregate_hourly_stats``: a few minutes past every hour
- ``aggregate_daily_stats``: once a day, after midnight
- ``cleanup_old_logs``: once a day

Rollups are upserted on their natural key, so re-running a period
overwrites it with identical values. This makes retries after a partial
failure and manual backfills safe.
"""

import logging
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from usage_meter.config.loader import DEFAULT_RETENTION_DAYS
from usage_meter.storage.latency_repository import LatencyRepository
from usage_meter.storage.models import LatencyRecord, LatencyRollup, PeriodType, Serializable

from .stats import summarize_latency

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregationResult(Serializable):
    """Outcome of one aggregation run."""
    period_type: PeriodType
    period_start: datetime
    processed: int
    errors: int


@dataclass(frozen=True)
class CleanupResult(Serializable):
    deleted_count: int
    cutoff: datetime


def previous_hour_start(now: datetime) -> datetime:
    """Start of the last full clock hour before ``now``."""
    return now.replace(minute=0, second=0, microsecond=0) - timedelta(hours=1)


def previous_day_start(now: datetime) -> datetime:
    """Midnight starting the last full day before ``now``."""
    return now.replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=1)


def build_rollup(
    tenant_id: str,
    chatbot_id: Optional[str],
    period_type: PeriodType,
    period_start: datetime,
    records: List[LatencyRecord]
) -> LatencyRollup:
    """Summarize one group of raw records into a rollup row."""
    summary = summarize_latency(records)
    return LatencyRollup(
        tenant_id=tenant_id,
        chatbot_id=chatbot_id,
        period_type=period_type,
        period_start=period_start,
        request_count=summary.request_count,
        cache_hit_count=summary.cache_hit_count,
        total_avg_ms=summary.total_avg_ms,
        total_p50_ms=summary.total_p50_ms,
        total_p95_ms=summary.total_p95_ms,
        total_p99_ms=summary.total_p99_ms,
        total_min_ms=summary.total_min_ms,
        total_max_ms=summary.total_max_ms,
        llm_avg_ms=summary.llm.avg_ms,
        llm_p95_ms=summary.llm.p95_ms,
        search_avg_ms=summary.search.avg_ms,
        search_p95_ms=summary.search.p95_ms,
    )


def group_records(
    records: List[LatencyRecord]
) -> Dict[Tuple[str, Optional[str]], List[LatencyRecord]]:
    """Group records per (tenant, chatbot) and per tenant.

    Per-tenant groups use a chatbot of None. Records without a chatbot
    only contribute to their tenant-wide group, since both would share
    the same rollup key.
    """
    groups: Dict[Tuple[str, Optional[str]], List[LatencyRecord]] = defaultdict(list)
    for record in records:
        if record.chatbot_id is not None:
            groups[(record.tenant_id, record.chatbot_id)].append(record)
        groups[(record.tenant_id, None)].append(record)
    return groups


class RollupAggregator:
    """Computes hourly/daily latency rollups and purges expired raw logs."""

    def __init__(
        self,
        repository: LatencyRepository,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self._clock = clock

    def aggregate_hourly_stats(self, period_start: Optional[datetime] = None) -> AggregationResult:
        """Roll up the previous full clock hour.

        Args:
            period_start: Hour to (re)aggregate instead, for backfills

        Returns:
            AggregationResult with processed and failed group counts
        """
        start = period_start or previous_hour_start(self._clock())
        start = start.replace(minute=0, second=0, microsecond=0)
        return self._aggregate(PeriodType.HOURLY, start, start + timedelta(hours=1))

    def aggregate_daily_stats(self, period_start: Optional[datetime] = None) -> AggregationResult:
        """Roll up the previous full day from raw records.

        Daily percentiles are recomputed from the raw log rather than
        derived from hourly rollups, because percentiles do not compose.
        """
        start = period_start or previous_day_start(self._clock())
        start = start.replace(hour=0, minute=0, second=0, microsecond=0)
        return self._aggregate(PeriodType.DAILY, start, start + timedelta(days=1))

    def cleanup_old_logs(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> CleanupResult:
        """Delete raw latency records older than the retention window.

        Rollups are kept so historical trends survive the raw data.

        Raises:
            ValueError: If retention_days is not positive
            sqlite3.Error: Propagated so the scheduler sees the failure
        """
        if retention_days <= 0:
            raise ValueError("retention_days must be > 0")

        cutoff = self._clock() - timedelta(days=retention_days)
        logger.info("Starting log cleanup: retention_days=%d cutoff=%s",
                    retention_days, cutoff.isoformat())
        try:
            deleted = self.repository.delete_records_before(cutoff)
        except sqlite3.Error:
            logger.error("Log cleanup failed", exc_info=True)
            raise

        logger.info("Log cleanup completed: deleted=%d", deleted)
        return CleanupResult(deleted_count=deleted, cutoff=cutoff)

    def _aggregate(
        self,
        period_type: PeriodType,
        start: datetime,
        end: datetime
    ) -> AggregationResult:
        logger.info("Starting %s aggregation: %s - %s",
                    period_type.value, start.isoformat(), end.isoformat())
        try:
            records = self.repository.fetch_latency_records(start, end)
        except sqlite3.Error:
            logger.error("%s aggregation failed", period_type.value.capitalize(), exc_info=True)
            raise

        processed = 0
        errors = 0
        updated_at = self._clock()
        for (tenant_id, chatbot_id), group in group_records(records).items():
            rollup = build_rollup(tenant_id, chatbot_id, period_type, start, group)
            try:
                self.repository.upsert_rollup(rollup, updated_at)
                processed += 1
            except sqlite3.Error:
                errors += 1
                logger.error(
                    "Failed to save %s stat: tenant=%s chatbot=%s",
                    period_type.value, tenant_id, chatbot_id,
                    exc_info=True,
                )

        logger.info("%s aggregation completed: processed=%d errors=%d period_start=%s",
                    period_type.value.capitalize(), processed, errors, start.isoformat())
        return AggregationResult(
            period_type=period_type,
            period_start=start,
            processed=processed,
            errors=errors,
        )
