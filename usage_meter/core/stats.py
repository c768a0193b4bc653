"""
Latency statistics primitives.

Percentiles are continuous: linear interpolation between order statistics
at rank ``p * (n - 1)``, the definition of SQL ``PERCENTILE_CONT``. Rollups,
realtime queries and alert checks all go through these helpers so that
today's p95 and yesterday's p95 are computed the same way.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from usage_meter.storage.models import LatencyRecord, Serializable


def compute_percentile(values: Sequence[float], percentile: float) -> float:
    """Compute a continuous percentile using linear interpolation.

    Uses the same method as numpy.percentile with method='linear'
    for deterministic and mathematically correct results.

    Args:
        values: List of numeric values
        percentile: Percentile to compute (0-100)

    Returns:
        Exact percentile value

    Raises:
        ValueError: If values is empty or percentile is out of range
    """
    if not values:
        raise ValueError("Values list cannot be empty")

    if percentile < 0 or percentile > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    n = len(sorted_values)

    # Convert percentile to position (0-indexed)
    position = (percentile / 100.0) * (n - 1)

    lower_index = int(position)
    upper_index = min(lower_index + 1, n - 1)
    fraction = position - lower_index

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]

    return lower_value + fraction * (upper_value - lower_value)


def mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def percentile_or_none(values: Sequence[float], percentile: float) -> Optional[float]:
    """Like ``compute_percentile`` but None for an empty sample (SQL semantics)."""
    if not values:
        return None
    return compute_percentile(values, percentile)


@dataclass(frozen=True)
class StageSummary(Serializable):
    """Average and p95 of one pipeline stage."""
    avg_ms: Optional[float]
    p95_ms: Optional[float]
    sample_count: int


@dataclass(frozen=True)
class LatencySummary(Serializable):
    """Aggregate of a group of latency records.

    Totals are None only for an empty group. Stage summaries ignore
    records where the stage was not measured, like SQL aggregates
    ignore NULL.
    """
    request_count: int
    cache_hit_count: int
    total_avg_ms: Optional[float]
    total_p50_ms: Optional[float]
    total_p95_ms: Optional[float]
    total_p99_ms: Optional[float]
    total_min_ms: Optional[float]
    total_max_ms: Optional[float]
    llm: StageSummary
    search: StageSummary
    rewrite: StageSummary

    @property
    def cache_hit_rate(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.cache_hit_count / self.request_count


def summarize_stage(values: Iterable[Optional[float]]) -> StageSummary:
    measured: List[float] = [v for v in values if v is not None]
    return StageSummary(
        avg_ms=mean(measured),
        p95_ms=percentile_or_none(measured, 95),
        sample_count=len(measured),
    )


def summarize_latency(records: Sequence[LatencyRecord]) -> LatencySummary:
    """Compute count, cache hits and duration statistics for a group.

    Args:
        records: Latency records of one group (any order)

    Returns:
        LatencySummary for the group
    """
    totals = [record.total_duration_ms for record in records]
    return LatencySummary(
        request_count=len(records),
        cache_hit_count=sum(1 for record in records if record.cache_hit),
        total_avg_ms=mean(totals),
        total_p50_ms=percentile_or_none(totals, 50),
        total_p95_ms=percentile_or_none(totals, 95),
        total_p99_ms=percentile_or_none(totals, 99),
        total_min_ms=min(totals) if totals else None,
        total_max_ms=max(totals) if totals else None,
        llm=summarize_stage(record.llm_duration_ms for record in records),
        search=summarize_stage(record.search_duration_ms for record in records),
        rewrite=summarize_stage(record.rewrite_duration_ms for record in records),
    )


def percent_change(previous: float, current: float) -> float:
    """Percentage change from ``previous`` to ``current``; 0 when previous is 0."""
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * 100.0
