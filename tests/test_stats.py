"""
Unit tests for latency statistics.

Tests continuous percentile computation and group summaries.
"""

from datetime import datetime

import pytest

from usage_meter.core.stats import (
    compute_percentile,
    percent_change,
    percentile_or_none,
    summarize_latency,
)
from usage_meter.storage.models import LatencyRecord


def _record(total_ms, cache_hit=False, llm_ms=None, search_ms=None):
    return LatencyRecord(
        timestamp=datetime(2024, 6, 10, 12, 0),
        tenant_id="acme",
        channel="web",
        total_duration_ms=total_ms,
        cache_hit=cache_hit,
        llm_duration_ms=llm_ms,
        search_duration_ms=search_ms,
    )


class TestContinuousPercentile:
    """Test continuous percentile computation."""

    def test_median_even_count(self):
        """Test median computation with even number of values."""
        assert compute_percentile([1.0, 2.0, 3.0, 4.0], 50) == 2.5

    def test_median_odd_count(self):
        assert compute_percentile([3.0, 1.0, 2.0], 50) == 2.0

    def test_p90_exact(self):
        """Position 8.1: 9.0 + 0.1 * (10.0 - 9.0)."""
        values = [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0]
        assert compute_percentile(values, 90) == pytest.approx(9.1)

    def test_p95_interpolation(self):
        """Position 3.8 over [100, 200, 300, 400, 1000]."""
        values = [400.0, 100.0, 1000.0, 300.0, 200.0]
        assert compute_percentile(values, 95) == pytest.approx(880.0)

    def test_percentile_bounds(self):
        values = [5.0, 10.0, 15.0]
        assert compute_percentile(values, 0) == 5.0
        assert compute_percentile(values, 100) == 15.0

    def test_single_value(self):
        assert compute_percentile([42.0], 99) == 42.0

    def test_empty_values_raises_error(self):
        with pytest.raises(ValueError, match="Values list cannot be empty"):
            compute_percentile([], 50)

    def test_out_of_range_percentile(self):
        with pytest.raises(ValueError, match="between 0 and 100"):
            compute_percentile([1.0], 101)

    def test_percentile_or_none_on_empty(self):
        assert percentile_or_none([], 95) is None


class TestSummarizeLatency:
    """Test group summaries used by rollups and realtime queries."""

    def test_empty_group(self):
        summary = summarize_latency([])
        assert summary.request_count == 0
        assert summary.total_avg_ms is None
        assert summary.total_p95_ms is None
        assert summary.cache_hit_rate == 0.0

    def test_totals_and_cache_hits(self):
        records = [
            _record(100.0),
            _record(200.0),
            _record(300.0, cache_hit=True),
            _record(400.0),
        ]
        summary = summarize_latency(records)
        assert summary.request_count == 4
        assert summary.cache_hit_count == 1
        assert summary.cache_hit_rate == 0.25
        assert summary.total_avg_ms == 250.0
        assert summary.total_p50_ms == 250.0
        assert summary.total_min_ms == 100.0
        assert summary.total_max_ms == 400.0

    def test_unmeasured_stages_are_ignored(self):
        records = [
            _record(1000.0, llm_ms=800.0),
            _record(1200.0, llm_ms=1000.0, search_ms=100.0),
            _record(50.0, cache_hit=True),
        ]
        summary = summarize_latency(records)
        assert summary.llm.sample_count == 2
        assert summary.llm.avg_ms == 900.0
        assert summary.search.avg_ms == 100.0
        assert summary.rewrite.avg_ms is None
        assert summary.rewrite.sample_count == 0


class TestPercentChange:
    def test_increase(self):
        assert percent_change(100.0, 150.0) == 50.0

    def test_decrease(self):
        assert percent_change(200.0, 100.0) == -50.0

    def test_zero_previous_is_zero_change(self):
        assert percent_change(0.0, 500.0) == 0.0
