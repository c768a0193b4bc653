"""
Unit tests for day-over-day cost anomaly detection.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from usage_meter.core.anomaly import CostAnomaly, detect_anomalies
from usage_meter.storage.models import CostBreakdown, FeatureType, UsageRecord
from usage_meter.storage.repository import UsageRepository, initialize_schema

NOW = datetime(2024, 6, 10, 15, 0, 0)
TODAY = datetime(2024, 6, 10)
YESTERDAY = datetime(2024, 6, 9)


def _spend(repository, tenant_id, timestamp, cost):
    repository.insert_usage_record(UsageRecord(
        timestamp=timestamp,
        tenant_id=tenant_id,
        model_provider="openai",
        model_id="gpt-4o-mini",
        feature_type=FeatureType.CHAT,
        input_tokens=100,
        output_tokens=0,
        total_tokens=100,
        cost=CostBreakdown(input_cost=cost, output_cost=0.0, total_cost=cost),
    ))


@pytest.fixture
def repository():
    with tempfile.TemporaryDirectory() as temp_dir:
        db_path = os.path.join(temp_dir, "test.db")
        initialize_schema(db_path)
        yield UsageRepository(db_path)


def _detect(repository, multiplier=2.0):
    return detect_anomalies(repository, multiplier, clock=lambda: NOW)


class TestDetectAnomalies:
    """Test anomaly flagging rules."""

    def test_zero_yesterday_never_flagged(self, repository):
        _spend(repository, "fresh", TODAY + timedelta(hours=9), 50.0)
        assert _detect(repository) == []

    def test_sorted_by_ratio(self, repository):
        _spend(repository, "steady", YESTERDAY + timedelta(hours=9), 10.0)
        _spend(repository, "steady", TODAY + timedelta(hours=9), 21.0)
        _spend(repository, "spiky", YESTERDAY + timedelta(hours=9), 10.0)
        _spend(repository, "spiky", TODAY + timedelta(hours=9), 25.0)
        _spend(repository, "calm", YESTERDAY + timedelta(hours=9), 10.0)
        _spend(repository, "calm", TODAY + timedelta(hours=9), 12.0)

        anomalies = _detect(repository)
        assert [a.tenant_id for a in anomalies] == ["spiky", "steady"]
        assert anomalies[0] == CostAnomaly(
            tenant_id="spiky",
            today_cost=25.0,
            yesterday_cost=10.0,
            increase_ratio=2.5,
        )
        assert anomalies[1].increase_ratio == pytest.approx(2.1)

    def test_ratio_equal_to_multiplier_is_flagged(self, repository):
        _spend(repository, "acme", YESTERDAY + timedelta(hours=9), 10.0)
        _spend(repository, "acme", TODAY + timedelta(hours=9), 20.0)
        assert len(_detect(repository)) == 1

    def test_yesterday_cut_at_same_time_of_day(self, repository):
        # Yesterday evening is after the comparison window (15:00)
        _spend(repository, "acme", YESTERDAY + timedelta(hours=9), 10.0)
        _spend(repository, "acme", YESTERDAY + timedelta(hours=20), 100.0)
        _spend(repository, "acme", TODAY + timedelta(hours=9), 30.0)

        anomalies = _detect(repository)
        assert len(anomalies) == 1
        assert anomalies[0].yesterday_cost == 10.0
        assert anomalies[0].increase_ratio == pytest.approx(3.0)

    def test_custom_multiplier(self, repository):
        _spend(repository, "acme", YESTERDAY + timedelta(hours=9), 10.0)
        _spend(repository, "acme", TODAY + timedelta(hours=9), 25.0)
        assert _detect(repository, multiplier=3.0) == []

    def test_invalid_multiplier(self, repository):
        with pytest.raises(ValueError, match="threshold_multiplier must be > 0"):
            _detect(repository, multiplier=0)

    def test_store_failure_returns_empty(self, repository):
        with patch.object(
            UsageRepository, "cost_by_tenant", side_effect=sqlite3.OperationalError("locked")
        ):
            assert _detect(repository) == []
