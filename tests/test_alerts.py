"""
Unit tests for response-time alert detection.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from usage_meter.core.alerts import AlertSeverity, AlertType, ResponseTimeAlertChecker
from usage_meter.core.thresholds import ThresholdResolver
from usage_meter.storage.latency_repository import LatencyRepository, ThresholdRepository
from usage_meter.storage.models import LatencyRecord
from usage_meter.storage.repository import initialize_schema, upsert_chatbot, upsert_tenant

NOW = datetime(2024, 6, 10, 12, 0, 0)


def _records(count, total_ms, minutes_ago=10, tenant_id="acme", chatbot_id="acme-support",
             cache_hit=False):
    return [
        LatencyRecord(
            timestamp=NOW - timedelta(minutes=minutes_ago, seconds=i),
            tenant_id=tenant_id,
            chatbot_id=chatbot_id,
            channel="web",
            total_duration_ms=total_ms,
            cache_hit=cache_hit,
        )
        for i in range(count)
    ]


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


@pytest.fixture
def repository(db_path):
    return LatencyRepository(db_path)


@pytest.fixture
def resolver(db_path):
    return ThresholdResolver(ThresholdRepository(db_path))


@pytest.fixture
def checker(repository, resolver):
    return ResponseTimeAlertChecker(repository, resolver, clock=lambda: NOW)


class TestP95Thresholds:
    """Test last-hour p95 breach detection."""

    def test_breach_raises_critical_alert(self, repository, checker):
        upsert_tenant("acme", "Acme Corp", repository.db_path)
        upsert_chatbot("acme-support", "acme", "Support Bot", repository.db_path)
        repository.insert_latency_records(_records(12, 4000.0))

        alerts = checker.check_p95_thresholds()
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.alert_type == AlertType.RESPONSE_TIME_P95
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.tenant_name == "Acme Corp"
        assert alert.chatbot_name == "Support Bot"
        assert alert.threshold == 3000.0
        assert alert.actual_value == 4000.0
        assert alert.cooldown_minutes == 60
        assert "Support Bot" in alert.message

    def test_below_threshold(self, repository, checker):
        repository.insert_latency_records(_records(12, 2000.0))
        assert checker.check_p95_thresholds() == []

    def test_too_few_requests(self, repository, checker):
        repository.insert_latency_records(_records(9, 9000.0))
        assert checker.check_p95_thresholds() == []

    def test_cache_hits_do_not_count(self, repository, checker):
        repository.insert_latency_records(
            _records(9, 9000.0) + _records(5, 9000.0, cache_hit=True)
        )
        assert checker.check_p95_thresholds() == []

    def test_older_records_ignored(self, repository, checker):
        repository.insert_latency_records(_records(12, 9000.0, minutes_ago=61))
        assert checker.check_p95_thresholds() == []

    def test_scope_threshold_applies(self, repository, resolver, checker):
        resolver.save_threshold({"p95_threshold_ms": 1000.0},
                                tenant_id="acme", chatbot_id="acme-support")
        repository.insert_latency_records(
            _records(12, 2000.0) + _records(12, 2000.0, chatbot_id="acme-sales")
        )

        alerts = checker.check_p95_thresholds()
        assert [a.chatbot_id for a in alerts] == ["acme-support"]
        assert alerts[0].chatbot_name is None
        assert alerts[0].tenant_name == "acme"

    def test_disabled_scope_is_skipped(self, repository, resolver, checker):
        resolver.save_threshold({"alert_enabled": False}, tenant_id="acme")
        repository.insert_latency_records(_records(12, 9000.0))
        assert checker.check_p95_thresholds() == []

    def test_store_failure_returns_empty(self, checker):
        with patch.object(
            LatencyRepository,
            "fetch_labelled_records",
            side_effect=sqlite3.OperationalError("no such table"),
        ):
            assert checker.check_p95_thresholds() == []


class TestResponseTimeSpike:
    """Test current-hour versus previous-hour average spikes."""

    def test_spike_raises_warning(self, repository, checker):
        repository.insert_latency_records(
            _records(5, 1000.0, minutes_ago=90) + _records(5, 2000.0, minutes_ago=10)
        )

        alerts = checker.check_response_time_spike()
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.alert_type == AlertType.RESPONSE_TIME_SPIKE
        assert alert.severity == AlertSeverity.WARNING
        assert alert.actual_value == pytest.approx(2.0)
        assert alert.threshold == 1.5
        assert alert.previous_avg_ms == 1000.0
        assert alert.current_avg_ms == 2000.0

    def test_ratio_below_threshold(self, repository, checker):
        repository.insert_latency_records(
            _records(5, 1000.0, minutes_ago=90) + _records(5, 1400.0, minutes_ago=10)
        )
        assert checker.check_response_time_spike() == []

    def test_small_baseline_ignored(self, repository, checker):
        repository.insert_latency_records(
            _records(5, 50.0, minutes_ago=90) + _records(5, 500.0, minutes_ago=10)
        )
        assert checker.check_response_time_spike() == []

    def test_too_few_requests_in_either_hour(self, repository, checker):
        repository.insert_latency_records(
            _records(4, 1000.0, minutes_ago=90) + _records(10, 5000.0, minutes_ago=10)
        )
        assert checker.check_response_time_spike() == []

    def test_custom_spike_threshold(self, repository, resolver, checker):
        resolver.save_threshold({"avg_spike_threshold": 3.0}, tenant_id="acme")
        repository.insert_latency_records(
            _records(5, 1000.0, minutes_ago=90) + _records(5, 2000.0, minutes_ago=10)
        )
        assert checker.check_response_time_spike() == []


class TestCheckAll:
    def test_combines_both_checks(self, repository, checker):
        repository.insert_latency_records(
            _records(5, 1000.0, minutes_ago=90) + _records(12, 4000.0, minutes_ago=10)
        )

        alerts = checker.check_all_response_time_alerts()
        assert [a.alert_type for a in alerts] == [
            AlertType.RESPONSE_TIME_P95,
            AlertType.RESPONSE_TIME_SPIKE,
        ]
        assert alerts[0].to_dict()["alert_type"] == "response_time_p95"
