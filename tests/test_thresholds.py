"""
Unit tests for alert threshold resolution.
"""

import os
import sqlite3
import tempfile
from datetime import datetime
from unittest.mock import patch

import pytest

from usage_meter.config.loader import AlertDefaults
from usage_meter.core.thresholds import ThresholdConfig, ThresholdResolver
from usage_meter.storage.latency_repository import ThresholdRepository
from usage_meter.storage.repository import initialize_schema


@pytest.fixture
def resolver():
    with tempfile.TemporaryDirectory() as temp_dir:
        db_path = os.path.join(temp_dir, "test.db")
        initialize_schema(db_path)
        yield ThresholdResolver(
            ThresholdRepository(db_path),
            clock=lambda: datetime(2024, 6, 10, 12, 0),
        )


class TestThresholdCascade:
    """Test most-specific-first resolution."""

    def test_defaults_without_any_rows(self, resolver):
        config = resolver.get_threshold()
        assert config == ThresholdConfig(
            p95_threshold_ms=3000.0,
            avg_spike_threshold=1.5,
            alert_enabled=True,
            alert_cooldown_minutes=60,
        )
        assert resolver.get_threshold("acme", "acme-support") == config

    def test_configured_defaults(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            resolver = ThresholdResolver(
                ThresholdRepository(db_path),
                AlertDefaults(p95_threshold_ms=5000.0, alert_cooldown_minutes=15),
            )
            config = resolver.get_threshold("acme")
            assert config.p95_threshold_ms == 5000.0
            assert config.alert_cooldown_minutes == 15

    def test_global_row(self, resolver):
        resolver.save_threshold({"p95_threshold_ms": 4000.0})

        assert resolver.get_threshold().p95_threshold_ms == 4000.0
        assert resolver.get_threshold("acme").p95_threshold_ms == 4000.0
        assert resolver.get_threshold("acme", "acme-support").p95_threshold_ms == 4000.0

    def test_tenant_row_beats_global(self, resolver):
        resolver.save_threshold({"p95_threshold_ms": 4000.0})
        resolver.save_threshold({"p95_threshold_ms": 2000.0}, tenant_id="acme")

        assert resolver.get_threshold("acme").p95_threshold_ms == 2000.0
        assert resolver.get_threshold("acme", "acme-support").p95_threshold_ms == 2000.0
        assert resolver.get_threshold("globex").p95_threshold_ms == 4000.0

    def test_chatbot_row_beats_tenant(self, resolver):
        resolver.save_threshold({"p95_threshold_ms": 2000.0}, tenant_id="acme")
        resolver.save_threshold(
            {"p95_threshold_ms": 1000.0}, tenant_id="acme", chatbot_id="acme-support"
        )

        assert resolver.get_threshold("acme", "acme-support").p95_threshold_ms == 1000.0
        assert resolver.get_threshold("acme", "acme-sales").p95_threshold_ms == 2000.0

    def test_chatbot_without_tenant_is_not_a_scope(self, resolver):
        resolver.save_threshold(
            {"p95_threshold_ms": 1000.0}, tenant_id="acme", chatbot_id="acme-support"
        )
        assert resolver.get_threshold(None, "acme-support").p95_threshold_ms == 3000.0

    def test_unset_fields_fall_back_to_defaults(self, resolver):
        resolver.save_threshold({"alert_enabled": False}, tenant_id="acme")

        config = resolver.get_threshold("acme")
        assert config.alert_enabled is False
        assert config.p95_threshold_ms == 3000.0
        assert config.avg_spike_threshold == 1.5

    def test_store_failure_resolves_to_defaults(self, resolver):
        with patch.object(
            ThresholdRepository,
            "find_threshold",
            side_effect=sqlite3.OperationalError("no such table"),
        ):
            config = resolver.get_threshold("acme")
        assert config == resolver.defaults


class TestSaveThreshold:
    def test_partial_update_keeps_other_fields(self, resolver):
        resolver.save_threshold(
            {"p95_threshold_ms": 2500.0, "alert_cooldown_minutes": 30}, tenant_id="acme"
        )
        resolver.save_threshold({"avg_spike_threshold": 2.0}, tenant_id="acme")

        config = resolver.get_threshold("acme")
        assert config.p95_threshold_ms == 2500.0
        assert config.alert_cooldown_minutes == 30
        assert config.avg_spike_threshold == 2.0

    def test_accepts_threshold_config(self, resolver):
        wanted = ThresholdConfig(
            p95_threshold_ms=1500.0,
            avg_spike_threshold=3.0,
            alert_enabled=False,
            alert_cooldown_minutes=5,
        )
        resolver.save_threshold(wanted, tenant_id="acme", chatbot_id="acme-support")
        assert resolver.get_threshold("acme", "acme-support") == wanted

    def test_unknown_field_rejected(self, resolver):
        with pytest.raises(ValueError, match="Unknown threshold fields"):
            resolver.save_threshold({"p99_threshold_ms": 100.0})

    @pytest.mark.parametrize("values,message", [
        ({"p95_threshold_ms": 0}, "p95_threshold_ms must be > 0"),
        ({"avg_spike_threshold": 1.0}, "avg_spike_threshold must be > 1"),
        ({"alert_cooldown_minutes": -1}, "alert_cooldown_minutes cannot be negative"),
    ])
    def test_invalid_values_rejected(self, resolver, values, message):
        with pytest.raises(ValueError, match=message):
            resolver.save_threshold(values, tenant_id="acme")

    def test_store_failure_propagates(self, resolver):
        with patch.object(
            ThresholdRepository,
            "upsert_threshold",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            with pytest.raises(sqlite3.OperationalError):
                resolver.save_threshold({"p95_threshold_ms": 100.0})
