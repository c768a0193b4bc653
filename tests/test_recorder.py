"""
Unit tests for usage recording.

Tests cost attribution, atomic budget accrual and best-effort failure
handling.
"""

import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from usage_meter.core.pricing import PriceCatalog
from usage_meter.core.recorder import UsageRecorder
from usage_meter.storage.latency_repository import LatencyRepository
from usage_meter.storage.models import FeatureType, PriceCatalogEntry
from usage_meter.storage.repository import (
    UsageRepository,
    initialize_schema,
    upsert_model_price,
)

NOW = datetime(2024, 6, 10, 12, 0, 0)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        upsert_model_price(
            PriceCatalogEntry("openai", "gpt-4o-mini", "GPT-4o Mini", 0.15, 0.60), NOW, path
        )
        upsert_model_price(
            PriceCatalogEntry("openai", "text-embedding-3-small", "Embedding", 0.02, 0.02,
                              is_embedding=True),
            NOW,
            path,
        )
        yield path


@pytest.fixture
def recorder(db_path):
    return UsageRecorder(
        UsageRepository(db_path),
        PriceCatalog.from_database(db_path),
        clock=lambda: NOW,
    )


class TestRecordUsage:
    """Test recording a single billable call."""

    def test_record_is_stored_with_cost(self, recorder):
        recorder.record_usage(
            tenant_id="acme",
            provider="openai",
            model_id="gpt-4o-mini",
            feature_type=FeatureType.CHAT,
            input_tokens=1_000_000,
            output_tokens=1_000_000,
            chatbot_id="acme-support",
            conversation_id="conv-1",
        )

        records = recorder.repository.get_recent_records()
        assert len(records) == 1
        record = records[0]
        assert record.timestamp == NOW
        assert record.tenant_id == "acme"
        assert record.chatbot_id == "acme-support"
        assert record.conversation_id == "conv-1"
        assert record.feature_type == FeatureType.CHAT
        assert record.total_tokens == 2_000_000
        assert record.cost.input_cost == pytest.approx(0.15)
        assert record.cost.output_cost == pytest.approx(0.60)
        assert record.cost.total_cost == pytest.approx(0.75)

    def test_budget_accrues_across_calls(self, recorder):
        for _ in range(3):
            recorder.record_usage("acme", "openai", "gpt-4o-mini", "chat", 1_000_000, 0)
        recorder.record_usage("globex", "openai", "gpt-4o-mini", "chat", 0, 1_000_000)

        assert recorder.get_current_month_usage("acme") == pytest.approx(0.45)
        assert recorder.get_current_month_usage("globex") == pytest.approx(0.60)

    def test_unseen_tenant_has_zero_usage(self, recorder):
        assert recorder.get_current_month_usage("nobody") == 0.0

    def test_missing_price_records_zero_cost(self, recorder, caplog):
        recorder.record_usage("acme", "anthropic", "unknown-model", "chat", 500, 100)

        records = recorder.repository.get_recent_records()
        assert len(records) == 1
        assert records[0].cost.total_cost == 0.0
        assert records[0].total_tokens == 600
        assert "Model price not found" in caplog.text

    def test_try_record_usage_returns_record(self, recorder):
        result = recorder.try_record_usage("acme", "openai", "gpt-4o-mini", "rerank", 10, 5)
        assert result.ok
        assert result.value.feature_type == FeatureType.RERANK

    def test_invalid_feature_is_a_failure_result(self, recorder):
        result = recorder.try_record_usage("acme", "openai", "gpt-4o-mini", "translation", 10, 5)
        assert not result.ok
        assert result.error.context["tenant_id"] == "acme"
        assert recorder.repository.count_records() == 0

    def test_negative_tokens_never_raise(self, recorder):
        recorder.record_usage("acme", "openai", "gpt-4o-mini", "chat", -10, 5)
        assert recorder.repository.count_records() == 0

    def test_missing_token_count_never_raises(self, recorder, caplog):
        recorder.record_usage("acme", "openai", "gpt-4o-mini", "chat", None, 10)
        assert recorder.repository.count_records() == 0
        assert "Failed to track token usage" in caplog.text

    def test_unexpected_error_is_swallowed(self, recorder, caplog):
        with patch.object(UsageRecorder, "try_record_usage", side_effect=RuntimeError("boom")):
            recorder.record_usage("acme", "openai", "gpt-4o-mini", "chat", 100, 50)
        assert "Failed to track token usage" in caplog.text

    def test_storage_failure_is_swallowed(self, recorder, caplog):
        with patch.object(
            UsageRepository,
            "insert_usage_record",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            recorder.record_usage("acme", "openai", "gpt-4o-mini", "chat", 100, 50)

        assert "Failed to track token usage" in caplog.text
        assert recorder.get_current_month_usage("acme") == 0.0

    def test_catalog_failure_is_swallowed(self, db_path, caplog):
        def loader():
            raise sqlite3.OperationalError("no such table: llm_model_price")

        recorder = UsageRecorder(UsageRepository(db_path), PriceCatalog(loader))
        recorder.record_usage("acme", "openai", "gpt-4o-mini", "chat", 100, 50)

        assert "Price catalog unavailable" in caplog.text
        assert recorder.repository.count_records() == 0

    def test_batch_usage_priced_as_input(self, recorder):
        recorder.record_batch_usage(
            "acme", "openai", "text-embedding-3-small", FeatureType.EMBEDDING, 500_000
        )

        record = recorder.repository.get_recent_records()[0]
        assert record.input_tokens == 500_000
        assert record.output_tokens == 0
        assert record.cost.total_cost == pytest.approx(0.01)


class TestConcurrentAccrual:
    """Budget increments must never be lost under concurrent writers."""

    def test_concurrent_calls_sum_exactly(self, db_path):
        recorder = UsageRecorder(UsageRepository(db_path), PriceCatalog.from_database(db_path))
        threads_count = 8
        calls_per_thread = 10

        def worker():
            for _ in range(calls_per_thread):
                recorder.record_usage("acme", "openai", "gpt-4o-mini", "chat", 1_000_000, 0)

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        total_calls = threads_count * calls_per_thread
        assert recorder.repository.count_records("acme") == total_calls
        assert recorder.get_current_month_usage("acme") == pytest.approx(0.15 * total_calls)


class TestMonthlyReset:
    def test_reset_zeroes_every_tenant(self, recorder):
        recorder.record_usage("acme", "openai", "gpt-4o-mini", "chat", 1_000_000, 0)
        recorder.record_usage("globex", "openai", "gpt-4o-mini", "chat", 1_000_000, 0)

        assert recorder.reset_monthly_usage() == 2
        assert recorder.get_current_month_usage("acme") == 0.0
        assert recorder.get_current_month_usage("globex") == 0.0
        # Ledger is append-only
        assert recorder.repository.count_records() == 2

    def test_reset_failure_propagates(self, recorder):
        with patch.object(
            UsageRepository,
            "reset_monthly_usage",
            side_effect=sqlite3.OperationalError("disk I/O error"),
        ):
            with pytest.raises(sqlite3.OperationalError):
                recorder.reset_monthly_usage()


class TestRecordLatency:
    def test_latency_record_is_stored(self, recorder, db_path):
        recorder.record_latency(
            tenant_id="acme",
            channel="web",
            total_duration_ms=1500.0,
            chatbot_id="acme-support",
            llm_duration_ms=1100.0,
            search_duration_ms=200.0,
            chunks_used=4,
        )

        records = LatencyRepository(db_path).fetch_latency_records(datetime(2024, 6, 10))
        assert len(records) == 1
        assert records[0].total_duration_ms == 1500.0
        assert records[0].llm_duration_ms == 1100.0
        assert records[0].rewrite_duration_ms is None
        assert records[0].chunks_used == 4

    def test_latency_failure_is_swallowed(self, recorder, caplog):
        with patch.object(
            LatencyRepository,
            "insert_latency_records",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            recorder.record_latency("acme", "web", 900.0)

        assert "Failed to log response time" in caplog.text

    def test_invalid_latency_never_raises(self, recorder, caplog):
        recorder.record_latency("acme", "web", -1.0)
        assert "Invalid latency record" in caplog.text

    def test_missing_duration_never_raises(self, recorder, caplog):
        recorder.record_latency("acme", "web", None)
        assert "Invalid latency record" in caplog.text

    def test_aware_clock_never_raises(self, db_path, caplog):
        recorder = UsageRecorder(
            UsageRepository(db_path),
            PriceCatalog.from_database(db_path),
            clock=lambda: NOW.replace(tzinfo=timezone.utc),
        )
        recorder.record_latency("acme", "web", 900.0)
        assert "Failed to log response time" in caplog.text
