"""
Smoke test that every public module imports cleanly.
"""
import importlib

import pytest

MODULES = [
    "usage_meter.cli.main",
    "usage_meter.config.loader",
    "usage_meter.core",
    "usage_meter.core.aggregator",
    "usage_meter.core.alerts",
    "usage_meter.core.analytics",
    "usage_meter.core.anomaly",
    "usage_meter.core.budget",
    "usage_meter.core.errors",
    "usage_meter.core.latency",
    "usage_meter.core.pricing",
    "usage_meter.core.recorder",
    "usage_meter.core.stats",
    "usage_meter.core.thresholds",
    "usage_meter.core.token_counter",
    "usage_meter.demo.seed_demo_data",
    "usage_meter.storage.db",
    "usage_meter.storage.latency_repository",
    "usage_meter.storage.models",
    "usage_meter.storage.repository",
]


@pytest.mark.parametrize("name", MODULES)
def test_module_imports(name):
    assert importlib.import_module(name) is not None
