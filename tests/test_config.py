"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for meter configs.
"""

import os
import tempfile

import pytest
import yaml

from usage_meter.config.loader import (
    CONFIG_ENV_VAR,
    AlertDefaults,
    BudgetDefaults,
    MeterConfig,
    load_meter_config,
    resolve_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a full configuration loads correctly."""
        config_path = self._write_config({
            "database": {"path": "/var/lib/meter/usage.db"},
            "retention": {"days": 14},
            "anomaly": {"threshold_multiplier": 3},
            "pricing": {"cache_ttl_seconds": 60},
            "alerts": {
                "p95_threshold_ms": 2500,
                "avg_spike_threshold": 2.0,
                "alert_enabled": False,
                "alert_cooldown_minutes": 15,
            },
            "budget": {"monthly_usd": 250, "alert_threshold_percent": 75},
        })
        config = load_meter_config(config_path)

        assert config.database_path == "/var/lib/meter/usage.db"
        assert config.retention_days == 14
        assert config.anomaly_threshold_multiplier == 3.0
        assert config.price_cache_ttl_seconds == 60.0
        assert config.alerts == AlertDefaults(
            p95_threshold_ms=2500.0,
            avg_spike_threshold=2.0,
            alert_enabled=False,
            alert_cooldown_minutes=15,
        )
        assert config.budget == BudgetDefaults(monthly_usd=250.0, alert_threshold_percent=75.0)

    def test_partial_config_uses_defaults(self):
        config_path = self._write_config({"retention": {"days": 7}})
        config = load_meter_config(config_path)

        assert config.retention_days == 7
        assert config.anomaly_threshold_multiplier == 2.0
        assert config.price_cache_ttl_seconds == 300.0
        assert config.alerts == AlertDefaults()
        assert config.budget == BudgetDefaults()

    def test_empty_file_gives_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()
        assert load_meter_config(config_path) == MeterConfig()

    def test_missing_file_raises_error(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError, match="Meter config file not found"):
            load_meter_config("nonexistent.yaml")

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises error."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w') as f:
            f.write("invalid: yaml: content: [")

        with pytest.raises(yaml.YAMLError):
            load_meter_config(config_path)

    def test_non_mapping_root_raises_error(self):
        config_path = self._write_config(["a", "b"])
        with pytest.raises(ValueError, match="Configuration root must be a dictionary"):
            load_meter_config(config_path)

    def test_unknown_section_raises_error(self):
        config_path = self._write_config({"billing": {"daily": 100}})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_meter_config(config_path)

    def test_unknown_key_in_section_raises_error(self):
        config_path = self._write_config({"alerts": {"p99_threshold_ms": 100}})
        with pytest.raises(ValueError, match="Unknown keys in alerts"):
            load_meter_config(config_path)

    def test_unknown_budget_key_raises_error(self):
        config_path = self._write_config({"budget": {"daily": 100}})
        with pytest.raises(ValueError, match="Unknown keys in budget"):
            load_meter_config(config_path)

    def test_section_must_be_mapping(self):
        config_path = self._write_config({"retention": 30})
        with pytest.raises(ValueError, match="'retention' must be a dictionary"):
            load_meter_config(config_path)

    @pytest.mark.parametrize("config_data,message", [
        ({"retention": {"days": "30"}}, "'days' in retention must be an integer"),
        ({"retention": {"days": 1.5}}, "'days' in retention must be an integer"),
        ({"anomaly": {"threshold_multiplier": True}}, "must be a number"),
        ({"alerts": {"alert_enabled": "yes"}}, "must be true or false"),
        ({"database": {"path": 42}}, "'database.path' must be a string"),
    ])
    def test_wrong_types_raise_error(self, config_data, message):
        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match=message):
            load_meter_config(config_path)

    @pytest.mark.parametrize("config_data,message", [
        ({"retention": {"days": 0}}, "retention days must be > 0"),
        ({"anomaly": {"threshold_multiplier": 0}}, "anomaly threshold multiplier must be > 0"),
        ({"pricing": {"cache_ttl_seconds": -1}}, "price cache ttl cannot be negative"),
        ({"alerts": {"avg_spike_threshold": 1.0}}, "avg_spike_threshold"),
        ({"budget": {"monthly_usd": 0}}, "monthly budget must be > 0"),
        ({"budget": {"alert_threshold_percent": 150}}, "between 0 and 100"),
    ])
    def test_out_of_range_values_raise_error(self, config_data, message):
        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match=message):
            load_meter_config(config_path)


class TestResolveConfig:
    def test_defaults_without_path(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        assert resolve_config() == MeterConfig()

    def test_environment_variable(self, monkeypatch, tmp_path):
        config_path = tmp_path / "meter.yaml"
        config_path.write_text("retention:\n  days: 5\n", encoding="utf-8")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(config_path))

        assert resolve_config().retention_days == 5

    def test_explicit_path_wins(self, monkeypatch, tmp_path):
        env_path = tmp_path / "env.yaml"
        env_path.write_text("retention:\n  days: 5\n", encoding="utf-8")
        explicit_path = tmp_path / "explicit.yaml"
        explicit_path.write_text("retention:\n  days: 9\n", encoding="utf-8")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(env_path))

        assert resolve_config(str(explicit_path)).retention_days == 9
