"""
Tests for configuration loading, validation and environment binding.
"""

import pytest
import yaml

from settlement.config import (
    ConfigError,
    ConfigManager,
    ConfigValidationError,
    config_file_schema,
    get_config,
)


class TestConfigValues:

    def test_defaults(self):
        config = get_config()
        assert config.strategy.max_value_staleness_seconds.get() == 3600
        assert config.transport.min_bridge_amount.get() == 1_000_000
        assert config.transport.home_domain_id.get() == 6
        assert config.transport.remote_domain_id.get() == 26
        assert config.keeper.retry_attempts.get() == 3
        assert config.observability.log_format.get() == "json"

    def test_env_overrides_runtime_value(self, fresh_config, monkeypatch):
        fresh_config.set("strategy.max_value_staleness_seconds", 600)
        monkeypatch.setenv("SETTLEMENT_MAX_STALENESS", "900")
        assert fresh_config.get("strategy.max_value_staleness_seconds") == 900

    def test_validator_rejects_bad_value(self, fresh_config):
        with pytest.raises(ConfigValidationError):
            fresh_config.set("strategy.max_value_staleness_seconds", 0)
        with pytest.raises(ConfigValidationError):
            fresh_config.set("transport.route_fee_bps", 10_000)

    def test_invalid_path(self, fresh_config):
        with pytest.raises(ConfigError):
            fresh_config.set("strategy.nope", 1)
        with pytest.raises(ConfigError):
            fresh_config.get("nope.value")

    def test_change_callback(self, fresh_config):
        seen = []
        fresh_config.config.transport.route_fee_bps.on_change(lambda old, new: seen.append((old, new)))
        fresh_config.set("transport.route_fee_bps", 12)
        assert seen == [(None, 12)]

    def test_validate_reports_env_errors(self, fresh_config, monkeypatch):
        monkeypatch.setenv("SETTLEMENT_ESTIMATED_APY_BPS", "20000")
        errors = fresh_config.validate()
        assert any(e.startswith("strategy.estimated_apy_bps") for e in errors)


class TestConfigFiles:

    def test_load_yaml(self, fresh_config, tmp_path):
        path = tmp_path / "settlement.yaml"
        path.write_text(
            "strategy:\n"
            "  max_value_staleness_seconds: 1800\n"
            "transport:\n"
            "  min_bridge_amount: 5000000\n"
        )
        fresh_config.load_from_file(path)
        assert get_config().strategy.max_value_staleness_seconds.get() == 1800
        assert get_config().transport.min_bridge_amount.get() == 5_000_000

    def test_missing_file(self, fresh_config, tmp_path):
        with pytest.raises(ConfigError):
            fresh_config.load_from_file(tmp_path / "absent.yaml")

    def test_schema_rejects_unknown_keys(self, fresh_config):
        with pytest.raises(ConfigValidationError, match="strategy"):
            fresh_config.load_from_dict({"strategy": {"max_staleness": 10}})

    def test_schema_rejects_wrong_types(self, fresh_config):
        with pytest.raises(ConfigValidationError):
            fresh_config.load_from_dict({"transport": {"min_bridge_amount": "lots"}})
        assert get_config().transport.min_bridge_amount.get() == 1_000_000

    def test_rejected_mapping_applies_nothing(self, fresh_config):
        with pytest.raises(ConfigValidationError, match="strategy.estimated_apy_bps"):
            fresh_config.load_from_dict({
                "strategy": {"max_value_staleness_seconds": 10, "estimated_apy_bps": 20_000},
            })
        assert get_config().strategy.max_value_staleness_seconds.get() == 3600
        assert get_config().strategy.estimated_apy_bps.get() == 450

    def test_reload_notifies_watchers(self, fresh_config, tmp_path):
        path = tmp_path / "settlement.yaml"
        path.write_text("keeper:\n  retry_attempts: 4\n")
        fresh_config.load_from_file(path)
        path.write_text("keeper:\n  retry_attempts: 6\n")

        seen = []
        fresh_config.watch(lambda cfg: seen.append(cfg.keeper.retry_attempts.get()))
        fresh_config.reload()
        assert seen == [6]

    def test_yaml_round_trip_matches_schema(self, fresh_config):
        data = yaml.safe_load(fresh_config.config.to_yaml())
        fresh_config.load_from_dict(data)
        assert set(config_file_schema()["properties"]) == set(data)


def test_singleton():
    assert ConfigManager() is ConfigManager()
