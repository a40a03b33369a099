"""
Tests for Module 00 — Configuration.
Tests loading, validation and environment overrides.
"""

import copy
import json
from datetime import timedelta

import pytest

from aqhi.config import load_config, parse_config, reset_config_cache
from aqhi.errors import ConfigurationError


class TestShippedConfig:
    def test_defaults(self, engine_config):
        assert engine_config.window == timedelta(hours=3)
        assert engine_config.bucket == timedelta(hours=1)
        assert engine_config.source_priority == ("waqi", "google", "openweather")
        assert engine_config.top_source == "waqi"
        assert engine_config.coefficients.scale_c == pytest.approx(105.19)
        assert engine_config.coefficients.beta["no2"] == pytest.approx(0.0052)

    def test_bands_in_order(self, engine_config):
        assert [b.name for b in engine_config.bands] == ["low", "moderate", "high", "very_high"]
        assert all(b.advice for b in engine_config.bands)

    def test_locations_and_membership(self, engine_config):
        assert len(engine_config.locations) == 15
        assert engine_config.membership["BKK01"] == "phra-nakhon"
        assert engine_config.community_names["chatuchak"] == "Chatuchak"


class TestValidation:
    def test_missing_beta_fails_fast(self, config_data):
        data = copy.deepcopy(config_data)
        del data["coefficients"]["beta"]["o3"]
        with pytest.raises(ConfigurationError, match="o3"):
            parse_config(data, env={})

    def test_non_positive_scale_constant(self, config_data):
        data = copy.deepcopy(config_data)
        data["coefficients"]["scale_c"] = 0
        with pytest.raises(ConfigurationError):
            parse_config(data, env={})

    def test_bands_must_increase(self, config_data):
        data = copy.deepcopy(config_data)
        data["bands"][2]["lower"] = 3
        with pytest.raises(ConfigurationError, match="strictly increasing"):
            parse_config(data, env={})

    def test_quality_thresholds_ordered(self, config_data):
        data = copy.deepcopy(config_data)
        data["quality_thresholds"] = {"high": 1, "medium": 2, "low": 3}
        with pytest.raises(ConfigurationError):
            parse_config(data, env={})

    def test_window_shorter_than_bucket(self, config_data):
        data = copy.deepcopy(config_data)
        data["bucket_minutes"] = 240
        with pytest.raises(ConfigurationError, match="shorter than one bucket"):
            parse_config(data, env={})

    def test_duplicate_priority(self, config_data):
        data = copy.deepcopy(config_data)
        data["source_priority"] = ["waqi", "waqi"]
        with pytest.raises(ConfigurationError):
            parse_config(data, env={})

    def test_duplicate_location_ids(self, config_data):
        locations = [{"location_id": "A"}, {"location_id": "A"}]
        with pytest.raises(ConfigurationError, match="Duplicate"):
            parse_config(config_data, locations=locations, env={})


class TestEnvironmentOverrides:
    def test_env_overrides_file_values(self, config_data):
        cfg = parse_config(config_data, env={
            "AQHI_WINDOW_HOURS": "6",
            "AQHI_BATCH_TIMEOUT_SECONDS": "5",
            "AQHI_MAX_WORKERS": "2",
            "DATABASE_URL": "sqlite://",
        })
        assert cfg.window == timedelta(hours=6)
        assert cfg.batch_timeout_seconds == 5.0
        assert cfg.max_workers == 2
        assert cfg.database_url == "sqlite://"


class TestLoadConfig:
    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(str(tmp_path / "nope.json"))

    def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / "aqhi.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            load_config(str(path))

    def test_loads_sibling_files(self, tmp_path, config_data, monkeypatch):
        monkeypatch.delenv("AQHI_WINDOW_HOURS", raising=False)
        (tmp_path / "aqhi.json").write_text(json.dumps(config_data), encoding="utf-8")
        (tmp_path / "locations.json").write_text(
            json.dumps([{"location_id": "X1", "community_id": "c1"}]), encoding="utf-8"
        )
        cfg = load_config(str(tmp_path / "aqhi.json"))
        assert [loc.location_id for loc in cfg.locations] == ["X1"]
        assert cfg.communities == ()

    def test_default_config_is_cached(self, monkeypatch):
        monkeypatch.delenv("AQHI_CONFIG_PATH", raising=False)
        reset_config_cache()
        first = load_config()
        assert load_config() is first
        reset_config_cache()
        assert load_config() is not first
        reset_config_cache()


class TestInputDivisor:
    def test_shipped_gases_in_ppb(self, engine_config):
        assert engine_config.coefficients.input_divisor == {"o3": 1.962, "no2": 1.88}

    def test_optional(self, config_data):
        data = copy.deepcopy(config_data)
        del data["coefficients"]["input_divisor"]
        assert parse_config(data, env={}).coefficients.input_divisor == {}

    def test_must_be_positive(self, config_data):
        data = copy.deepcopy(config_data)
        data["coefficients"]["input_divisor"]["o3"] = 0
        with pytest.raises(ConfigurationError, match="positive"):
            parse_config(data, env={})

    def test_unknown_pollutant(self, config_data):
        data = copy.deepcopy(config_data)
        data["coefficients"]["input_divisor"]["pm10"] = 1.0
        with pytest.raises(ConfigurationError, match="pm10"):
            parse_config(data, env={})
