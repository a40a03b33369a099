"""
Tests for Module 01 — Reading Normalizer.
Tests provider parsing, unit conversion, field validation and location resolution.
"""

from datetime import datetime, timedelta, timezone

import pytest

from aqhi.config import Location
from aqhi.errors import MalformedPayloadError
from aqhi.ingestion.locator import haversine_km, nearest_location
from aqhi.ingestion.models import RawPayload
from aqhi.ingestion.normalizer import (
    _safe_float, aqi_to_concentration, normalize, truncate_to_bucket,
)
from aqhi.ingestion.validator import validate_values

HOUR = timedelta(hours=1)


def waqi_payload(iaqi, iso="2024-01-15T17:35:00+07:00", geo=(13.758108, 100.500366)):
    return {
        "status": "ok",
        "data": {
            "idx": 5773,
            "iaqi": {k: {"v": v} for k, v in iaqi.items()},
            "time": {"iso": iso},
            "city": {"geo": list(geo), "name": "Bangkok"},
        },
    }


class TestSafeFloat:
    def test_valid_number(self):
        assert _safe_float(42.5) == 42.5

    def test_string_number(self):
        assert _safe_float("42.5") == 42.5

    def test_dash_returns_none(self):
        assert _safe_float("-") is None

    def test_bool_returns_none(self):
        assert _safe_float(True) is None

    def test_invalid_string_returns_none(self):
        assert _safe_float("n/a") is None


class TestTruncateToBucket:
    def test_floors_to_hour(self):
        ts = datetime(2024, 1, 15, 10, 37, 12, tzinfo=timezone.utc)
        assert truncate_to_bucket(ts, HOUR) == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_converts_to_utc_first(self):
        ts = datetime(2024, 1, 15, 17, 35, tzinfo=timezone(timedelta(hours=7)))
        assert truncate_to_bucket(ts, HOUR) == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert truncate_to_bucket(datetime(2024, 1, 15, 10, 59), HOUR).tzinfo == timezone.utc


class TestAqiToConcentration:
    def test_pm25_breakpoint_edges(self):
        assert aqi_to_concentration(50, "pm25") == pytest.approx(9.0)
        assert aqi_to_concentration(100, "pm25") == pytest.approx(35.4)

    def test_pm25_interpolates(self):
        expected = (75 - 51) / (100 - 51) * (35.4 - 9.1) + 9.1
        assert aqi_to_concentration(75, "pm25") == pytest.approx(expected)

    def test_gases_converted_to_canonical_units(self):
        assert aqi_to_concentration(50, "o3") == pytest.approx(0.054 * 1962)
        assert aqi_to_concentration(50, "no2") == pytest.approx(53 * 1.88)
        assert aqi_to_concentration(50, "co") == pytest.approx(4.4 * 1.15)

    def test_out_of_range_is_none(self):
        assert aqi_to_concentration(301, "o3") is None
        assert aqi_to_concentration(-1, "pm25") is None
        assert aqi_to_concentration(None, "pm25") is None


class TestNormalizeWaqi:
    def test_converts_and_truncates(self):
        raw = RawPayload("waqi", waqi_payload({"pm25": 50, "no2": 50, "h": 80, "t": 31}), location_id="BKK01")
        reading = normalize(raw, HOUR)
        assert reading.location_id == "BKK01"
        assert reading.source == "waqi"
        assert reading.timestamp == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert reading.pm25 == pytest.approx(9.0)
        assert reading.no2 == pytest.approx(99.64)
        assert reading.o3 is None

    def test_dash_value_is_none_not_zero(self):
        raw = RawPayload("waqi", waqi_payload({"pm25": "-"}), location_id="BKK01")
        assert normalize(raw, HOUR).pm25 is None

    def test_non_ok_status_is_malformed(self):
        raw = RawPayload("waqi", {"status": "error", "data": "Unknown station"}, location_id="BKK01")
        with pytest.raises(MalformedPayloadError):
            normalize(raw, HOUR)

    def test_location_from_geo(self, engine_config):
        raw = RawPayload("waqi", waqi_payload({"pm25": 50}))
        reading = normalize(raw, HOUR, engine_config.locations, engine_config.nearest_max_km)
        assert reading.location_id == "BKK01"


class TestNormalizeGoogle:
    def test_ppb_converted(self):
        payload = {
            "dateTime": "2024-01-15T10:00:00Z",
            "pollutants": [
                {"code": "pm25", "concentration": {"value": 12.0, "units": "MICROGRAMS_PER_CUBIC_METER"}},
                {"code": "o3", "concentration": {"value": 30.0, "units": "PARTS_PER_BILLION"}},
                {"code": "co", "concentration": {"value": 500.0, "units": "PARTS_PER_BILLION"}},
                {"code": "nh3", "concentration": {"value": 3.0, "units": "PARTS_PER_BILLION"}},
            ],
        }
        reading = normalize(RawPayload("google", payload, location_id="BKK02"), HOUR)
        assert reading.pm25 == pytest.approx(12.0)
        assert reading.o3 == pytest.approx(58.86)
        assert reading.co == pytest.approx(0.575)
        assert reading.no2 is None

    def test_falls_back_to_raw_timestamp(self):
        ts = datetime(2024, 1, 15, 10, 20, tzinfo=timezone.utc)
        payload = {"pollutants": [{"code": "pm25", "concentration": {"value": 5, "units": "MICROGRAMS_PER_CUBIC_METER"}}]}
        reading = normalize(RawPayload("google", payload, location_id="BKK02", timestamp=ts), HOUR)
        assert reading.timestamp == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_no_timestamp_is_malformed(self):
        payload = {"pollutants": []}
        with pytest.raises(MalformedPayloadError, match="no timestamp"):
            normalize(RawPayload("google", payload, location_id="BKK02"), HOUR)


class TestNormalizeOpenWeather:
    def test_components(self):
        payload = {
            "coord": {"lat": 13.720943, "lon": 100.481581},
            "list": [{
                "dt": 1705312800,
                "components": {"pm2_5": 20.5, "pm10": 30.1, "o3": 70.0, "no2": 15.0, "so2": 4.0, "co": 250.0, "nh3": 1.0},
            }],
        }
        reading = normalize(RawPayload("openweather", payload, location_id="BKK02"), HOUR)
        assert reading.timestamp == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert reading.pm25 == pytest.approx(20.5)
        assert reading.co == pytest.approx(0.25)

    def test_empty_list_is_malformed(self):
        with pytest.raises(MalformedPayloadError):
            normalize(RawPayload("openweather", {"list": []}, location_id="BKK02"), HOUR)

    @pytest.mark.parametrize("dt", [1e20, "inf", -1e20])
    def test_out_of_range_timestamp_is_malformed(self, dt):
        payload = {"list": [{"dt": dt, "components": {"pm2_5": 20.5}}]}
        with pytest.raises(MalformedPayloadError, match="openweather"):
            normalize(RawPayload("openweather", payload, location_id="BKK02"), HOUR)


class TestNormalizeRejections:
    def test_unknown_source(self):
        with pytest.raises(MalformedPayloadError, match="unknown source"):
            normalize(RawPayload("purpleair", {}, location_id="BKK01"), HOUR)

    def test_payload_not_mapping(self):
        with pytest.raises(MalformedPayloadError):
            normalize(RawPayload("waqi", ["not", "a", "dict"], location_id="BKK01"), HOUR)

    def test_unresolvable_location(self, engine_config):
        raw = RawPayload("waqi", waqi_payload({"pm25": 50}, geo=(0.0, 0.0)))
        with pytest.raises(MalformedPayloadError, match="location"):
            normalize(raw, HOUR, engine_config.locations, engine_config.nearest_max_km)

    def test_malformed_is_a_value_error(self):
        with pytest.raises(ValueError):
            normalize(RawPayload("nope", {}), HOUR)

    def test_out_of_bounds_field_dropped_only(self):
        payload = {
            "dateTime": "2024-01-15T10:00:00Z",
            "pollutants": [
                {"code": "pm25", "concentration": {"value": -5.0, "units": "MICROGRAMS_PER_CUBIC_METER"}},
                {"code": "pm10", "concentration": {"value": 40.0, "units": "MICROGRAMS_PER_CUBIC_METER"}},
            ],
        }
        reading = normalize(RawPayload("google", payload, location_id="BKK02"), HOUR)
        assert reading.pm25 is None
        assert reading.pm10 == pytest.approx(40.0)


class TestValidator:
    def test_valid_values(self):
        assert validate_values({"pm25": 12.0, "co": 1.2, "o3": None}).is_valid

    def test_rejects_nan_and_excess(self):
        result = validate_values({"pm25": float("nan"), "co": 500.0})
        assert not result.is_valid
        assert set(result.rejected) == {"pm25", "co"}


class TestLocator:
    LOCATIONS = [
        Location("A", latitude=13.75, longitude=100.50),
        Location("B", latitude=13.76, longitude=100.50),
        Location("C"),
    ]

    def test_haversine_one_degree_latitude(self):
        assert haversine_km((0.0, 0.0), (1.0, 0.0)) == pytest.approx(111.2, abs=0.1)

    def test_nearest_within_range(self):
        assert nearest_location((13.751, 100.50), self.LOCATIONS, 1.5).location_id == "A"

    def test_none_beyond_range(self):
        assert nearest_location((14.5, 100.50), self.LOCATIONS, 1.5) is None

    def test_tie_breaks_on_id(self):
        twins = [Location("Z", latitude=13.75, longitude=100.5), Location("Y", latitude=13.75, longitude=100.5)]
        assert nearest_location((13.751, 100.50), twins, 5.0).location_id == "Y"


class TestRawPayloadFromDict:
    def test_reads_batch_item(self):
        raw = RawPayload.from_dict({
            "source": "google", "location_id": 7, "payload": {},
            "coordinate": ["13.7", 100.5], "timestamp": "2024-01-15T10:00:00Z",
        })
        assert raw.location_id == "7"
        assert raw.coordinate == (13.7, 100.5)
        assert raw.timestamp == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("item", [
        {"source": "google", "timestamp": "yesterday"},
        {"source": "google", "timestamp": 1705312800},
        {"source": "google", "coordinate": ["north", 100.5]},
        {"source": "google", "coordinate": [13.7]},
        ["google"],
    ])
    def test_unreadable_item_is_malformed(self, item):
        with pytest.raises(MalformedPayloadError):
            RawPayload.from_dict(item)
