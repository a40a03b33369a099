"""
Tests for Module 08 — Result Store.
Uses an in-memory SQLite engine; the upserts are the same SQL PostgreSQL runs.
"""

from datetime import timedelta

import pytest

from aqhi.classification.quality import DataQuality, RiskIndexResult
from aqhi.main import Engine
from store.repository import ResultStore
from helpers import T0, hour, make_reconciled


@pytest.fixture()
def store(db_engine):
    return ResultStore(db_engine)


def result(location_id="BKK01", window_end=None, value=2.05, quality=DataQuality.EXCELLENT):
    return RiskIndexResult(
        location_id=location_id,
        window_end=window_end or hour(1),
        data_quality=quality,
        value=value,
        display_value=round(value, 1) if value is not None else None,
        category="low" if value is not None else None,
        advice="Ideal air quality for outdoor activities" if value is not None else None,
        sources_used={"pm25": ("waqi",), "o3": ("waqi", "google")},
        sample_count=3,
    )


class TestUpsert:
    def test_round_trips_result(self, store):
        store.persist("BKK01", [make_reconciled(pm25=12.0)], result(), now=T0)
        [stored] = store.latest_results()
        assert stored == result()
        assert stored.window_end.tzinfo is not None

    def test_rerun_overwrites_instead_of_duplicating(self, store):
        store.persist("BKK01", [make_reconciled(pm25=12.0)], result(value=2.0), now=T0)
        store.persist("BKK01", [make_reconciled(pm25=14.0)], result(value=2.5), now=T0)
        [stored] = store.latest_results()
        assert stored.value == 2.5
        rows = store.reconciled_for("BKK01")
        assert len(rows) == 1
        assert rows[0]["pm25"] == 14.0
        assert rows[0]["pm25_source"] == "waqi"
        assert rows[0]["o3"] is None

    def test_not_computable_result_stored(self, store):
        store.persist("BKK02", [], result("BKK02", value=None, quality=DataQuality.LIMITED), now=T0)
        [stored] = store.latest_results()
        assert stored.value is None
        assert stored.data_quality == DataQuality.LIMITED


class TestQueries:
    def test_latest_per_location(self, store):
        store.persist("BKK01", [], result(window_end=hour(1), value=1.0), now=T0)
        store.persist("BKK01", [], result(window_end=hour(2), value=2.0), now=T0)
        store.persist("BKK02", [], result("BKK02", window_end=hour(1), value=3.0), now=T0)
        latest = store.latest_results()
        assert [(r.location_id, r.value) for r in latest] == [("BKK01", 2.0), ("BKK02", 3.0)]

    def test_updated_since(self, store):
        store.persist("BKK01", [], result(window_end=hour(1)), now=T0)
        store.persist("BKK02", [], result("BKK02", window_end=hour(1)), now=T0 + timedelta(hours=2))
        changed = store.results_updated_since(T0 + timedelta(hours=1))
        assert [r.location_id for r in changed] == ["BKK02"]


class TestEngineSink:
    def test_engine_writes_through_store(self, store, engine_config):
        from aqhi.ingestion.models import RawPayload

        payload = RawPayload("google", {
            "dateTime": "2024-01-15T10:00:00Z",
            "pollutants": [{"code": "pm25", "concentration": {"value": 12.0, "units": "MICROGRAMS_PER_CUBIC_METER"}}],
        }, location_id="BKK01")
        summary = Engine(engine_config, sink=store).run_batch(payloads=[payload], now=T0)
        assert summary.failed == 0
        [stored] = store.latest_results()
        assert stored == summary.results[0]
