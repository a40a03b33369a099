"""
Result store — idempotent upserts and read queries.

Writes are INSERT ... ON CONFLICT ... DO UPDATE keyed on
(location_id, time_bucket) and (location_id, window_end), so re-running a
batch overwrites rows with identical values instead of duplicating them.
All timestamps are stored in UTC.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from aqhi.classification.quality import DataQuality, RiskIndexResult
from aqhi.ingestion.models import POLLUTANTS, ReconciledReading
from store.database import init_db, make_session_factory
from store.models import ReconciledReadingRow, RiskIndexResultRow

logger = logging.getLogger(__name__)

UPSERT_RECONCILED = text("""
    INSERT INTO reconciled_readings (
        location_id, time_bucket,
        pm25, pm10, o3, no2, so2, co,
        pm25_source, pm10_source, o3_source, no2_source, so2_source, co_source,
        sources_seen, updated_at
    ) VALUES (
        :location_id, :time_bucket,
        :pm25, :pm10, :o3, :no2, :so2, :co,
        :pm25_source, :pm10_source, :o3_source, :no2_source, :so2_source, :co_source,
        :sources_seen, :updated_at
    )
    ON CONFLICT (location_id, time_bucket) DO UPDATE SET
        pm25 = excluded.pm25,
        pm10 = excluded.pm10,
        o3 = excluded.o3,
        no2 = excluded.no2,
        so2 = excluded.so2,
        co = excluded.co,
        pm25_source = excluded.pm25_source,
        pm10_source = excluded.pm10_source,
        o3_source = excluded.o3_source,
        no2_source = excluded.no2_source,
        so2_source = excluded.so2_source,
        co_source = excluded.co_source,
        sources_seen = excluded.sources_seen,
        updated_at = excluded.updated_at
""").bindparams(*(
    bindparam(c.name, type_=c.type) for c in ReconciledReadingRow.__table__.columns
))

UPSERT_RESULT = text("""
    INSERT INTO risk_index_results (
        location_id, window_end, value, display_value, category,
        data_quality, sources_used, sample_count, advice, updated_at
    ) VALUES (
        :location_id, :window_end, :value, :display_value, :category,
        :data_quality, :sources_used, :sample_count, :advice, :updated_at
    )
    ON CONFLICT (location_id, window_end) DO UPDATE SET
        value = excluded.value,
        display_value = excluded.display_value,
        category = excluded.category,
        data_quality = excluded.data_quality,
        sources_used = excluded.sources_used,
        sample_count = excluded.sample_count,
        advice = excluded.advice,
        updated_at = excluded.updated_at
""").bindparams(*(
    bindparam(c.name, type_=c.type) for c in RiskIndexResultRow.__table__.columns
))


def _utc(ts: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values (as SQLite returns them) are taken as UTC."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _reconciled_params(reading: ReconciledReading, now: datetime) -> Dict:
    params = {
        "location_id": reading.location_id,
        "time_bucket": _utc(reading.timestamp),
        "sources_seen": json.dumps(list(reading.sources_seen)),
        "updated_at": now,
    }
    for p in POLLUTANTS:
        sv = reading.get(p)
        params[p] = sv.value if sv is not None else None
        params[f"{p}_source"] = sv.source if sv is not None else None
    return params


def _result_params(result: RiskIndexResult, now: datetime) -> Dict:
    return {
        "location_id": result.location_id,
        "window_end": _utc(result.window_end),
        "value": result.value,
        "display_value": result.display_value,
        "category": result.category,
        "data_quality": result.data_quality.value,
        "sources_used": json.dumps(
            {p: list(s) for p, s in result.sources_used.items()}, sort_keys=True
        ),
        "sample_count": result.sample_count,
        "advice": result.advice,
        "updated_at": now,
    }


def _row_to_result(row: RiskIndexResultRow) -> RiskIndexResult:
    return RiskIndexResult(
        location_id=row.location_id,
        window_end=_utc(row.window_end),
        data_quality=DataQuality(row.data_quality),
        value=row.value,
        display_value=row.display_value,
        category=row.category,
        advice=row.advice,
        sources_used={p: tuple(s) for p, s in json.loads(row.sources_used or "{}").items()},
        sample_count=row.sample_count,
    )


class ResultStore:
    """Batch-runner sink backed by a SQLAlchemy engine."""

    def __init__(self, engine: Engine, create_tables: bool = True):
        self.engine = engine
        self.SessionLocal = make_session_factory(engine)
        if create_tables:
            init_db(engine)

    def upsert_reconciled(self, db: Session, readings: Iterable[ReconciledReading], now: datetime) -> int:
        count = 0
        for reading in readings:
            db.execute(UPSERT_RECONCILED, _reconciled_params(reading, now))
            count += 1
        return count

    def upsert_result(self, db: Session, result: RiskIndexResult, now: datetime) -> None:
        db.execute(UPSERT_RESULT, _result_params(result, now))

    def persist(
        self,
        location_id: str,
        reconciled: Iterable[ReconciledReading],
        result: Optional[RiskIndexResult],
        now: Optional[datetime] = None,
    ) -> None:
        """
        Write one location's buckets and result in a single transaction.

        Raises:
            RuntimeError: If the write fails; nothing is committed.
        """
        now = _utc(now) or datetime.now(timezone.utc)
        with self.SessionLocal() as db:
            try:
                n = self.upsert_reconciled(db, reconciled, now)
                if result is not None:
                    self.upsert_result(db, result, now)
                db.commit()
            except Exception as e:
                db.rollback()
                logger.error("Failed to persist results for %s: %s", location_id, e)
                raise RuntimeError(f"Persist failed for {location_id}: {e}") from e
        logger.debug("Persisted %d buckets and result for %s", n, location_id)

    def latest_results(self) -> List[RiskIndexResult]:
        """Most recent result per location, ordered by location_id."""
        with self.SessionLocal() as db:
            rows = (
                db.query(RiskIndexResultRow)
                .order_by(RiskIndexResultRow.location_id, RiskIndexResultRow.window_end.desc())
                .all()
            )
            latest: Dict[str, RiskIndexResult] = {}
            for row in rows:
                if row.location_id not in latest:
                    latest[row.location_id] = _row_to_result(row)
        return list(latest.values())

    def results_updated_since(self, ts: datetime) -> List[RiskIndexResult]:
        """Results written at or after ts, ordered by (location_id, window_end)."""
        with self.SessionLocal() as db:
            rows = (
                db.query(RiskIndexResultRow)
                .filter(RiskIndexResultRow.updated_at >= _utc(ts))
                .order_by(RiskIndexResultRow.location_id, RiskIndexResultRow.window_end)
                .all()
            )
            return [_row_to_result(row) for row in rows]

    def reconciled_for(self, location_id: str) -> List[Dict]:
        """Stored buckets for one location as plain dicts, oldest first."""
        with self.SessionLocal() as db:
            rows = (
                db.query(ReconciledReadingRow)
                .filter(ReconciledReadingRow.location_id == location_id)
                .order_by(ReconciledReadingRow.time_bucket)
                .all()
            )
            return [
                {
                    "location_id": row.location_id,
                    "time_bucket": _utc(row.time_bucket),
                    **{p: getattr(row, p) for p in POLLUTANTS},
                    **{f"{p}_source": getattr(row, f"{p}_source") for p in POLLUTANTS},
                    "sources_seen": json.loads(row.sources_seen),
                }
                for row in rows
            ]
