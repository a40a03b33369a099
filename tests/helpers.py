"""Builders shared by the test modules."""

from datetime import datetime, timedelta, timezone

from aqhi.ingestion.models import Reading, ReconciledReading, SourcedValue

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def hour(n: int) -> datetime:
    """Bucket start n hours after T0."""
    return T0 + timedelta(hours=n)


def make_reading(source="waqi", location_id="BKK01", timestamp=None, **pollutants) -> Reading:
    return Reading(location_id=location_id, source=source, timestamp=timestamp or T0, **pollutants)


def make_reconciled(location_id="BKK01", timestamp=None, source="waqi", **pollutants) -> ReconciledReading:
    """ReconciledReading with every given pollutant attributed to one source."""
    fields = {p: SourcedValue(v, source) for p, v in pollutants.items() if v is not None}
    return ReconciledReading(
        location_id=location_id,
        timestamp=timestamp or T0,
        sources_seen=(source,),
        **fields,
    )
