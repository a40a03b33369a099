"""
Fallback Reconciler.

Merges the Readings that several sources delivered for one
(location_id, bucket) into a single ReconciledReading. Each pollutant is
filled independently from the highest-priority source that reported it
non-null; a pollutant every source left null stays None.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from aqhi.ingestion.models import POLLUTANTS, Reading, ReconciledReading, SourcedValue

logger = logging.getLogger(__name__)


def first_non_null(candidates: Iterable[Tuple[str, Optional[float]]]) -> Optional[SourcedValue]:
    """Return the first (source, value) pair whose value is not None."""
    for source, value in candidates:
        if value is not None:
            return SourcedValue(value=value, source=source)
    return None


def _rank(priority: Sequence[str]):
    order = {source: i for i, source in enumerate(priority)}

    def key(source: str) -> Tuple[int, str]:
        # unknown sources rank after every configured one, by name
        return (order.get(source, len(order)), source)

    return key


def _collapse_duplicates(readings: List[Reading]) -> Dict[str, Dict[str, Optional[float]]]:
    """
    Fold readings to one value set per source.

    A later reading from the same source overwrites earlier non-null fields;
    its nulls do not erase earlier values.
    """
    per_source: Dict[str, Dict[str, Optional[float]]] = {}
    for reading in readings:
        current = per_source.get(reading.source)
        if current is None:
            per_source[reading.source] = reading.pollutants()
            continue
        logger.debug(
            "Duplicate %s reading for %s @ %s, last write wins",
            reading.source, reading.location_id, reading.timestamp.isoformat(),
        )
        for p, value in reading.pollutants().items():
            if value is not None:
                current[p] = value
    return per_source


def reconcile(
    readings: Iterable[Reading],
    priority: Sequence[str],
    location_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> ReconciledReading:
    """
    Reconcile readings for one (location_id, timestamp).

    Args:
        readings: Zero or more readings for the same key, any arrival order.
        priority: Source names, highest priority first.
        location_id: Required when readings is empty.
        timestamp: Required when readings is empty.

    Returns:
        Exactly one ReconciledReading.

    Raises:
        ValueError: A reading belongs to a different key, or the key cannot
            be determined.
    """
    readings = list(readings)
    if readings:
        location_id = location_id or readings[0].location_id
        timestamp = timestamp or readings[0].timestamp
    if location_id is None or timestamp is None:
        raise ValueError("reconcile() needs location_id and timestamp when given no readings")

    for reading in readings:
        if reading.key != (location_id, timestamp):
            raise ValueError(
                f"Reading for {reading.key} passed to reconcile() for "
                f"{(location_id, timestamp)}"
            )

    known = set(priority)
    unknown = sorted({r.source for r in readings if r.source not in known})
    if unknown:
        logger.warning("Sources %s not in priority order for %s, ranking them last", unknown, location_id)

    per_source = _collapse_duplicates(readings)
    ordered = sorted(per_source, key=_rank(priority))

    fields = {
        p: first_non_null((source, per_source[source][p]) for source in ordered)
        for p in POLLUTANTS
    }
    return ReconciledReading(
        location_id=location_id,
        timestamp=timestamp,
        sources_seen=tuple(ordered),
        **fields,
    )


def reconcile_batch(readings: Iterable[Reading], priority: Sequence[str]) -> List[ReconciledReading]:
    """Group readings by (location_id, timestamp) and reconcile each group, sorted by key."""
    groups: Dict[Tuple[str, datetime], List[Reading]] = defaultdict(list)
    for reading in readings:
        groups[reading.key].append(reading)

    reconciled = [
        reconcile(group, priority, location_id=key[0], timestamp=key[1])
        for key, group in sorted(groups.items(), key=lambda kv: kv[0])
    ]
    logger.debug("Reconciled %d buckets", len(reconciled))
    return reconciled
