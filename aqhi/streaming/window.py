"""
Windowed Aggregator.

Keeps a rolling buffer of reconciled buckets per location and recomputes
per-pollutant averages over the latest window (default: 3 hourly buckets,
i.e. the current hour plus the two before it).

The window ends at the end of the latest bucket seen for a location;
buckets older than window_end - window_length are evicted. Averages are
computed per pollutant over only the buckets where that pollutant is
non-null, so a pollutant missing from every bucket averages to None with a
count of 0.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from aqhi.ingestion.models import POLLUTANTS, ReconciledReading
from aqhi.ingestion.normalizer import truncate_to_bucket

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=3)
DEFAULT_BUCKET = timedelta(hours=1)


@dataclass(frozen=True)
class WindowedAverage:
    location_id: str
    window_start: datetime
    window_end: datetime
    avg_pm25: Optional[float] = None
    avg_pm10: Optional[float] = None
    avg_o3: Optional[float] = None
    avg_no2: Optional[float] = None
    avg_so2: Optional[float] = None
    avg_co: Optional[float] = None
    counts: Dict[str, int] = field(default_factory=dict)
    sources: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    sample_count: int = 0

    def average(self, pollutant: str) -> Optional[float]:
        return getattr(self, f"avg_{pollutant}")


def compute_window_average(
    location_id: str,
    window_end: datetime,
    buckets: Iterable[ReconciledReading],
    priority: Sequence[str],
    window_length: timedelta = DEFAULT_WINDOW,
) -> WindowedAverage:
    """
    Average the given buckets, pollutant by pollutant.

    The caller is responsible for passing only buckets inside the window.
    Sums use math.fsum over buckets in timestamp order so the result does
    not depend on insertion order.
    """
    ordered = sorted(buckets, key=lambda b: b.timestamp)
    rank = {source: i for i, source in enumerate(priority)}

    averages: Dict[str, Optional[float]] = {}
    counts: Dict[str, int] = {}
    sources: Dict[str, Tuple[str, ...]] = {}

    for p in POLLUTANTS:
        values = [b.get(p) for b in ordered if b.get(p) is not None]
        counts[p] = len(values)
        if not values:
            averages[p] = None
            continue
        averages[p] = math.fsum(v.value for v in values) / len(values)
        sources[p] = tuple(sorted(
            {v.source for v in values},
            key=lambda s: (rank.get(s, len(rank)), s),
        ))

    return WindowedAverage(
        location_id=location_id,
        window_start=window_end - window_length,
        window_end=window_end,
        counts=counts,
        sources=sources,
        sample_count=max(counts.values()) if counts else 0,
        **{f"avg_{p}": averages[p] for p in POLLUTANTS},
    )


class RollingWindow:
    """Bucket buffer for a single location."""

    def __init__(
        self,
        location_id: str,
        priority: Sequence[str],
        window: timedelta = DEFAULT_WINDOW,
        bucket: timedelta = DEFAULT_BUCKET,
    ):
        self.location_id = location_id
        self.priority = tuple(priority)
        self.window = window
        self.bucket = bucket
        self._buckets: Dict[datetime, ReconciledReading] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    @property
    def is_empty(self) -> bool:
        return not self._buckets

    @property
    def window_end(self) -> Optional[datetime]:
        if not self._buckets:
            return None
        return max(self._buckets) + self.bucket

    def _evict_before(self, cutoff: datetime) -> int:
        stale = [ts for ts in self._buckets if ts < cutoff]
        for ts in stale:
            del self._buckets[ts]
        if stale:
            logger.debug("Evicted %d buckets for %s older than %s", len(stale), self.location_id, cutoff)
        return len(stale)

    def add(self, reconciled: ReconciledReading) -> Optional[WindowedAverage]:
        """
        Insert or replace a bucket and return the refreshed average.

        A bucket already older than the current window is ignored; the
        current average is returned unchanged.
        """
        if reconciled.location_id != self.location_id:
            raise ValueError(
                f"Bucket for {reconciled.location_id} added to window of {self.location_id}"
            )

        end = self.window_end
        if end is not None and reconciled.timestamp < end - self.window:
            logger.warning(
                "Late bucket %s for %s is outside the window ending %s, ignored",
                reconciled.timestamp.isoformat(), self.location_id, end.isoformat(),
            )
            return self.current()

        self._buckets[reconciled.timestamp] = reconciled
        self._evict_before(self.window_end - self.window)
        return self.current()

    def expire(self, now: datetime) -> None:
        """Evict every bucket that falls outside a window ending at now's bucket."""
        end = truncate_to_bucket(now, self.bucket) + self.bucket
        self._evict_before(end - self.window)

    def current(self) -> Optional[WindowedAverage]:
        if not self._buckets:
            return None
        return compute_window_average(
            self.location_id,
            self.window_end,
            self._buckets.values(),
            self.priority,
            window_length=self.window,
        )


class WindowedAggregator:
    """
    Rolling windows for every location.

    Locations are independent: distinct locations may be fed from different
    threads. Feeding the same location concurrently is not supported.
    """

    def __init__(
        self,
        priority: Sequence[str],
        window: timedelta = DEFAULT_WINDOW,
        bucket: timedelta = DEFAULT_BUCKET,
    ):
        if window < bucket:
            raise ValueError(f"Window {window} is shorter than one bucket {bucket}")
        self.priority = tuple(priority)
        self.window = window
        self.bucket = bucket
        self._windows: Dict[str, RollingWindow] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "WindowedAggregator":
        return cls(config.source_priority, window=config.window, bucket=config.bucket)

    def _window_for(self, location_id: str) -> RollingWindow:
        with self._lock:
            win = self._windows.get(location_id)
            if win is None:
                win = RollingWindow(location_id, self.priority, self.window, self.bucket)
                self._windows[location_id] = win
            return win

    def add(self, reconciled: ReconciledReading) -> Optional[WindowedAverage]:
        return self._window_for(reconciled.location_id).add(reconciled)

    def current(self, location_id: str) -> Optional[WindowedAverage]:
        with self._lock:
            win = self._windows.get(location_id)
        return win.current() if win is not None else None

    def expire(self, now: datetime) -> List[str]:
        """
        Evict stale buckets everywhere.

        Returns the locations whose buffers became empty; those are removed
        entirely rather than kept as zeroed state.
        """
        removed = []
        with self._lock:
            for location_id, win in list(self._windows.items()):
                win.expire(now)
                if win.is_empty:
                    del self._windows[location_id]
                    removed.append(location_id)
        if removed:
            logger.info("Expired %d locations with no data in window: %s", len(removed), sorted(removed))
        return sorted(removed)

    def locations(self) -> List[str]:
        with self._lock:
            return sorted(self._windows)
