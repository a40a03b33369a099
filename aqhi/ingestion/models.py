"""
Typed containers for ingested data.

RawPayload is what a fetch adapter hands over; Reading is the canonical,
unit-normalized observation produced by the normalizer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from aqhi.errors import MalformedPayloadError

# Canonical pollutant keys, in display order
POLLUTANTS = ("pm25", "pm10", "o3", "no2", "so2", "co")


@dataclass(frozen=True)
class RawPayload:
    """One provider response, tagged with its source by the fetch adapter."""
    source: str
    payload: Any
    location_id: Optional[str] = None
    coordinate: Optional[Tuple[float, float]] = None   # (lat, lon)
    timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, item: Mapping[str, Any]) -> "RawPayload":
        """
        Build from the JSON batch-file shape used by the CLI.

        Raises:
            MalformedPayloadError: The item is not an object or its
                coordinate or timestamp cannot be read.
        """
        if not isinstance(item, Mapping):
            raise MalformedPayloadError("?", "batch item is not an object")
        source = str(item.get("source", ""))
        location_id = str(item["location_id"]) if item.get("location_id") is not None else None
        coord = item.get("coordinate")
        ts = item.get("timestamp")
        try:
            coordinate = (float(coord[0]), float(coord[1])) if coord else None
            timestamp = datetime.fromisoformat(ts.replace("Z", "+00:00")) if ts else None
        except (ValueError, TypeError, AttributeError, IndexError, KeyError) as e:
            raise MalformedPayloadError(source, f"bad coordinate or timestamp: {e}", location_id) from e
        return cls(
            source=source,
            payload=item.get("payload"),
            location_id=location_id,
            coordinate=coordinate,
            timestamp=timestamp,
        )


@dataclass(frozen=True)
class Reading:
    """Canonical observation for one location, source and bucket."""
    location_id: str
    source: str
    timestamp: datetime
    pm25: Optional[float] = None   # μg/m³
    pm10: Optional[float] = None   # μg/m³
    o3: Optional[float] = None     # μg/m³
    no2: Optional[float] = None    # μg/m³
    so2: Optional[float] = None    # μg/m³
    co: Optional[float] = None     # mg/m³

    def get(self, pollutant: str) -> Optional[float]:
        return getattr(self, pollutant)

    def pollutants(self) -> Dict[str, Optional[float]]:
        return {p: getattr(self, p) for p in POLLUTANTS}

    @property
    def key(self) -> Tuple[str, datetime]:
        return (self.location_id, self.timestamp)


@dataclass(frozen=True)
class SourcedValue:
    """A concentration plus the source it came from."""
    value: float
    source: str


@dataclass(frozen=True)
class ReconciledReading:
    """One merged record per (location_id, timestamp), with provenance per pollutant."""
    location_id: str
    timestamp: datetime
    pm25: Optional[SourcedValue] = None
    pm10: Optional[SourcedValue] = None
    o3: Optional[SourcedValue] = None
    no2: Optional[SourcedValue] = None
    so2: Optional[SourcedValue] = None
    co: Optional[SourcedValue] = None
    sources_seen: Tuple[str, ...] = field(default=())

    def get(self, pollutant: str) -> Optional[SourcedValue]:
        return getattr(self, pollutant)

    def value(self, pollutant: str) -> Optional[float]:
        sv = getattr(self, pollutant)
        return sv.value if sv is not None else None

    def provenance(self) -> Dict[str, Optional[str]]:
        return {
            p: (getattr(self, p).source if getattr(self, p) is not None else None)
            for p in POLLUTANTS
        }

    @property
    def key(self) -> Tuple[str, datetime]:
        return (self.location_id, self.timestamp)

