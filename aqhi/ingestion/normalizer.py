"""
Reading Normalizer.

Turns a provider-specific payload into a canonical Reading:
  - WAQI (station network): iaqi values are US EPA AQI sub-indices and are
    converted back to concentrations by reverse breakpoint interpolation
  - Google Air Quality (grid estimate): pollutants[] with explicit units,
    ppb converted to μg/m³
  - OpenWeather Air Pollution (supplemental): components in μg/m³, CO → mg/m³

Canonical units are μg/m³ for every pollutant except CO (mg/m³). Missing,
"-" or unsupported values become None, never 0. A payload with no
resolvable location or timestamp raises MalformedPayloadError.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from aqhi.config import Location
from aqhi.errors import MalformedPayloadError
from aqhi.ingestion.locator import nearest_location
from aqhi.ingestion.models import POLLUTANTS, RawPayload, Reading
from aqhi.ingestion.validator import validate_values

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# US EPA AQI breakpoints: (aqi_lo, aqi_hi, conc_lo, conc_hi)
# Concentrations in the EPA native unit noted per pollutant.
EPA_AQI_BREAKPOINTS = {
    "pm25": [                      # μg/m³, 24-hour
        (0, 50, 0.0, 9.0),
        (51, 100, 9.1, 35.4),
        (101, 150, 35.5, 55.4),
        (151, 200, 55.5, 125.4),
        (201, 300, 125.5, 225.4),
        (301, 500, 225.5, 325.4),
        (501, 999, 325.5, 500.4),
    ],
    "pm10": [                      # μg/m³, 24-hour
        (0, 50, 0, 54),
        (51, 100, 55, 154),
        (101, 150, 155, 254),
        (151, 200, 255, 354),
        (201, 300, 355, 424),
        (301, 500, 425, 604),
        (501, 999, 605, 1004),
    ],
    "o3": [                        # ppm, 8-hour
        (0, 50, 0.000, 0.054),
        (51, 100, 0.055, 0.070),
        (101, 150, 0.071, 0.085),
        (151, 200, 0.086, 0.105),
        (201, 300, 0.106, 0.200),
    ],
    "no2": [                       # ppb, 1-hour
        (0, 50, 0, 53),
        (51, 100, 54, 100),
        (101, 150, 101, 360),
        (151, 200, 361, 649),
        (201, 300, 650, 1249),
        (301, 500, 1250, 2049),
    ],
    "so2": [                       # ppb, 1-hour
        (0, 50, 0, 35),
        (51, 100, 36, 75),
        (101, 150, 76, 185),
        (151, 200, 186, 304),
        (201, 300, 305, 604),
        (301, 500, 605, 1004),
    ],
    "co": [                        # ppm, 8-hour
        (0, 50, 0.0, 4.4),
        (51, 100, 4.5, 9.4),
        (101, 150, 9.5, 12.4),
        (151, 200, 12.5, 15.4),
        (201, 300, 15.5, 30.4),
        (301, 500, 30.5, 50.4),
    ],
}

# EPA native unit → canonical unit (25 °C, 1 atm)
EPA_UNIT_FACTORS = {
    "pm25": 1.0,      # μg/m³
    "pm10": 1.0,      # μg/m³
    "o3":   1962.0,   # ppm → μg/m³
    "no2":  1.88,     # ppb → μg/m³
    "so2":  2.62,     # ppb → μg/m³
    "co":   1.15,     # ppm → mg/m³
}

# ppb → canonical unit, for providers that report gases in ppb
PPB_FACTORS = {
    "o3":  1.962,     # μg/m³
    "no2": 1.88,      # μg/m³
    "so2": 2.62,      # μg/m³
    "co":  0.00115,   # mg/m³
}

GOOGLE_UGM3 = "MICROGRAMS_PER_CUBIC_METER"
GOOGLE_PPB = "PARTS_PER_BILLION"

OPENWEATHER_KEYS = {
    "pm2_5": "pm25",
    "pm10": "pm10",
    "o3": "o3",
    "no2": "no2",
    "so2": "so2",
    "co": "co",
}


def _safe_float(val) -> Optional[float]:
    """Safely convert a value to float, returning None on failure."""
    if val is None or val == "-" or val == "" or isinstance(val, bool):
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def truncate_to_bucket(ts: datetime, bucket: timedelta) -> datetime:
    """Floor a timestamp to its bucket boundary (aligned to the Unix epoch, UTC)."""
    ts = _as_utc(ts)
    offset = (ts - EPOCH) % bucket
    return ts - offset


def aqi_to_concentration(aqi: Optional[float], pollutant: str) -> Optional[float]:
    """
    Convert a US EPA AQI sub-index back to a canonical concentration.

    Uses the reverse EPA interpolation
        C = (I - I_lo) / (I_hi - I_lo) * (C_hi - C_lo) + C_lo
    then converts from the EPA native unit. Returns None for negative,
    out-of-range or unsupported values.
    """
    if aqi is None or aqi < 0:
        return None
    breakpoints = EPA_AQI_BREAKPOINTS.get(pollutant)
    if not breakpoints:
        return None

    for aqi_lo, aqi_hi, conc_lo, conc_hi in breakpoints:
        if aqi <= aqi_hi:
            # fractional values between two bands snap to the upper band's floor
            aqi_clamped = max(aqi, aqi_lo)
            conc = (aqi_clamped - aqi_lo) / (aqi_hi - aqi_lo) * (conc_hi - conc_lo) + conc_lo
            return conc * EPA_UNIT_FACTORS[pollutant]

    logger.debug("AQI %s out of EPA range for %s", aqi, pollutant)
    return None


# ---------------------------------------------------------------------------
# Provider parsers: each returns (values, timestamp, coordinate, provider_id)
# ---------------------------------------------------------------------------

ParsedPayload = Tuple[Dict[str, Optional[float]], Optional[datetime], Optional[Tuple[float, float]], Optional[str]]


def _parse_waqi(payload: Mapping[str, Any]) -> ParsedPayload:
    if "data" in payload:
        if payload.get("status") not in (None, "ok"):
            raise ValueError(f"provider status {payload.get('status')!r}")
        data = payload["data"]
    else:
        data = payload
    if not isinstance(data, Mapping):
        raise ValueError("'data' block is not an object")

    iaqi = data.get("iaqi") or {}
    values: Dict[str, Optional[float]] = {}
    for pollutant in POLLUTANTS:
        block = iaqi.get(pollutant)
        if isinstance(block, Mapping):
            values[pollutant] = aqi_to_concentration(_safe_float(block.get("v")), pollutant)

    time_block = data.get("time") or {}
    ts = _parse_iso(time_block.get("iso"))
    if ts is None and time_block.get("s"):
        ts = _parse_iso(str(time_block["s"]).replace(" ", "T") + (time_block.get("tz") or ""))

    coord = None
    geo = (data.get("city") or {}).get("geo")
    if isinstance(geo, (list, tuple)) and len(geo) == 2:
        lat, lon = _safe_float(geo[0]), _safe_float(geo[1])
        if lat is not None and lon is not None:
            coord = (lat, lon)

    idx = data.get("idx")
    return values, ts, coord, str(idx) if idx is not None else None


def _parse_google(payload: Mapping[str, Any]) -> ParsedPayload:
    values: Dict[str, Optional[float]] = {}
    for item in payload.get("pollutants") or []:
        if not isinstance(item, Mapping):
            continue
        code = item.get("code")
        if code not in POLLUTANTS:
            continue
        conc = item.get("concentration") or {}
        value = _safe_float(conc.get("value"))
        units = conc.get("units", GOOGLE_UGM3 if code in ("pm25", "pm10") else GOOGLE_PPB)
        if value is None:
            values[code] = None
        elif units == GOOGLE_PPB and code in PPB_FACTORS:
            values[code] = value * PPB_FACTORS[code]
        elif units == GOOGLE_UGM3:
            values[code] = value / 1000.0 if code == "co" else value
        else:
            logger.warning("Unsupported Google unit %s for %s, field dropped", units, code)
            values[code] = None

    return values, _parse_iso(payload.get("dateTime")), None, None


def _parse_openweather(payload: Mapping[str, Any]) -> ParsedPayload:
    entries = payload.get("list") or []
    if not entries or not isinstance(entries[0], Mapping):
        raise ValueError("missing 'list[0]'")
    entry = entries[0]

    components = entry.get("components") or {}
    values: Dict[str, Optional[float]] = {}
    for ow_key, pollutant in OPENWEATHER_KEYS.items():
        if ow_key in components:
            value = _safe_float(components.get(ow_key))
            if value is not None and pollutant == "co":
                value = value / 1000.0   # μg/m³ → mg/m³
            values[pollutant] = value

    ts = None
    dt = _safe_float(entry.get("dt"))
    if dt is not None:
        ts = datetime.fromtimestamp(dt, tz=timezone.utc)

    coord = None
    coord_block = payload.get("coord") or {}
    lat, lon = _safe_float(coord_block.get("lat")), _safe_float(coord_block.get("lon"))
    if lat is not None and lon is not None:
        coord = (lat, lon)
    return values, ts, coord, None


PARSERS: Dict[str, Callable[[Mapping[str, Any]], ParsedPayload]] = {
    "waqi": _parse_waqi,
    "google": _parse_google,
    "openweather": _parse_openweather,
}


def _resolve_location(
    raw: RawPayload,
    coord: Optional[Tuple[float, float]],
    provider_id: Optional[str],
    locations: Optional[Iterable[Location]],
    max_distance_km: float,
) -> Optional[str]:
    if raw.location_id:
        return raw.location_id

    locations = list(locations or ())
    if provider_id is not None:
        for loc in locations:
            if loc.waqi_id == provider_id:
                return loc.location_id

    point = raw.coordinate or coord
    if point is not None:
        loc = nearest_location(point, locations, max_distance_km)
        if loc is not None:
            return loc.location_id
    return None


def normalize(
    raw: RawPayload,
    bucket: timedelta = timedelta(hours=1),
    locations: Optional[Iterable[Location]] = None,
    max_distance_km: float = 1.5,
) -> Reading:
    """
    Convert a raw provider payload into a canonical Reading.

    Args:
        raw: Provider payload tagged with its source.
        bucket: Bucket size; the timestamp is floored to it.
        locations: Configured locations for coordinate/provider-id resolution.
        max_distance_km: Nearest-neighbor cutoff for coordinate resolution.

    Returns:
        Reading with canonical units and None for anything not reported.

    Raises:
        MalformedPayloadError: Unknown source, unreadable payload, or no
            resolvable location or timestamp.
    """
    parser = PARSERS.get(raw.source)
    if parser is None:
        raise MalformedPayloadError(raw.source, "unknown source", raw.location_id)
    if not isinstance(raw.payload, Mapping):
        raise MalformedPayloadError(raw.source, "payload is not an object", raw.location_id)

    try:
        values, ts, coord, provider_id = parser(raw.payload)
    except (ValueError, TypeError, AttributeError, KeyError, OverflowError, OSError) as e:
        raise MalformedPayloadError(raw.source, str(e), raw.location_id) from e

    location_id = _resolve_location(raw, coord, provider_id, locations, max_distance_km)
    if not location_id:
        raise MalformedPayloadError(raw.source, "no resolvable location", None)

    if ts is None and raw.timestamp is not None:
        ts = _as_utc(raw.timestamp)
    if ts is None:
        raise MalformedPayloadError(raw.source, "no timestamp", location_id)

    check = validate_values(values, context=f"{raw.source}/{location_id}")
    for field_name in check.rejected:
        values[field_name] = None

    reading = Reading(
        location_id=location_id,
        source=raw.source,
        timestamp=truncate_to_bucket(ts, bucket),
        **{p: values.get(p) for p in POLLUTANTS},
    )
    logger.debug(
        "Normalized %s reading for %s @ %s: %s",
        raw.source, location_id, reading.timestamp.isoformat(), reading.pollutants(),
    )
    return reading
