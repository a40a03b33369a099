"""
Engine configuration.

Loads config/aqhi.json (engine constants), config/locations.json and
config/communities.json at startup. Fails fast with ConfigurationError when a
required setting is missing, so a bad deployment never reaches a batch.
Environment variables (optionally from a .env file) override file values.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from aqhi.errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "config")
CONFIG_PATH = os.path.join(CONFIG_DIR, "aqhi.json")
LOCATIONS_PATH = os.path.join(CONFIG_DIR, "locations.json")
COMMUNITIES_PATH = os.path.join(CONFIG_DIR, "communities.json")

DEFAULT_DATABASE_URL = "sqlite:///aqhi.db"

# Pollutants that enter the relative-risk formula
INDEX_POLLUTANTS = ("pm25", "o3", "no2")

_CONFIG: Optional["EngineConfig"] = None


@dataclass(frozen=True)
class RiskBand:
    """One category band; covers [lower, next band's lower)."""
    name: str
    lower: float
    label: str = ""
    advice: str = ""


@dataclass(frozen=True)
class IndexCoefficients:
    """Calibrated coefficient set for the relative-risk formula."""
    scale_c: float
    beta: Mapping[str, float]
    name: str = ""
    input_divisor: Mapping[str, float] = field(default_factory=dict)   # canonical units → calibration units


@dataclass(frozen=True)
class QualityThresholds:
    """Sample-count thresholds for the excellent/good/fair tiers."""
    high: int
    medium: int
    low: int


@dataclass(frozen=True)
class Location:
    location_id: str
    name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    community_id: Optional[str] = None
    waqi_id: Optional[str] = None


@dataclass(frozen=True)
class Community:
    community_id: str
    name: str = ""
    name_th: str = ""


@dataclass(frozen=True)
class EngineConfig:
    """Static deployment configuration; nothing here changes mid-run."""
    window: timedelta
    bucket: timedelta
    source_priority: Tuple[str, ...]
    coefficients: IndexCoefficients
    bands: Tuple[RiskBand, ...]
    quality: QualityThresholds
    display_precision: int = 1
    nearest_max_km: float = 1.5
    batch_timeout_seconds: float = 60.0
    max_workers: int = 8
    request_timeout: float = 10.0
    database_url: str = DEFAULT_DATABASE_URL
    locations: Tuple[Location, ...] = field(default_factory=tuple)
    communities: Tuple[Community, ...] = field(default_factory=tuple)

    @property
    def top_source(self) -> str:
        return self.source_priority[0]

    @property
    def membership(self) -> Dict[str, str]:
        """location_id → community_id for every location with a community."""
        return {
            loc.location_id: loc.community_id
            for loc in self.locations
            if loc.community_id is not None
        }

    @property
    def community_names(self) -> Dict[str, str]:
        return {c.community_id: c.name for c in self.communities}


def _require(data: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in data or data[key] is None:
        raise ConfigurationError(f"Missing required setting '{key}' in {where}")
    return data[key]


def _as_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Setting '{name}' must be numeric, got {value!r}")


def _parse_coefficients(data: Mapping[str, Any]) -> IndexCoefficients:
    raw = _require(data, "coefficients", "engine config")
    scale_c = _as_float(_require(raw, "scale_c", "coefficients"), "coefficients.scale_c")
    if scale_c <= 0:
        raise ConfigurationError(f"coefficients.scale_c must be positive, got {scale_c}")

    raw_beta = _require(raw, "beta", "coefficients")
    beta = {}
    for pollutant in INDEX_POLLUTANTS:
        beta[pollutant] = _as_float(
            _require(raw_beta, pollutant, "coefficients.beta"),
            f"coefficients.beta.{pollutant}",
        )
    divisor = {}
    for pollutant, value in (raw.get("input_divisor") or {}).items():
        if pollutant not in INDEX_POLLUTANTS:
            raise ConfigurationError(f"coefficients.input_divisor.{pollutant} is not an index pollutant")
        divisor[pollutant] = _as_float(value, f"coefficients.input_divisor.{pollutant}")
        if divisor[pollutant] <= 0:
            raise ConfigurationError(
                f"coefficients.input_divisor.{pollutant} must be positive, got {divisor[pollutant]}"
            )
    return IndexCoefficients(scale_c=scale_c, beta=beta, name=raw.get("name", ""), input_divisor=divisor)


def _parse_bands(data: Mapping[str, Any]) -> Tuple[RiskBand, ...]:
    raw_bands = _require(data, "bands", "engine config")
    if not raw_bands:
        raise ConfigurationError("At least one category band is required")

    bands = tuple(
        RiskBand(
            name=str(_require(b, "name", "bands[]")),
            lower=_as_float(_require(b, "lower", "bands[]"), "bands[].lower"),
            label=b.get("label", ""),
            advice=b.get("advice", ""),
        )
        for b in raw_bands
    )
    lowers = [b.lower for b in bands]
    if any(hi <= lo for lo, hi in zip(lowers, lowers[1:])):
        raise ConfigurationError(f"Band lower bounds must be strictly increasing: {lowers}")
    if lowers[0] > 0:
        raise ConfigurationError("The first band must start at or below 0")
    return bands


def _parse_quality(data: Mapping[str, Any]) -> QualityThresholds:
    raw = _require(data, "quality_thresholds", "engine config")
    try:
        thresholds = QualityThresholds(
            high=int(_require(raw, "high", "quality_thresholds")),
            medium=int(_require(raw, "medium", "quality_thresholds")),
            low=int(_require(raw, "low", "quality_thresholds")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Quality thresholds must be integers: {e}") from e
    if not thresholds.high >= thresholds.medium >= thresholds.low >= 0:
        raise ConfigurationError(
            f"Quality thresholds must satisfy high >= medium >= low >= 0: {thresholds}"
        )
    return thresholds


def _parse_locations(raw: List[Mapping[str, Any]]) -> Tuple[Location, ...]:
    locations = []
    for item in raw:
        lat = item.get("latitude")
        lon = item.get("longitude")
        community = item.get("community_id")
        waqi_id = item.get("waqi_id")
        locations.append(Location(
            location_id=str(_require(item, "location_id", "locations[]")),
            name=item.get("name", ""),
            latitude=float(lat) if lat is not None else None,
            longitude=float(lon) if lon is not None else None,
            community_id=str(community) if community is not None else None,
            waqi_id=str(waqi_id) if waqi_id is not None else None,
        ))
    ids = [loc.location_id for loc in locations]
    if len(ids) != len(set(ids)):
        raise ConfigurationError("Duplicate location_id in locations config")
    return tuple(locations)


def _parse_communities(raw: List[Mapping[str, Any]]) -> Tuple[Community, ...]:
    return tuple(
        Community(
            community_id=str(_require(item, "community_id", "communities[]")),
            name=item.get("name", ""),
            name_th=item.get("name_th", ""),
        )
        for item in raw
    )


def parse_config(
    data: Mapping[str, Any],
    locations: Optional[List[Mapping[str, Any]]] = None,
    communities: Optional[List[Mapping[str, Any]]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> EngineConfig:
    """
    Build an EngineConfig from already-decoded JSON.

    Args:
        data: Engine constants (the contents of aqhi.json).
        locations: Location list (contents of locations.json).
        communities: Community list (contents of communities.json).
        env: Environment overrides; defaults to os.environ.

    Raises:
        ConfigurationError: If a required setting is missing or invalid.
    """
    env = os.environ if env is None else env

    window_hours = _as_float(
        env.get("AQHI_WINDOW_HOURS") or _require(data, "window_hours", "engine config"),
        "window_hours",
    )
    bucket_minutes = _as_float(_require(data, "bucket_minutes", "engine config"), "bucket_minutes")
    if bucket_minutes <= 0:
        raise ConfigurationError("bucket_minutes must be positive")
    window = timedelta(hours=window_hours)
    bucket = timedelta(minutes=bucket_minutes)
    if window < bucket:
        raise ConfigurationError(f"Window {window} is shorter than one bucket {bucket}")

    priority = tuple(_require(data, "source_priority", "engine config"))
    if not priority:
        raise ConfigurationError("source_priority must name at least one source")
    if len(priority) != len(set(priority)):
        raise ConfigurationError(f"source_priority has duplicates: {priority}")

    config = EngineConfig(
        window=window,
        bucket=bucket,
        source_priority=priority,
        coefficients=_parse_coefficients(data),
        bands=_parse_bands(data),
        quality=_parse_quality(data),
        display_precision=int(data.get("display_precision", 1)),
        nearest_max_km=_as_float(data.get("nearest_max_km", 1.5), "nearest_max_km"),
        batch_timeout_seconds=_as_float(
            env.get("AQHI_BATCH_TIMEOUT_SECONDS") or data.get("batch_timeout_seconds", 60),
            "batch_timeout_seconds",
        ),
        max_workers=int(env.get("AQHI_MAX_WORKERS") or data.get("max_workers", 8)),
        request_timeout=_as_float(data.get("request_timeout", 10), "request_timeout"),
        database_url=env.get("DATABASE_URL") or data.get("database_url", DEFAULT_DATABASE_URL),
        locations=_parse_locations(locations or []),
        communities=_parse_communities(communities or []),
    )

    unknown = [
        loc.location_id for loc in config.locations
        if loc.community_id is not None and config.communities
        and loc.community_id not in config.community_names
    ]
    if unknown:
        logger.warning("Locations reference unknown communities: %s", unknown)

    return config


def _read_json(path: str, required: bool) -> Any:
    if not os.path.exists(path):
        if required:
            raise ConfigurationError(
                f"CRITICAL: config file not found at {path}. Cannot start engine."
            )
        logger.warning("%s not found, continuing without it", path)
        return []
    with open(path, "r", encoding="utf-8") as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e


def load_config(path: Optional[str] = None, use_cache: bool = True) -> EngineConfig:
    """
    Load and validate the engine configuration from disk.

    The path comes from the argument, then AQHI_CONFIG_PATH, then
    config/aqhi.json. Locations and communities are read from the same
    directory as the engine config.
    """
    global _CONFIG
    if use_cache and path is None and _CONFIG is not None:
        return _CONFIG

    config_path = path or os.environ.get("AQHI_CONFIG_PATH") or CONFIG_PATH
    config_dir = os.path.dirname(config_path)
    data = _read_json(config_path, required=True)
    locations = _read_json(os.path.join(config_dir, "locations.json"), required=False)
    communities = _read_json(os.path.join(config_dir, "communities.json"), required=False)

    config = parse_config(data, locations, communities)
    logger.info(
        "AQHI config loaded from %s (%s, window=%s, %d locations)",
        config_path, config.coefficients.name or "unnamed coefficients",
        config.window, len(config.locations),
    )
    if path is None:
        _CONFIG = config
    return config


def reset_config_cache() -> None:
    global _CONFIG
    _CONFIG = None
