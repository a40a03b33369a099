"""
Provider fetch adapters.

Each adapter performs one HTTP call and hands back a RawPayload tagged with
its source. Timeouts, HTTP errors, network errors, malformed JSON and a
non-ok provider status all raise SourceUnavailableError so the batch runner
can treat them as "no reading from this source".

  - WAQI feed (station network)          WAQI_TOKEN
  - Google Air Quality currentConditions  GOOGLE_AIR_QUALITY_API_KEY
  - OpenWeather Air Pollution             OPENWEATHER_API_KEY
"""

import logging
import os
from functools import partial
from typing import Any, Callable, List, Optional

import httpx
from dotenv import load_dotenv

from aqhi.config import EngineConfig, Location
from aqhi.errors import SourceUnavailableError
from aqhi.ingestion.models import RawPayload

load_dotenv()

logger = logging.getLogger(__name__)

WAQI_BASE_URL = "https://api.waqi.info/feed"
GOOGLE_AQ_URL = "https://airquality.googleapis.com/v1/currentConditions:lookup"
OPENWEATHER_URL = "https://api.openweathermap.org/data/2.5/air_pollution"
REQUEST_TIMEOUT = 10  # seconds

FetchTask = Callable[[], RawPayload]


def _decode(resp: httpx.Response, source: str, location_id: str) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        logger.error("%s returned malformed JSON for %s", source, location_id)
        raise SourceUnavailableError(source, location_id, "malformed JSON") from e


def _call(source: str, location_id: str, request: Callable[[], httpx.Response]) -> Any:
    """Run one request, mapping every transport failure to SourceUnavailableError."""
    try:
        resp = request()
        resp.raise_for_status()
    except httpx.TimeoutException as e:
        logger.error("%s request timed out for %s", source, location_id)
        raise SourceUnavailableError(source, location_id, "timeout") from e
    except httpx.HTTPStatusError as e:
        logger.error("%s HTTP error %s for %s", source, e.response.status_code, location_id)
        raise SourceUnavailableError(
            source, location_id, f"HTTP {e.response.status_code}"
        ) from e
    except httpx.RequestError as e:
        logger.error("%s network error for %s: %s", source, location_id, e)
        raise SourceUnavailableError(source, location_id, f"network error: {e}") from e
    return _decode(resp, source, location_id)


def _require_key(env_var: str, source: str, location_id: str) -> str:
    key = os.getenv(env_var, "")
    if not key:
        logger.error("%s not set in environment", env_var)
        raise SourceUnavailableError(source, location_id, f"{env_var} not set")
    return key


def fetch_waqi(location: Location, timeout: float = REQUEST_TIMEOUT) -> RawPayload:
    """
    Fetch the latest WAQI feed for a location.

    Uses the station endpoint (@<waqi_id>) when the location has a WAQI id,
    otherwise the geo endpoint with the location's coordinate.
    """
    token = _require_key("WAQI_TOKEN", "waqi", location.location_id)

    if location.waqi_id:
        url = f"{WAQI_BASE_URL}/@{location.waqi_id}/"
    elif location.latitude is not None and location.longitude is not None:
        url = f"{WAQI_BASE_URL}/geo:{location.latitude};{location.longitude}/"
    else:
        raise SourceUnavailableError("waqi", location.location_id, "no WAQI id or coordinate")

    payload = _call(
        "waqi", location.location_id,
        lambda: httpx.get(url, params={"token": token}, timeout=timeout),
    )
    if not isinstance(payload, dict) or payload.get("status") != "ok":
        status = payload.get("status") if isinstance(payload, dict) else None
        logger.error("WAQI status not ok for %s: %s", location.location_id, status)
        raise SourceUnavailableError("waqi", location.location_id, f"status {status!r}")

    logger.info("WAQI feed fetched for %s", location.location_id)
    return RawPayload(source="waqi", payload=payload, location_id=location.location_id)


def fetch_google(location: Location, timeout: float = REQUEST_TIMEOUT) -> RawPayload:
    """Fetch Google Air Quality current conditions at the location's coordinate."""
    key = _require_key("GOOGLE_AIR_QUALITY_API_KEY", "google", location.location_id)
    if location.latitude is None or location.longitude is None:
        raise SourceUnavailableError("google", location.location_id, "no coordinate")

    body = {
        "location": {"latitude": location.latitude, "longitude": location.longitude},
        "extraComputations": ["POLLUTANT_CONCENTRATION"],
        "languageCode": "en",
    }
    payload = _call(
        "google", location.location_id,
        lambda: httpx.post(GOOGLE_AQ_URL, params={"key": key}, json=body, timeout=timeout),
    )
    if not isinstance(payload, dict) or "pollutants" not in payload:
        raise SourceUnavailableError("google", location.location_id, "no pollutants in response")

    logger.info("Google air quality fetched for %s", location.location_id)
    return RawPayload(
        source="google",
        payload=payload,
        location_id=location.location_id,
        coordinate=(location.latitude, location.longitude),
    )


def fetch_openweather(location: Location, timeout: float = REQUEST_TIMEOUT) -> RawPayload:
    """Fetch OpenWeather air pollution components at the location's coordinate."""
    key = _require_key("OPENWEATHER_API_KEY", "openweather", location.location_id)
    if location.latitude is None or location.longitude is None:
        raise SourceUnavailableError("openweather", location.location_id, "no coordinate")

    params = {"lat": location.latitude, "lon": location.longitude, "appid": key}
    payload = _call(
        "openweather", location.location_id,
        lambda: httpx.get(OPENWEATHER_URL, params=params, timeout=timeout),
    )
    if not isinstance(payload, dict) or not payload.get("list"):
        raise SourceUnavailableError("openweather", location.location_id, "empty 'list'")

    logger.info("OpenWeather air pollution fetched for %s", location.location_id)
    return RawPayload(
        source="openweather",
        payload=payload,
        location_id=location.location_id,
        coordinate=(location.latitude, location.longitude),
    )


FETCHERS = {
    "waqi": fetch_waqi,
    "google": fetch_google,
    "openweather": fetch_openweather,
}


def build_fetch_tasks(config: EngineConfig, sources: Optional[List[str]] = None) -> List[FetchTask]:
    """
    One zero-argument task per (location, source) for the batch runner.

    Sources default to the configured priority order; names without an
    adapter are skipped with a warning.
    """
    tasks: List[FetchTask] = []
    for source in sources or config.source_priority:
        fetcher = FETCHERS.get(source)
        if fetcher is None:
            logger.warning("No fetch adapter for source %s, skipping", source)
            continue
        for loc in config.locations:
            tasks.append(partial(fetcher, loc, timeout=config.request_timeout))
    logger.info("Built %d fetch tasks for %d locations", len(tasks), len(config.locations))
    return tasks
