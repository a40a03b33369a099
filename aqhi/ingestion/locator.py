"""
Nearest-neighbor location lookup.

Grid and supplemental providers are queried by coordinate; their responses
are attached to the closest configured location, provided it lies within a
maximum distance. No interpolation between locations.
"""

import logging
import math
from typing import Iterable, Optional, Tuple

from aqhi.config import Location

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088


def haversine_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """Great-circle distance in km between two (lat, lon) points."""
    lat1, lon1 = map(math.radians, a)
    lat2, lon2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def nearest_location(
    coordinate: Tuple[float, float],
    locations: Iterable[Location],
    max_distance_km: float,
) -> Optional[Location]:
    """
    Return the configured location closest to `coordinate`.

    Ties resolve to the lexicographically smaller location_id so the
    result does not depend on config ordering. Returns None when no
    location lies within max_distance_km.
    """
    best: Optional[Tuple[float, str, Location]] = None
    for loc in locations:
        if loc.latitude is None or loc.longitude is None:
            continue
        d = haversine_km(coordinate, (loc.latitude, loc.longitude))
        candidate = (d, loc.location_id, loc)
        if best is None or candidate[:2] < best[:2]:
            best = candidate

    if best is None or best[0] > max_distance_km:
        logger.debug(
            "No location within %.2f km of %s (closest: %s)",
            max_distance_km, coordinate,
            f"{best[1]} at {best[0]:.2f} km" if best else "none",
        )
        return None
    return best[2]
