"""
Community Aggregator.

Rolls per-location index results up to the community each location belongs
to. Only computable results take part; a community with no computable
member produces no summary at all.
"""

import logging
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from aqhi.classification.quality import RiskIndexResult
from aqhi.config import INDEX_POLLUTANTS, RiskBand
from aqhi.index.calculator import categorize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommunitySummary:
    community_id: str
    name: str
    avg_value: float
    max_value: float
    min_value: float
    member_count: int
    category: str             # band of the mean
    dominant_category: str    # most frequent member band
    category_counts: Dict[str, int] = field(default_factory=dict)
    excluded_count: int = 0


def _dominant(counts: Counter, bands: Sequence[RiskBand]) -> str:
    severity = {band.name: i for i, band in enumerate(bands)}
    # highest count first; among equals the more severe band
    return max(counts, key=lambda name: (counts[name], severity.get(name, -1)))


def summarize_communities(
    results: Iterable[RiskIndexResult],
    membership: Mapping[str, str],
    bands: Sequence[RiskBand],
    names: Optional[Mapping[str, str]] = None,
) -> List[CommunitySummary]:
    """
    Args:
        results: Latest result per location.
        membership: location_id → community_id (many-to-one).
        bands: Category bands, least severe first.
        names: community_id → display name.

    Returns:
        One summary per community with at least one computable member,
        ordered by avg_value descending, then community_id.
    """
    names = names or {}
    computable: Dict[str, List[RiskIndexResult]] = defaultdict(list)
    excluded: Counter = Counter()

    for result in results:
        community_id = membership.get(result.location_id)
        if community_id is None:
            logger.warning("Location %s has no community, skipped in summary", result.location_id)
            continue
        if result.is_computable:
            computable[community_id].append(result)
        else:
            excluded[community_id] += 1

    summaries = []
    for community_id, members in computable.items():
        values = [r.value for r in members]
        avg = math.fsum(values) / len(values)
        counts = Counter(r.category for r in members)
        summaries.append(CommunitySummary(
            community_id=community_id,
            name=names.get(community_id, community_id),
            avg_value=avg,
            max_value=max(values),
            min_value=min(values),
            member_count=len(members),
            category=categorize(avg, bands).name,
            dominant_category=_dominant(counts, bands),
            category_counts=dict(sorted(counts.items())),
            excluded_count=excluded[community_id],
        ))

    no_data = sorted(set(excluded) - set(computable))
    if no_data:
        logger.info("Communities with no computable member: %s", no_data)

    summaries.sort(key=lambda s: (-s.avg_value, s.community_id))
    return summaries


@dataclass(frozen=True)
class CityStatistics:
    """All-locations roll-up: coverage plus the spread of computable values."""
    total_locations: int
    locations_with_data: int
    percent_complete: float
    partial_count: int = 0        # computable but missing an index pollutant
    avg_value: Optional[float] = None
    max_value: Optional[float] = None
    min_value: Optional[float] = None
    category_counts: Dict[str, int] = field(default_factory=dict)


def summarize_city(
    results: Iterable[RiskIndexResult],
    total_locations: int,
    bands: Sequence[RiskBand],
) -> CityStatistics:
    """
    Coverage and spread over every configured location.

    Every band appears in category_counts, with 0 when no location falls in
    it. Value statistics stay None when nothing is computable.
    """
    members = [r for r in results if r.is_computable]
    counts = {band.name: 0 for band in bands}
    for r in members:
        counts[r.category] = counts.get(r.category, 0) + 1

    with_data = len(members)
    percent = round(100.0 * with_data / total_locations, 1) if total_locations else 0.0
    partial = sum(1 for r in members if len(r.sources_used) < len(INDEX_POLLUTANTS))
    if not members:
        return CityStatistics(total_locations, 0, percent, category_counts=counts)

    values = [r.value for r in members]
    return CityStatistics(
        total_locations=total_locations,
        locations_with_data=with_data,
        percent_complete=percent,
        partial_count=partial,
        avg_value=math.fsum(values) / len(values),
        max_value=max(values),
        min_value=min(values),
        category_counts=counts,
    )
