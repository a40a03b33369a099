"""
Quality Classifier.

Labels every index result with a data-quality tier derived from how many
buckets fed the window and which sources the index pollutants came from.
Rules are ordered; the first match wins:

  EXCELLENT   sample_count >= high, all index pollutants from the top source only
  GOOD        sample_count >= medium, same source condition
  FAIR        sample_count >= low, same source condition
  ENHANCED    all index pollutants present, at least one (partly) from a fallback source
  LIMITED     sample_count < low
  ESTIMATED   anything else
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

from aqhi.config import INDEX_POLLUTANTS, EngineConfig, QualityThresholds
from aqhi.errors import InsufficientDataError
from aqhi.index.calculator import RiskIndexValue, categorize
from aqhi.streaming.window import WindowedAverage

logger = logging.getLogger(__name__)


class DataQuality(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    ENHANCED = "enhanced"
    LIMITED = "limited"
    ESTIMATED = "estimated"


@dataclass(frozen=True)
class RiskIndexResult:
    """
    Final per-location output for one window.

    value is None when the index was not computable; category and advice
    are None with it. Results are superseded by newer windows, never edited.
    """
    location_id: str
    window_end: datetime
    data_quality: DataQuality
    value: Optional[float] = None
    display_value: Optional[float] = None
    category: Optional[str] = None
    advice: Optional[str] = None
    sources_used: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    sample_count: int = 0

    @property
    def is_computable(self) -> bool:
        return self.value is not None


def classify_quality(
    sample_count: int,
    sources_used: Mapping[str, Sequence[str]],
    priority: Sequence[str],
    thresholds: QualityThresholds,
) -> DataQuality:
    """
    Args:
        sample_count: Buckets in the window (max over pollutants).
        sources_used: pollutant → sources that contributed to its average.
        priority: Source names, highest priority first.
        thresholds: high/medium/low sample-count thresholds.
    """
    top = priority[0]
    present = [p for p in INDEX_POLLUTANTS if sources_used.get(p)]
    all_present = len(present) == len(INDEX_POLLUTANTS)
    top_only = all_present and all(set(sources_used[p]) == {top} for p in INDEX_POLLUTANTS)

    if top_only:
        if sample_count >= thresholds.high:
            return DataQuality.EXCELLENT
        if sample_count >= thresholds.medium:
            return DataQuality.GOOD
        if sample_count >= thresholds.low:
            return DataQuality.FAIR
    if all_present and not top_only:
        return DataQuality.ENHANCED
    if sample_count < thresholds.low:
        return DataQuality.LIMITED
    return DataQuality.ESTIMATED


def build_result(
    average: WindowedAverage,
    outcome: Union[RiskIndexValue, InsufficientDataError],
    config: EngineConfig,
) -> RiskIndexResult:
    """Combine a window, its calculator outcome and the quality tier into a RiskIndexResult."""
    sources_used = {p: tuple(average.sources[p]) for p in INDEX_POLLUTANTS if p in average.sources}
    quality = classify_quality(
        average.sample_count, sources_used, config.source_priority, config.quality,
    )

    if isinstance(outcome, InsufficientDataError):
        return RiskIndexResult(
            location_id=average.location_id,
            window_end=average.window_end,
            data_quality=quality,
            sources_used=sources_used,
            sample_count=average.sample_count,
        )

    band = categorize(outcome.value, config.bands)
    return RiskIndexResult(
        location_id=average.location_id,
        window_end=average.window_end,
        data_quality=quality,
        value=outcome.value,
        display_value=outcome.display(config.display_precision),
        category=band.name,
        advice=band.advice or None,
        sources_used=sources_used,
        sample_count=average.sample_count,
    )
