"""
Risk Index Calculator — relative-risk AQHI.

For each index pollutant p (PM2.5, O3, NO2) with a usable window average:

    r_p   = exp(β_p · avg_p) − 1
    R     = Σ r_p
    AQHI  = (10 / C) · 100 · R

Averages arrive in canonical μg/m³. A coefficient set calibrated in other
units (the Thai set uses ppb for O3 and NO2) carries a per-pollutant
input_divisor that is applied before the exponent. A null average is
excluded (it is not zero risk). If no index pollutant contributes, the calculator returns an
InsufficientDataError instead of a number.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Union

from aqhi.config import INDEX_POLLUTANTS, IndexCoefficients, RiskBand
from aqhi.errors import InsufficientDataError
from aqhi.streaming.window import WindowedAverage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskIndexValue:
    """A computed index: the full-precision value and each pollutant's excess-risk term."""
    value: float
    terms: Dict[str, float] = field(default_factory=dict)

    def display(self, precision: int = 1) -> float:
        return round(self.value, precision)


class RiskIndexCalculator:
    def __init__(self, coefficients: IndexCoefficients):
        missing = [p for p in INDEX_POLLUTANTS if p not in coefficients.beta]
        if missing:
            raise ValueError(f"Coefficient set has no β for {missing}")
        if coefficients.scale_c <= 0:
            raise ValueError(f"Scale constant C must be positive, got {coefficients.scale_c}")
        self.coefficients = coefficients

    def excess_risk(self, pollutant: str, average: Optional[float]) -> Optional[float]:
        """exp(β·avg) − 1 for one pollutant; None when the average is not usable."""
        if average is None:
            return None
        if average < 0:
            logger.warning("Negative %s average %.4f excluded from index", pollutant, average)
            return None
        average = average / self.coefficients.input_divisor.get(pollutant, 1.0)
        return math.expm1(self.coefficients.beta[pollutant] * average)

    def calculate(self, average: WindowedAverage) -> Union[RiskIndexValue, InsufficientDataError]:
        """
        Compute the index for one location's window.

        Returns:
            RiskIndexValue, or InsufficientDataError when no index pollutant
            has a usable average. The error is returned, not raised.
        """
        terms: Dict[str, float] = {}
        for p in INDEX_POLLUTANTS:
            r = self.excess_risk(p, average.average(p))
            if r is not None:
                terms[p] = r

        if not terms:
            logger.info("AQHI not computable for %s: no index pollutant in window", average.location_id)
            return InsufficientDataError(average.location_id)

        total = math.fsum(terms[p] for p in INDEX_POLLUTANTS if p in terms)
        value = max(0.0, (10.0 / self.coefficients.scale_c) * 100.0 * total)

        logger.debug(
            "AQHI for %s: %.4f (terms=%s, sample_count=%d)",
            average.location_id, value, terms, average.sample_count,
        )
        return RiskIndexValue(value=value, terms=terms)


def categorize(value: float, bands: Sequence[RiskBand]) -> RiskBand:
    """
    Map an index value to its band.

    Bands are closed on the lower end: a value equal to a band's lower bound
    belongs to that band. Values below the first band's lower bound fall in
    the first band.
    """
    if not bands:
        raise ValueError("No category bands configured")
    chosen = bands[0]
    for band in bands:
        if value >= band.lower:
            chosen = band
        else:
            break
    return chosen
