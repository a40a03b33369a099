"""
Field-level validator for normalized pollutant values.

Checks each concentration against physical bounds (canonical units).
Out-of-bounds fields are reported so the normalizer can null them; a single
bad field never discards the rest of the reading.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Physical bounds for each pollutant (min, max) in canonical units
POLLUTANT_BOUNDS = {
    "pm25": (0.0, 1000.0),   # μg/m³
    "pm10": (0.0, 2000.0),   # μg/m³
    "o3":   (0.0, 1000.0),   # μg/m³
    "no2":  (0.0, 2000.0),   # μg/m³
    "so2":  (0.0, 2000.0),   # μg/m³
    "co":   (0.0, 100.0),    # mg/m³
}


@dataclass
class ValidationResult:
    """Result of validating the pollutant fields of one reading."""
    is_valid: bool = True
    rejected: Dict[str, str] = field(default_factory=dict)

    def reject(self, field_name: str, msg: str):
        self.rejected[field_name] = msg
        self.is_valid = False

    @property
    def reasons(self) -> List[str]:
        return [f"{k}: {v}" for k, v in self.rejected.items()]

    def __str__(self) -> str:
        if self.is_valid:
            return "Valid"
        return "Invalid: " + "; ".join(self.reasons)


def validate_values(values: Dict[str, Optional[float]], context: str = "") -> ValidationResult:
    """
    Validate canonical pollutant values.

    Args:
        values: pollutant → concentration (None means not reported).
        context: Free text for the log line (e.g. "waqi/BKK01").

    Returns:
        ValidationResult listing every rejected field and why.
    """
    result = ValidationResult()

    for field_name, value in values.items():
        if value is None:
            continue
        bounds = POLLUTANT_BOUNDS.get(field_name)
        if bounds is None:
            continue
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            result.reject(field_name, f"must be numeric, got {type(value).__name__}")
            continue
        if math.isnan(value) or math.isinf(value):
            result.reject(field_name, f"not a finite number ({value})")
            continue
        min_val, max_val = bounds
        if value < min_val:
            result.reject(field_name, f"{value} below physical minimum {min_val}")
        elif value > max_val:
            result.reject(field_name, f"{value} exceeds physical maximum {max_val}")

    if not result.is_valid:
        logger.warning("Dropping out-of-bounds fields for %s: %s", context or "reading", result.reasons)
    return result
