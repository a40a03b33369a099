"""
Error taxonomy for the AQHI engine.

MalformedPayloadError and SourceUnavailableError are raised and contained per
item by the batch runner. InsufficientDataError is returned by the risk index
calculator, never raised by it. ConfigurationError aborts startup.
"""

from typing import Optional


class AQHIError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(AQHIError):
    """Required configuration is missing or invalid."""


class MalformedPayloadError(AQHIError, ValueError):
    """A provider payload cannot be turned into a Reading."""

    def __init__(self, source: str, reason: str, location_id: Optional[str] = None):
        self.source = source
        self.reason = reason
        self.location_id = location_id
        where = f" location={location_id}" if location_id else ""
        super().__init__(f"Malformed {source} payload{where}: {reason}")


class SourceUnavailableError(AQHIError):
    """A source did not answer for a location; means "no reading", not zero."""

    def __init__(self, source: str, location_id: str, reason: str):
        self.source = source
        self.location_id = location_id
        self.reason = reason
        super().__init__(f"{source} unavailable for location={location_id}: {reason}")


class InsufficientDataError(AQHIError):
    """No index pollutant had a usable average; the index is not computable."""

    def __init__(self, location_id: str, reason: str = "no index pollutant has data"):
        self.location_id = location_id
        self.reason = reason
        super().__init__(f"AQHI not computable for location={location_id}: {reason}")
