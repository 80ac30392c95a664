"""
Circadian Zones Custom Exceptions

Simple exception hierarchy for error handling.
"""


class CircadianZoneError(Exception):
    """Base exception for circadian zones."""

    pass


class ConfigurationError(CircadianZoneError):
    """Configuration is invalid."""

    pass


class ScheduleValidationError(CircadianZoneError):
    """Schedule text could not be parsed or failed validation."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DegenerateScheduleError(CircadianZoneError):
    """Schedule has too few control points to interpolate."""

    pass


class GeoUnavailableError(CircadianZoneError):
    """Location coordinates are missing."""

    pass


class TriggerDispatchError(CircadianZoneError):
    """Values-changed trigger could not be delivered."""

    pass
