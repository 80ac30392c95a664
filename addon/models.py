"""
Circadian Zones Data Models

Value types shared between the schedule engine, zones and the host bridge.
"""

from dataclasses import dataclass
from enum import Enum

# Decimal places outputs are rounded to before comparison/emission
OUTPUT_PRECISION = 2


class Mode(Enum):
    """Which value source governs a zone."""

    ADAPTIVE = "adaptive"
    NIGHT = "night"
    MANUAL = "manual"


@dataclass(frozen=True)
class ZoneOutput:
    """Brightness and temperature fractions (0-1) applied to a zone."""

    brightness: float
    temperature: float

    def rounded(self, precision: int = OUTPUT_PRECISION) -> "ZoneOutput":
        return ZoneOutput(round(self.brightness, precision), round(self.temperature, precision))

    def as_tokens(self) -> dict:
        """Trigger tokens for a values-changed notification."""
        return {"brightness": self.brightness, "temperature": self.temperature}
