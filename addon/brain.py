#!/usr/bin/env python3
"""Brain module for circadian zones – sun events and the percentage curve.

Key ideas
---------
* Solar key events (sunrise, solar noon, sunset, solar midnight) for the day
  before, the day of and the day after an instant, sorted into one calendar.
* A quadratic curve between the two events bracketing an instant: 0 at
  sunrise/sunset, +1 at solar noon, -1 at solar midnight.
* Mapping of the signed percentage onto brightness/temperature fractions
  (clamped at sunset: anything at or below 0 uses the sunset values).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone as dt_timezone, tzinfo as TzInfo
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError  # stdlib ≥3.9
from astral import Observer
from astral.sun import noon, sunrise, sunset

from exceptions import GeoUnavailableError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Default brightness range (fraction 0-1)
DEFAULT_MIN_BRIGHTNESS = float(os.getenv("MIN_BRIGHTNESS", "0.1"))
DEFAULT_MAX_BRIGHTNESS = float(os.getenv("MAX_BRIGHTNESS", "1.0"))

# Default temperature range (fraction 0-1, 0 = coolest, 1 = warmest)
DEFAULT_NOON_TEMPERATURE = float(os.getenv("NOON_TEMPERATURE", "0.0"))
DEFAULT_SUNSET_TEMPERATURE = float(os.getenv("SUNSET_TEMPERATURE", "1.0"))

# Fixed values used in night mode
DEFAULT_NIGHT_BRIGHTNESS = float(os.getenv("NIGHT_BRIGHTNESS", "0.1"))
DEFAULT_NIGHT_TEMPERATURE = float(os.getenv("NIGHT_TEMPERATURE", "1.0"))

# Where sunrise/sunset are placed relative to solar noon when the sun never
# crosses the horizon and no neighbouring day has the event either
POLAR_FALLBACK_OFFSET = timedelta(hours=6)


# ---------------------------------------------------------------------------
# Sun events
# ---------------------------------------------------------------------------

def _utc(when: datetime) -> datetime:
    """Same instant in UTC (aware datetimes sharing a tzinfo subtract as wall-clock times)."""
    return when.astimezone(dt_timezone.utc)


class SunEventKind(Enum):
    """Kind of solar key event."""
    SUNRISE = "sunrise"
    SOLAR_NOON = "solar_noon"
    SUNSET = "sunset"
    SOLAR_MIDNIGHT = "solar_midnight"


# Curve value exactly at each kind of event
EVENT_PERCENTAGE = {
    SunEventKind.SUNRISE: 0.0,
    SunEventKind.SOLAR_NOON: 1.0,
    SunEventKind.SUNSET: 0.0,
    SunEventKind.SOLAR_MIDNIGHT: -1.0,
}


@dataclass(frozen=True)
class SunEvent:
    """A solar key event at a point in time."""
    kind: SunEventKind
    timestamp: datetime

    @property
    def is_crossing(self) -> bool:
        """True for sunrise/sunset, where the curve crosses zero."""
        return self.kind in (SunEventKind.SUNRISE, SunEventKind.SUNSET)

    def __str__(self) -> str:
        return f"{self.kind.value} at {self.timestamp.isoformat()}"


def _crossing_near(
    calc: Callable[..., datetime],
    observer: Observer,
    solar_noon: datetime,
    tz: TzInfo,
) -> Optional[datetime]:
    """Sunrise in the 12h before solar_noon, or sunset in the 12h after it.

    astral returns events on a local calendar date, which for a timezone far
    from the location's own can be the neighbouring solar day's event.
    """
    rising = calc is sunrise
    day = solar_noon.astimezone(tz).date()
    for offset in (0, -1, 1):
        try:
            t = calc(observer, date=day + timedelta(days=offset), tzinfo=tz)
        except ValueError:
            continue
        delta = _utc(solar_noon) - _utc(t) if rising else _utc(t) - _utc(solar_noon)
        if timedelta(0) < delta < timedelta(hours=12):
            return t
    return None


def _resolve_crossing(
    calc: Callable[..., datetime],
    observer: Observer,
    solar_noon: datetime,
    tz: TzInfo,
) -> Optional[datetime]:
    """Sunrise/sunset around solar_noon, borrowing from a neighbouring day.

    Returns None when neither the day nor its neighbours have the event.
    """
    found = _crossing_near(calc, observer, solar_noon, tz)
    if found is not None:
        return found

    for offset in (1, -1):
        shift = timedelta(days=offset)
        other_noon = noon(observer, date=solar_noon.astimezone(tz).date() + shift, tzinfo=tz)
        borrowed = _crossing_near(calc, observer, other_noon, tz)
        if borrowed is not None:
            logger.debug(f"{calc.__name__} missing near {solar_noon.date()}, borrowed from day {offset:+d}")
            return (_utc(borrowed) - (_utc(other_noon) - _utc(solar_noon))).astimezone(tz)

    return None


def _day_events(observer: Observer, day: date, tz: TzInfo) -> List[SunEvent]:
    """The four key events of one calendar day."""
    solar_noon = noon(observer, date=day, tzinfo=tz)
    rise = _resolve_crossing(sunrise, observer, solar_noon, tz)
    fall = _resolve_crossing(sunset, observer, solar_noon, tz)

    if rise is None or fall is None:
        logger.warning(
            f"No sunrise/sunset near {day} at lat={observer.latitude:.2f}, "
            f"using solar noon ±{POLAR_FALLBACK_OFFSET}"
        )
        rise = rise or (_utc(solar_noon) - POLAR_FALLBACK_OFFSET).astimezone(tz)
        fall = fall or (_utc(solar_noon) + POLAR_FALLBACK_OFFSET).astimezone(tz)

    return [
        SunEvent(SunEventKind.SUNRISE, rise),
        SunEvent(SunEventKind.SOLAR_NOON, solar_noon),
        SunEvent(SunEventKind.SUNSET, fall),
        SunEvent(SunEventKind.SOLAR_MIDNIGHT, (_utc(solar_noon) - timedelta(hours=12)).astimezone(tz)),
    ]


class SunEventCalendar:
    """Ordered solar key events spanning three consecutive days."""

    def __init__(self, events: List[SunEvent]) -> None:
        # sorted() is stable, so equal timestamps keep computation order
        self._events: Tuple[SunEvent, ...] = tuple(sorted(events, key=lambda e: _utc(e.timestamp)))

    @classmethod
    def compute(
        cls,
        central_date: date,
        latitude: float,
        longitude: float,
        tz: Optional[TzInfo] = None,
    ) -> "SunEventCalendar":
        """Compute the calendar for the day before, of and after central_date.

        Args:
            central_date: Local calendar date the calendar is centred on
            latitude: Location latitude
            longitude: Location longitude
            tz: Timezone the dates are interpreted in (UTC when omitted)

        Returns:
            Calendar with exactly 12 events sorted by timestamp
        """
        tz = tz or ZoneInfo("UTC")
        observer = Observer(latitude=latitude, longitude=longitude)

        events: List[SunEvent] = []
        for offset in (-1, 0, 1):
            events.extend(_day_events(observer, central_date + timedelta(days=offset), tz))
        return cls(events)

    @classmethod
    def around(cls, when: datetime, latitude: float, longitude: float) -> "SunEventCalendar":
        """Calendar centred on the local date of an aware datetime."""
        tz = when.tzinfo or ZoneInfo("UTC")
        return cls.compute(when.astimezone(tz).date(), latitude, longitude, tz)

    @property
    def events(self) -> Tuple[SunEvent, ...]:
        return self._events

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[SunEvent]:
        return iter(self._events)

    def next_event_after(self, t: datetime) -> SunEvent:
        """First event strictly after t."""
        for event in self._events:
            if _utc(event.timestamp) > _utc(t):
                return event
        raise ValueError(f"{t.isoformat()} is after the last event of the calendar")

    def last_event_before(self, t: datetime) -> SunEvent:
        """Last event strictly before t."""
        for event in reversed(self._events):
            if _utc(event.timestamp) < _utc(t):
                return event
        raise ValueError(f"{t.isoformat()} is before the first event of the calendar")

    def event_at(self, t: datetime) -> Optional[SunEvent]:
        """Event falling exactly on t, if any."""
        for event in self._events:
            if _utc(event.timestamp) == _utc(t):
                return event
        return None

    def __str__(self) -> str:
        return f"{len(self._events)} events"


# ---------------------------------------------------------------------------
# Percentage curve
# ---------------------------------------------------------------------------

def fit_percentage(t: datetime, last: SunEvent, next_: SunEvent) -> float:
    """Evaluate the parabola through the two events bracketing t.

    The vertex sits on the solar noon/midnight end of the interval
    (value ±1) and the curve passes through 0 at the sunrise/sunset end.

    Args:
        t: Instant to evaluate
        last: Event at or before t
        next_: Event at or after t

    Returns:
        Signed percentage (-1 to 1)
    """
    if next_.is_crossing:
        x, h = next_.timestamp, last.timestamp
    else:
        x, h = last.timestamp, next_.timestamp

    k = 1.0 if next_.kind in (SunEventKind.SUNSET, SunEventKind.SOLAR_NOON) else -1.0

    span = (_utc(h) - _utc(x)).total_seconds()
    if span == 0:
        return 0.0
    ratio = (_utc(t) - _utc(h)).total_seconds() / span
    return -k * ratio ** 2 + k


def calculate_percentage(calendar: SunEventCalendar, t: datetime) -> float:
    """Position of t within the day/night cycle.

    Returns -1 (solar midnight) to +1 (solar noon), 0 at sunrise and sunset.
    """
    exact = calendar.event_at(t)
    if exact is not None:
        return EVENT_PERCENTAGE[exact.kind]

    last = calendar.last_event_before(t)
    next_ = calendar.next_event_after(t)
    percentage = fit_percentage(t, last, next_)
    return max(-1.0, min(1.0, percentage))


# ---------------------------------------------------------------------------
# Percentage → brightness / temperature
# ---------------------------------------------------------------------------

@dataclass
class CurveConfig:
    """Bounds used to map the curve onto output fractions."""
    min_brightness: float = DEFAULT_MIN_BRIGHTNESS
    max_brightness: float = DEFAULT_MAX_BRIGHTNESS
    noon_temperature: float = DEFAULT_NOON_TEMPERATURE
    sunset_temperature: float = DEFAULT_SUNSET_TEMPERATURE

    def brightness_for(self, percentage: float) -> float:
        """Brightness for a percentage; night (≤ 0) uses the minimum."""
        if percentage <= 0:
            return self.min_brightness
        return (self.max_brightness - self.min_brightness) * percentage + self.min_brightness

    def temperature_for(self, percentage: float) -> float:
        """Temperature for a percentage; night (≤ 0) uses the sunset value."""
        if percentage <= 0:
            return self.sunset_temperature
        delta = self.sunset_temperature - self.noon_temperature
        return delta * (1 - percentage) + self.noon_temperature


class AdaptiveCurve:
    """Brightness/temperature from the sun curve at arbitrary instants.

    Calendars are cached per local date for the lifetime of the instance,
    which callers keep for a single recompute.
    """

    def __init__(
        self,
        latitude: float,
        longitude: float,
        tz: TzInfo,
        config: Optional[CurveConfig] = None,
    ) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self.tz = tz
        self.config = config or CurveConfig()
        self._calendars: Dict[date, SunEventCalendar] = {}

    def calendar_for(self, when: datetime) -> SunEventCalendar:
        local = when.astimezone(self.tz)
        day = local.date()
        if day not in self._calendars:
            self._calendars[day] = SunEventCalendar.compute(day, self.latitude, self.longitude, self.tz)
        return self._calendars[day]

    def percentage_at(self, when: datetime) -> float:
        return calculate_percentage(self.calendar_for(when), when)

    def brightness_at(self, when: datetime) -> float:
        return self.config.brightness_for(self.percentage_at(when))

    def temperature_at(self, when: datetime) -> float:
        return self.config.temperature_for(self.percentage_at(when))


class NightCurve:
    """Fixed night values, whatever the instant."""

    def __init__(
        self,
        brightness: float = DEFAULT_NIGHT_BRIGHTNESS,
        temperature: float = DEFAULT_NIGHT_TEMPERATURE,
    ) -> None:
        self.brightness = brightness
        self.temperature = temperature

    def brightness_at(self, when: datetime) -> float:
        return self.brightness

    def temperature_at(self, when: datetime) -> float:
        return self.temperature


# ---------------------------------------------------------------------------
# Helper: resolve lat/lon/tz from HA-style env vars
# ---------------------------------------------------------------------------

def _auto_location(lat: Optional[float], lon: Optional[float], tz: Optional[str]):
    if lat is not None and lon is not None:
        return lat, lon, tz

    try:
        lat = lat or float(os.getenv("HASS_LATITUDE", os.getenv("LATITUDE", "")))
        lon = lon or float(os.getenv("HASS_LONGITUDE", os.getenv("LONGITUDE", "")))
    except ValueError:
        lat = lon = None

    tz = tz or os.getenv("HASS_TIME_ZONE", os.getenv("TZ", "")) or None
    return lat, lon, tz


def resolve_timezone(name: Optional[str]) -> TzInfo:
    """ZoneInfo for a timezone name, UTC when missing or unknown."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone '%s' – falling back to UTC", name)
        return ZoneInfo("UTC")


def resolve_location(
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    timezone: Optional[str] = None,
) -> Tuple[float, float, TzInfo]:
    """Coordinates and timezone from arguments or environment.

    Missing coordinates are logged and replaced with (0, 0) so the curve
    stays defined.
    """
    latitude, longitude, timezone = _auto_location(latitude, longitude, timezone)
    if latitude is None or longitude is None:
        err = GeoUnavailableError("Latitude/longitude not provided and not found in env vars")
        logger.warning(f"{err} – using 0.0/0.0")
        latitude, longitude = 0.0, 0.0
    return latitude, longitude, resolve_timezone(timezone)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_circadian_percentage(
    *,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    timezone: Optional[str] = None,
    current_time: Optional[datetime] = None,
) -> float:
    """Compute the signed curve percentage for a location and time.

    Args:
        latitude: Location latitude
        longitude: Location longitude
        timezone: Timezone string
        current_time: Time to calculate for (defaults to now)

    Returns:
        Percentage from -1 (solar midnight) to +1 (solar noon)
    """
    latitude, longitude, tz = resolve_location(latitude, longitude, timezone)

    if current_time is None:
        now = datetime.now(tz)
    elif current_time.tzinfo is None:
        now = current_time.replace(tzinfo=tz)
    else:
        now = current_time.astimezone(tz)

    calendar = SunEventCalendar.around(now, latitude, longitude)
    percentage = calculate_percentage(calendar, now)
    logger.debug(f"{now.isoformat()} – {calendar} | percentage {percentage:.3f}")
    return percentage
