#!/usr/bin/env python3
"""Timed schedules – parsing, validation and interpolation.

A schedule maps times of day to brightness/temperature control values.
Its wire form is a JSON object, keys listed in ascending time order:

    {"07:00": {"brightness": "0.2", "temperature": "circadian"},
     "19:00": {"brightness": "0.8", "temperature": "0.5"}}

A value of "circadian" delegates to the sun curve (or the night values in
night mode). Between two control points the output holds the earlier
point's value and fades into the next one during the last
``fade_duration`` minutes before it.
"""

import json
import logging
import math
import re
from bisect import bisect_left
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from exceptions import DegenerateScheduleError, ScheduleValidationError
from models import OUTPUT_PRECISION, ZoneOutput

logger = logging.getLogger(__name__)

# Wire literal for "compute from the curve"
DELEGATE = "circadian"

MINUTES_PER_DAY = 24 * 60

# Minimum number of control points in a non-empty schedule
MIN_CONTROL_POINTS = 2

TIME_PATTERN = re.compile(r"^([0-9]|0[0-9]|1[0-9]|2[0-3]):[0-5][0-9]$")

ControlValue = Union[float, str]


@dataclass(frozen=True, order=True)
class TimeOfDay:
    """Hours and minutes, independent of the calendar day."""
    hours: int
    minutes: int

    @property
    def minute_of_day(self) -> int:
        return self.hours * 60 + self.minutes

    @classmethod
    def parse(cls, text: str) -> "TimeOfDay":
        """Parse ``H:MM`` / ``HH:MM`` (24h)."""
        if not isinstance(text, str) or not TIME_PATTERN.fullmatch(text):
            raise ValueError(f"Invalid time of day: {text!r}")
        hours, minutes = text.split(":")
        return cls(int(hours), int(minutes))

    @classmethod
    def from_datetime(cls, when: datetime) -> "TimeOfDay":
        return cls(when.hour, when.minute)

    def __str__(self) -> str:
        return f"{self.hours:02d}:{self.minutes:02d}"


@dataclass(frozen=True)
class ControlPoint:
    """A schedule anchor: time of day with brightness and temperature values."""
    time: TimeOfDay
    brightness: ControlValue
    temperature: ControlValue

    def value(self, field: str) -> ControlValue:
        return getattr(self, field)


def is_delegate(value: ControlValue) -> bool:
    return value == DELEGATE


class Schedule:
    """Control points sorted strictly ascending by time of day."""

    def __init__(self, points: Sequence[ControlPoint] = ()) -> None:
        self._points: Tuple[ControlPoint, ...] = tuple(points)
        self._keys: List[int] = [p.time.minute_of_day for p in self._points]

    @property
    def points(self) -> Tuple[ControlPoint, ...]:
        return self._points

    @property
    def is_empty(self) -> bool:
        return not self._points

    @property
    def is_usable(self) -> bool:
        """Whether there are enough points to interpolate."""
        return len(self._points) >= MIN_CONTROL_POINTS

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[ControlPoint]:
        return iter(self._points)

    def __getitem__(self, index: int) -> ControlPoint:
        return self._points[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Schedule):
            return NotImplemented
        return self._points == other._points

    def __repr__(self) -> str:
        return f"Schedule({', '.join(str(p.time) for p in self._points)})"

    def insertion_index(self, time: TimeOfDay) -> int:
        """Binary search for where time sits among the control points."""
        return bisect_left(self._keys, time.minute_of_day)

    def to_wire(self) -> str:
        """Encode back to the JSON wire form."""
        if not self._points:
            return ""
        return json.dumps({
            str(p.time): {
                "brightness": _format_value(p.brightness),
                "temperature": _format_value(p.temperature),
            }
            for p in self._points
        })


EMPTY_SCHEDULE = Schedule()


# ---------------------------------------------------------------------------
# Parsing / validation
# ---------------------------------------------------------------------------

class _Pairs(list):
    """JSON object as ordered (key, value) pairs, duplicates kept."""


def _format_value(value: ControlValue) -> str:
    if is_delegate(value):
        return DELEGATE
    return repr(float(value))


def _parse_value(raw: Any, field: str, time_key: str) -> ControlValue:
    if raw == DELEGATE:
        return DELEGATE
    if isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
        raise ScheduleValidationError(f"{time_key}: {field} must be a number or \"{DELEGATE}\"")
    try:
        value = float(raw)
    except ValueError:
        raise ScheduleValidationError(f"{time_key}: {field} value {raw!r} is not a number")
    if not math.isfinite(value) or value < 0 or value > 1:
        raise ScheduleValidationError(f"{time_key}: {field} value {raw!r} must be between 0 and 1")
    return value


def parse_schedule(text: Optional[str]) -> Schedule:
    """Parse and validate schedule wire text.

    Args:
        text: JSON object text, or "" / None for a disabled schedule

    Returns:
        The parsed schedule (empty when disabled)

    Raises:
        ScheduleValidationError: if any validation rule fails
    """
    if text is None or text == "":
        return EMPTY_SCHEDULE

    try:
        parsed = json.loads(text, object_pairs_hook=_Pairs)
    except (json.JSONDecodeError, TypeError) as e:
        raise ScheduleValidationError(f"Schedule is not valid JSON: {e}")

    if not isinstance(parsed, _Pairs):
        raise ScheduleValidationError("Schedule must be a JSON object of times")
    if len(parsed) < MIN_CONTROL_POINTS:
        raise ScheduleValidationError(f"Schedule needs at least {MIN_CONTROL_POINTS} times")

    points: List[ControlPoint] = []
    last_minute = -1
    for time_key, raw_value in parsed:
        try:
            time = TimeOfDay.parse(time_key)
        except ValueError:
            raise ScheduleValidationError(f"Time value {time_key} is not valid")

        if time.minute_of_day <= last_minute:
            raise ScheduleValidationError(f"Time value {time_key} is not after the previous time")
        last_minute = time.minute_of_day

        if not isinstance(raw_value, _Pairs):
            raise ScheduleValidationError(f"{time_key}: value must be an object with brightness and temperature")
        value: Dict[str, Any] = dict(raw_value)
        for field in ("brightness", "temperature"):
            if field not in value:
                raise ScheduleValidationError(f"{time_key}: missing {field}")

        points.append(ControlPoint(
            time=time,
            brightness=_parse_value(value["brightness"], "brightness", time_key),
            temperature=_parse_value(value["temperature"], "temperature", time_key),
        ))

    return Schedule(points)


def validate_schedule(text: Optional[str]) -> Optional[str]:
    """Return None when text is a valid schedule, else the error message."""
    try:
        parse_schedule(text)
    except ScheduleValidationError as e:
        logger.debug(f"Schedule rejected: {e.message}")
        return e.message
    return None


# ---------------------------------------------------------------------------
# Interpolation
# ---------------------------------------------------------------------------

def _forward_minutes(start: TimeOfDay, end: TimeOfDay) -> int:
    """Minutes from start to end, wrapping through midnight."""
    diff = end.minute_of_day - start.minute_of_day
    if diff < 0:
        diff += MINUTES_PER_DAY
    return diff


def find_prev(schedule: Schedule, time: TimeOfDay) -> ControlPoint:
    """Control point in effect at time (exact match counts), wrapping to yesterday's last."""
    index = schedule.insertion_index(time)
    if index < len(schedule) and schedule[index].time == time:
        return schedule[index]
    index -= 1
    if index >= 0:
        return schedule[index]
    return schedule[len(schedule) - 1]


def find_next(schedule: Schedule, time: TimeOfDay) -> ControlPoint:
    """First control point strictly after time, wrapping to tomorrow's first."""
    index = schedule.insertion_index(time)
    if index < len(schedule) and schedule[index].time == time:
        index += 1
    if index >= len(schedule):
        return schedule[0]
    return schedule[index]


def calculate_fade(
    prev_point: ControlPoint,
    next_point: ControlPoint,
    time: TimeOfDay,
    fade_duration: int,
) -> float:
    """Fraction (0-1) of the way through the fade into next_point.

    The fade window is clamped to the gap between the two points; a zero
    window makes the change an instant step at next_point's time.
    """
    gap = _forward_minutes(prev_point.time, next_point.time)
    window = min(max(fade_duration, 0), gap)
    remaining = _forward_minutes(time, next_point.time)

    if remaining > window:
        return 0.0
    if window == 0:
        return 1.0
    return (window - remaining) / window


def _resolve_field(
    field: str,
    prev_point: ControlPoint,
    next_point: ControlPoint,
    now: datetime,
    next_anchor: datetime,
    fade: float,
    curve,
) -> float:
    curve_at = getattr(curve, f"{field}_at")
    prev_value = prev_point.value(field)
    next_value = next_point.value(field)

    if is_delegate(prev_value) and is_delegate(next_value):
        return curve_at(now)

    prev_resolved = curve_at(now) if is_delegate(prev_value) else float(prev_value)
    next_resolved = curve_at(next_anchor) if is_delegate(next_value) else float(next_value)
    return prev_resolved * (1 - fade) + next_resolved * fade


def resolve_output(
    schedule: Schedule,
    now: datetime,
    fade_duration: int,
    curve,
) -> ZoneOutput:
    """Interpolate the schedule at now.

    Delegated values come from ``curve`` (any object with ``brightness_at``
    and ``temperature_at`` taking a datetime). The next point's delegated
    value is evaluated at that point's upcoming time of day, not at now.

    Args:
        schedule: Schedule with at least two control points
        now: Current local time (the zone's timezone)
        fade_duration: Fade window in minutes
        curve: Source for delegated values

    Returns:
        Output rounded to OUTPUT_PRECISION decimals

    Raises:
        DegenerateScheduleError: if the schedule has fewer than two points
    """
    if not schedule.is_usable:
        raise DegenerateScheduleError(f"Schedule has {len(schedule)} point(s), need {MIN_CONTROL_POINTS}")

    time = TimeOfDay.from_datetime(now)
    prev_point = find_prev(schedule, time)
    next_point = find_next(schedule, time)
    fade = calculate_fade(prev_point, next_point, time, fade_duration)

    next_anchor = now.replace(second=0, microsecond=0) + timedelta(
        minutes=_forward_minutes(time, next_point.time)
    )

    brightness = _resolve_field("brightness", prev_point, next_point, now, next_anchor, fade, curve)
    temperature = _resolve_field("temperature", prev_point, next_point, now, next_anchor, fade, curve)

    logger.debug(
        f"{time} between {prev_point.time} and {next_point.time}, fade {fade:.2f} "
        f"→ {brightness:.3f}/{temperature:.3f}"
    )
    return ZoneOutput(brightness, temperature).rounded(OUTPUT_PRECISION)
