#!/usr/bin/env python3
"""Test suite for the sun event calendar in brain.py."""

from datetime import date, datetime, timedelta, timezone

import pytest
from zoneinfo import ZoneInfo

from brain import SunEvent, SunEventCalendar, SunEventKind

UTC = timezone.utc

NEXT_KIND = {
    SunEventKind.SUNRISE: SunEventKind.SOLAR_NOON,
    SunEventKind.SOLAR_NOON: SunEventKind.SUNSET,
    SunEventKind.SUNSET: SunEventKind.SOLAR_MIDNIGHT,
    SunEventKind.SOLAR_MIDNIGHT: SunEventKind.SUNRISE,
}


def synthetic_calendar(day: date = date(2024, 3, 20)) -> SunEventCalendar:
    """Equinox-like calendar: midnight 00:00, sunrise 06:00, noon 12:00, sunset 18:00 UTC."""
    events = []
    for offset in (-1, 0, 1):
        base = datetime(day.year, day.month, day.day, tzinfo=UTC) + timedelta(days=offset)
        events += [
            SunEvent(SunEventKind.SUNRISE, base + timedelta(hours=6)),
            SunEvent(SunEventKind.SOLAR_NOON, base + timedelta(hours=12)),
            SunEvent(SunEventKind.SUNSET, base + timedelta(hours=18)),
            SunEvent(SunEventKind.SOLAR_MIDNIGHT, base),
        ]
    return SunEventCalendar(events)


def assert_well_formed(calendar: SunEventCalendar):
    events = calendar.events
    assert len(events) == 12
    for earlier, later in zip(events, events[1:]):
        assert earlier.timestamp < later.timestamp
        assert NEXT_KIND[earlier.kind] == later.kind


class TestCompute:
    """Calendars computed with astral."""

    def test_mid_latitude_summer(self):
        """Test a mid-latitude summer calendar is well formed."""
        calendar = SunEventCalendar.compute(date(2024, 6, 21), 52.37, 4.90, UTC)
        assert_well_formed(calendar)

    def test_mid_latitude_winter(self):
        """Test a mid-latitude winter calendar is well formed."""
        calendar = SunEventCalendar.compute(date(2024, 12, 21), 52.37, 4.90, UTC)
        assert_well_formed(calendar)

    def test_southern_hemisphere(self):
        """Test a southern location evaluated in UTC keeps the event cycle."""
        calendar = SunEventCalendar.compute(date(2024, 6, 21), -33.87, 151.21, UTC)
        assert_well_formed(calendar)

    def test_centered_on_given_date(self):
        """Test the calendar covers the day before, of and after the date."""
        calendar = SunEventCalendar.compute(date(2024, 6, 21), 52.37, 4.90, UTC)
        noons = [e.timestamp.date() for e in calendar if e.kind is SunEventKind.SOLAR_NOON]
        assert noons == [date(2024, 6, 20), date(2024, 6, 21), date(2024, 6, 22)]

    def test_midnight_is_twelve_hours_before_noon(self):
        """Test solar midnight is placed 12 hours before solar noon."""
        calendar = SunEventCalendar.compute(date(2024, 6, 21), 52.37, 4.90, UTC)
        noons = [e.timestamp for e in calendar if e.kind is SunEventKind.SOLAR_NOON]
        midnights = [e.timestamp for e in calendar if e.kind is SunEventKind.SOLAR_MIDNIGHT]
        assert [n - timedelta(hours=12) for n in noons] == midnights

    def test_midnight_uses_real_hours_on_dst_day(self):
        """Solar midnight is 12 elapsed hours before noon when clocks spring forward."""
        calendar = SunEventCalendar.compute(date(2024, 3, 31), 52.37, 4.90, ZoneInfo("Europe/Amsterdam"))
        assert_well_formed(calendar)

        noons = [e.timestamp for e in calendar if e.kind is SunEventKind.SOLAR_NOON]
        midnights = [e.timestamp for e in calendar if e.kind is SunEventKind.SOLAR_MIDNIGHT]
        for noon, midnight in zip(noons, midnights):
            assert noon.astimezone(UTC) - midnight.astimezone(UTC) == timedelta(hours=12)

    def test_polar_day_does_not_crash(self):
        """Midnight sun: no sunrise/sunset anywhere near, fallback around noon."""
        calendar = SunEventCalendar.compute(date(2024, 6, 21), 78.22, 15.65, UTC)
        assert_well_formed(calendar)

        events = calendar.events
        for i, event in enumerate(events):
            if event.kind is SunEventKind.SOLAR_NOON:
                assert events[i + 1].timestamp - event.timestamp == timedelta(hours=6)

    def test_polar_night_does_not_crash(self):
        """Test polar night falls back instead of raising."""
        calendar = SunEventCalendar.compute(date(2024, 12, 21), 78.22, 15.65, UTC)
        assert_well_formed(calendar)

    def test_around_uses_local_date(self):
        """Test around() brackets the given instant."""
        when = datetime(2024, 6, 21, 23, 30, tzinfo=UTC)
        calendar = SunEventCalendar.around(when, 52.37, 4.90)
        assert calendar.events[0].timestamp < when < calendar.events[-1].timestamp


class TestQueries:
    """next/last/exact event lookups."""

    def setup_method(self):
        self.calendar = synthetic_calendar()

    def test_next_event_after(self):
        """Test the next event after a morning instant is solar noon."""
        t = datetime(2024, 3, 20, 9, 0, tzinfo=UTC)
        event = self.calendar.next_event_after(t)
        assert event.kind is SunEventKind.SOLAR_NOON
        assert event.timestamp == datetime(2024, 3, 20, 12, 0, tzinfo=UTC)

    def test_last_event_before(self):
        """Test the last event before a morning instant is sunrise."""
        t = datetime(2024, 3, 20, 9, 0, tzinfo=UTC)
        event = self.calendar.last_event_before(t)
        assert event.kind is SunEventKind.SUNRISE

    def test_queries_are_strict(self):
        """Test an event at exactly t is neither next nor last."""
        noon = datetime(2024, 3, 20, 12, 0, tzinfo=UTC)
        assert self.calendar.next_event_after(noon).kind is SunEventKind.SUNSET
        assert self.calendar.last_event_before(noon).kind is SunEventKind.SUNRISE

    def test_event_at(self):
        """Test exact-match lookup."""
        noon = datetime(2024, 3, 20, 12, 0, tzinfo=UTC)
        assert self.calendar.event_at(noon).kind is SunEventKind.SOLAR_NOON
        assert self.calendar.event_at(noon + timedelta(seconds=1)) is None

    def test_query_outside_window_raises(self):
        """Test queries outside the computed window raise ValueError."""
        with pytest.raises(ValueError):
            self.calendar.next_event_after(datetime(2024, 3, 25, tzinfo=UTC))
        with pytest.raises(ValueError):
            self.calendar.last_event_before(datetime(2024, 3, 15, tzinfo=UTC))

    def test_queries_do_not_mutate(self):
        """Test repeated queries leave the calendar unchanged."""
        before = self.calendar.events
        t = datetime(2024, 3, 20, 9, 0, tzinfo=UTC)
        self.calendar.last_event_before(t)
        self.calendar.last_event_before(t)
        assert self.calendar.events == before
        assert self.calendar.last_event_before(t).kind is SunEventKind.SUNRISE

    def test_unsorted_input_is_sorted(self):
        """Test events are sorted by timestamp on construction."""
        reversed_calendar = SunEventCalendar(list(reversed(self.calendar.events)))
        assert reversed_calendar.events == self.calendar.events

    def test_str(self):
        """Test string form."""
        assert str(self.calendar) == "12 events"
