#!/usr/bin/env python3
"""Test suite for the percentage curve and its brightness/temperature mapping."""

from datetime import date, datetime, timedelta, timezone

import pytest
from zoneinfo import ZoneInfo

from brain import (
    AdaptiveCurve,
    CurveConfig,
    NightCurve,
    SunEvent,
    SunEventCalendar,
    SunEventKind,
    calculate_percentage,
    fit_percentage,
    get_circadian_percentage,
    resolve_timezone,
)
from test_brain_calendar import synthetic_calendar

UTC = timezone.utc


def at(hour: float, day: int = 20) -> datetime:
    return datetime(2024, 3, day, tzinfo=UTC) + timedelta(hours=hour)


class TestCalculatePercentage:
    """Quadratic curve between bracketing events."""

    def setup_method(self):
        self.calendar = synthetic_calendar()

    def test_key_points(self):
        """Test the curve at noon, midnight, sunrise and sunset."""
        assert calculate_percentage(self.calendar, at(12)) == pytest.approx(1.0)
        assert calculate_percentage(self.calendar, at(0)) == pytest.approx(-1.0)
        assert calculate_percentage(self.calendar, at(6)) == pytest.approx(0.0)
        assert calculate_percentage(self.calendar, at(18)) == pytest.approx(0.0)

    @pytest.mark.parametrize("hour,expected", [
        (9, 0.75),    # rising towards noon
        (15, 0.75),   # falling towards sunset
        (21, -0.75),  # falling towards midnight
        (3, -0.75),   # rising towards sunrise
    ])
    def test_between_events(self, hour, expected):
        """Test values halfway between events."""
        assert calculate_percentage(self.calendar, at(hour)) == pytest.approx(expected)

    def test_symmetric_around_noon(self):
        """Test the curve is symmetric around solar noon."""
        before = calculate_percentage(self.calendar, at(10.5))
        after = calculate_percentage(self.calendar, at(13.5))
        assert before == pytest.approx(after)

    def test_stays_in_range(self):
        """Test the curve never leaves [-1, 1]."""
        for minute in range(0, 24 * 60, 7):
            value = calculate_percentage(self.calendar, at(minute / 60))
            assert -1.0 <= value <= 1.0

    def test_continuous_near_sunrise(self):
        """Test the curve crosses zero smoothly at sunrise."""
        eps = timedelta(seconds=1)
        before = calculate_percentage(self.calendar, at(6) - eps)
        after = calculate_percentage(self.calendar, at(6) + eps)
        assert before == pytest.approx(0.0, abs=1e-3)
        assert after == pytest.approx(0.0, abs=1e-3)
        assert before < 0 < after

    def test_works_for_other_days(self):
        """Pure function of the instant – no state carried between calls."""
        first = calculate_percentage(self.calendar, at(9))
        calculate_percentage(self.calendar, at(21, day=19))
        assert calculate_percentage(self.calendar, at(9)) == first


class TestFitPercentage:
    """Both branches agree at sunrise/sunset."""

    def setup_method(self):
        self.midnight = SunEvent(SunEventKind.SOLAR_MIDNIGHT, at(0))
        self.sunrise = SunEvent(SunEventKind.SUNRISE, at(6))
        self.noon = SunEvent(SunEventKind.SOLAR_NOON, at(12))
        self.sunset = SunEvent(SunEventKind.SUNSET, at(18))
        self.next_midnight = SunEvent(SunEventKind.SOLAR_MIDNIGHT, at(24))

    def test_sunrise_boundary(self):
        """Test both parabolas meet at zero at sunrise."""
        approaching = fit_percentage(at(6), self.midnight, self.sunrise)
        departing = fit_percentage(at(6), self.sunrise, self.noon)
        assert approaching == pytest.approx(0.0)
        assert departing == pytest.approx(0.0)

    def test_sunset_boundary(self):
        """Test both parabolas meet at zero at sunset."""
        approaching = fit_percentage(at(18), self.noon, self.sunset)
        departing = fit_percentage(at(18), self.sunset, self.next_midnight)
        assert approaching == pytest.approx(0.0)
        assert departing == pytest.approx(0.0)

    def test_vertex_values(self):
        """Test the vertex values at noon and midnight."""
        assert fit_percentage(at(12), self.sunrise, self.noon) == pytest.approx(1.0)
        assert fit_percentage(at(12), self.noon, self.sunset) == pytest.approx(1.0)
        assert fit_percentage(at(24), self.sunset, self.next_midnight) == pytest.approx(-1.0)

    def test_elapsed_time_across_dst_change(self):
        """Clock change between midnight and sunrise does not skew the curve."""
        amsterdam = ZoneInfo("Europe/Amsterdam")
        midnight = SunEvent(SunEventKind.SOLAR_MIDNIGHT, datetime(2024, 3, 30, 23, 0, tzinfo=UTC).astimezone(amsterdam))
        sunrise = SunEvent(SunEventKind.SUNRISE, datetime(2024, 3, 31, 5, 0, tzinfo=UTC).astimezone(amsterdam))
        # 04:00 CEST, three real hours after 00:00 CET
        t = datetime(2024, 3, 31, 2, 0, tzinfo=UTC).astimezone(amsterdam)

        assert fit_percentage(t, midnight, sunrise) == pytest.approx(-0.75)


class TestCurveConfig:
    """Clamp-at-sunset mapping."""

    def setup_method(self):
        self.config = CurveConfig(
            min_brightness=0.1,
            max_brightness=1.0,
            noon_temperature=0.0,
            sunset_temperature=1.0,
        )

    def test_brightness_day(self):
        """Test brightness scales between min and max during the day."""
        assert self.config.brightness_for(1.0) == pytest.approx(1.0)
        assert self.config.brightness_for(0.5) == pytest.approx(0.55)

    def test_brightness_night_uses_minimum(self):
        """Test brightness is the minimum at and after sunset."""
        assert self.config.brightness_for(0.0) == pytest.approx(0.1)
        assert self.config.brightness_for(-0.8) == pytest.approx(0.1)

    def test_temperature_day(self):
        """Test temperature moves from sunset to noon value during the day."""
        assert self.config.temperature_for(1.0) == pytest.approx(0.0)
        assert self.config.temperature_for(0.25) == pytest.approx(0.75)

    def test_temperature_night_uses_sunset(self):
        """Test temperature is the sunset value at night."""
        assert self.config.temperature_for(-1.0) == pytest.approx(1.0)


class TestCurves:
    """AdaptiveCurve and NightCurve value sources."""

    def test_adaptive_curve_noon_is_peak(self):
        """Test AdaptiveCurve gives the noon values at solar noon."""
        curve = AdaptiveCurve(52.37, 4.90, UTC, CurveConfig(0.2, 0.9, 0.1, 0.8))
        calendar = SunEventCalendar.compute(date(2024, 6, 21), 52.37, 4.90, UTC)
        noon = next(e.timestamp for e in calendar if e.kind is SunEventKind.SOLAR_NOON
                    and e.timestamp.date() == date(2024, 6, 21))

        assert curve.percentage_at(noon) == pytest.approx(1.0)
        assert curve.brightness_at(noon) == pytest.approx(0.9)
        assert curve.temperature_at(noon) == pytest.approx(0.1)

    def test_adaptive_curve_night(self):
        """Test AdaptiveCurve gives the night-side values late in the evening."""
        curve = AdaptiveCurve(52.37, 4.90, UTC, CurveConfig(0.2, 0.9, 0.1, 0.8))
        when = datetime(2024, 6, 21, 23, 45, tzinfo=UTC)
        assert curve.percentage_at(when) < 0
        assert curve.brightness_at(when) == pytest.approx(0.2)
        assert curve.temperature_at(when) == pytest.approx(0.8)

    def test_adaptive_curve_caches_calendar_per_day(self):
        """Test calendars are reused within one local date."""
        curve = AdaptiveCurve(52.37, 4.90, UTC)
        morning = datetime(2024, 6, 21, 8, 0, tzinfo=UTC)
        evening = datetime(2024, 6, 21, 19, 0, tzinfo=UTC)
        assert curve.calendar_for(morning) is curve.calendar_for(evening)

    def test_night_curve_is_constant(self):
        """Test NightCurve ignores the instant."""
        curve = NightCurve(0.05, 0.95)
        assert curve.brightness_at(at(3)) == 0.05
        assert curve.temperature_at(at(15)) == 0.95


class TestLocation:
    """Public API and location fallbacks."""

    def test_missing_location_does_not_raise(self, monkeypatch):
        """Test a missing location still yields a defined value."""
        for k in ["HASS_LATITUDE", "HASS_LONGITUDE", "LATITUDE", "LONGITUDE", "HASS_TIME_ZONE", "TZ"]:
            monkeypatch.delenv(k, raising=False)

        value = get_circadian_percentage(current_time=datetime(2024, 1, 1, 12, 0, tzinfo=UTC))
        assert -1.0 <= value <= 1.0

    def test_uses_env_vars(self, monkeypatch):
        """Test the location is read from HASS_* env vars."""
        monkeypatch.setenv("HASS_LATITUDE", "37.7749")
        monkeypatch.setenv("HASS_LONGITUDE", "-122.4194")
        monkeypatch.setenv("HASS_TIME_ZONE", "UTC")

        # 20:00 UTC is around midday in San Francisco
        value = get_circadian_percentage(current_time=datetime(2024, 6, 21, 20, 0, tzinfo=UTC))
        assert value > 0.9

    def test_unknown_timezone_falls_back_to_utc(self):
        """Test unknown or missing timezones fall back to UTC."""
        assert resolve_timezone("Not/AZone").key == "UTC"
        assert resolve_timezone(None).key == "UTC"
