#!/usr/bin/env python3
"""Circadian zone – mode state machine and output application.

A zone owns a mode (adaptive / night / manual), optional adaptive and night
schedules and the last output it applied. On every recompute it picks the
value source for its mode, resolves brightness/temperature and writes only
the values that changed, firing a values-changed trigger when anything did.

Collaborators are injected:

- settings_store: ``SettingsStore`` (see settings.py)
- geo_source: object with ``get_location() -> (lat, lon, tz_name)``
- capability_sink: async ``set_brightness(zone_id, value)``,
  ``set_temperature(zone_id, value)`` and ``set_mode(zone_id, mode)``
- trigger_sink: async ``trigger_values_changed(zone_id, tokens)``
- clock: callable returning an aware datetime
"""

import dataclasses
import logging
from datetime import datetime, timezone as dt_timezone
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

import zone_state
from brain import AdaptiveCurve, NightCurve, resolve_location
from exceptions import (
    ConfigurationError,
    DegenerateScheduleError,
    GeoUnavailableError,
    ScheduleValidationError,
    TriggerDispatchError,
)
from models import OUTPUT_PRECISION, Mode, ZoneOutput
from timing import EMPTY_SCHEDULE, Schedule, parse_schedule, resolve_output
from settings import SettingsStore, ZoneSettings, normalize_keys

logger = logging.getLogger(__name__)

SCHEDULE_KEYS = ("timing", "night_timing")


def utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)


class StaticGeoSource:
    """Fixed coordinates, falling back to HA-style env vars."""

    def __init__(
        self,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        timezone: Optional[str] = None,
    ) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self.timezone = timezone

    def get_location(self) -> Tuple[Optional[float], Optional[float], Optional[str]]:
        return self.latitude, self.longitude, self.timezone


class CircadianZone:
    """One lighting zone driven by the sun curve and/or a timed schedule."""

    def __init__(
        self,
        zone_id: str,
        settings_store: SettingsStore,
        geo_source,
        capability_sink,
        trigger_sink,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.zone_id = zone_id
        self.settings_store = settings_store
        self.geo_source = geo_source
        self.capability_sink = capability_sink
        self.trigger_sink = trigger_sink
        self.clock = clock

        self.settings: ZoneSettings = settings_store.get_zone(zone_id)
        self.timing = self._load_schedule("timing")
        self.night_timing = self._load_schedule("night_timing")

        # Initial values come from the persisted capability store
        self.mode: Mode = zone_state.get_mode(zone_id)
        self.output: Optional[ZoneOutput] = zone_state.get_output(zone_id)

        logger.info(
            f"[Zone {zone_id}] initialized in {self.mode.value} mode "
            f"({len(self.timing)} adaptive / {len(self.night_timing)} night control points)"
        )

    def _load_schedule(self, key: str) -> Schedule:
        text = getattr(self.settings, key)
        try:
            return parse_schedule(text)
        except ScheduleValidationError as e:
            logger.error(f"[Zone {self.zone_id}] stored {key} is invalid, ignoring it: {e.message}")
            return EMPTY_SCHEDULE

    # ------------------------------------------------------------------
    # Value sources
    # ------------------------------------------------------------------

    def schedule_for(self, mode: Mode) -> Schedule:
        if mode is Mode.ADAPTIVE:
            return self.timing
        if mode is Mode.NIGHT:
            return self.night_timing
        return EMPTY_SCHEDULE

    def _location(self):
        try:
            latitude, longitude, timezone = self.geo_source.get_location()
        except GeoUnavailableError as e:
            logger.warning(f"[Zone {self.zone_id}] {e}")
            latitude = longitude = timezone = None
        return resolve_location(latitude, longitude, timezone)

    def curve_for(self, mode: Mode, latitude: float, longitude: float, tz):
        """Source for curve-derived values in a mode."""
        if mode is Mode.NIGHT:
            return NightCurve(self.settings.night_brightness, self.settings.night_temperature)
        return AdaptiveCurve(latitude, longitude, tz, self.settings.curve_config())

    def compute_output(self, now: datetime, mode: Optional[Mode] = None) -> ZoneOutput:
        """Resolve the output a mode produces at now, without applying it.

        Args:
            now: Aware datetime to evaluate at
            mode: Mode to evaluate (defaults to the current one; manual is
                evaluated as adaptive)

        Returns:
            Output rounded to OUTPUT_PRECISION decimals
        """
        mode = mode or self.mode
        if mode is Mode.MANUAL:
            mode = Mode.ADAPTIVE

        latitude, longitude, tz = self._location()
        local_now = now.astimezone(tz)
        curve = self.curve_for(mode, latitude, longitude, tz)
        schedule = self.schedule_for(mode)

        if not schedule.is_empty:
            try:
                return resolve_output(schedule, local_now, self.settings.fade_duration, curve)
            except DegenerateScheduleError as e:
                logger.warning(f"[Zone {self.zone_id}] {e} – using {mode.value} curve")

        return ZoneOutput(curve.brightness_at(local_now), curve.temperature_at(local_now)).rounded(OUTPUT_PRECISION)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def refresh(self) -> Optional[ZoneOutput]:
        """Recompute and apply the zone output; manual mode is left alone."""
        if self.mode is Mode.MANUAL:
            logger.debug(f"[Zone {self.zone_id}] manual mode, skipping refresh")
            return None

        output = self.compute_output(self.clock())
        await self._apply(output)
        return output

    async def set_mode(self, mode: Union[Mode, str], from_capability: bool = False) -> bool:
        """Switch mode from an external command.

        Args:
            mode: New mode (or its string value)
            from_capability: True when the mode capability itself was changed,
                so it already shows the new mode

        Returns:
            True if the mode changed
        """
        mode = Mode(mode) if isinstance(mode, str) else mode
        if mode is self.mode:
            logger.debug(f"[Zone {self.zone_id}] already in {mode.value} mode")
            return False

        logger.info(f"[Zone {self.zone_id}] mode {self.mode.value} → {mode.value}")
        self.mode = mode
        zone_state.set_mode(self.zone_id, mode)
        if not from_capability:
            await self.capability_sink.set_mode(self.zone_id, mode)

        if mode is not Mode.MANUAL:
            await self.refresh()
        return True

    async def override_brightness(self, value: float) -> None:
        await self._override("brightness", value)

    async def override_temperature(self, value: float) -> None:
        await self._override("temperature", value)

    async def _override(self, field: str, value: float) -> None:
        value = round(max(0.0, min(1.0, float(value))), OUTPUT_PRECISION)
        baseline = self.output or self.compute_output(self.clock())

        if self.mode is not Mode.MANUAL:
            logger.info(f"[Zone {self.zone_id}] {field} overridden to {value}, switching to manual")
            self.mode = Mode.MANUAL
            zone_state.set_mode(self.zone_id, Mode.MANUAL)
            await self.capability_sink.set_mode(self.zone_id, Mode.MANUAL)

        output = dataclasses.replace(baseline, **{field: value})
        if output == self.output:
            return
        self._remember(output)
        await self._fire_trigger(output)

    # ------------------------------------------------------------------
    # Output application
    # ------------------------------------------------------------------

    def _remember(self, output: ZoneOutput) -> None:
        self.output = output
        zone_state.set_output(self.zone_id, output)

    async def _apply(self, output: ZoneOutput) -> bool:
        previous = self.output
        changed = False

        if previous is None or output.brightness != previous.brightness:
            await self.capability_sink.set_brightness(self.zone_id, output.brightness)
            changed = True

        if previous is None or output.temperature != previous.temperature:
            await self.capability_sink.set_temperature(self.zone_id, output.temperature)
            changed = True

        if not changed:
            logger.debug(f"[Zone {self.zone_id}] no change from {previous}")
            return False

        logger.info(f"[Zone {self.zone_id}] brightness {output.brightness}, temperature {output.temperature}")
        self._remember(output)
        await self._fire_trigger(output)
        return True

    async def _fire_trigger(self, output: ZoneOutput) -> None:
        try:
            await self.trigger_sink.trigger_values_changed(self.zone_id, output.as_tokens())
        except Exception as e:
            err = TriggerDispatchError(f"values-changed trigger failed: {e}")
            logger.error(f"[Zone {self.zone_id}] {err}")

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def apply_settings(self, new_settings: Dict[str, Any], changed_keys: Iterable[str]) -> Optional[str]:
        """Validate and take over changed settings.

        Nothing is applied unless every changed value is valid.

        Args:
            new_settings: Full or partial settings dict
            changed_keys: Keys of new_settings that changed

        Returns:
            None on success, otherwise a user-facing error message
        """
        changed = normalize_keys({k: new_settings[k] for k in changed_keys if k in new_settings})

        schedules: Dict[str, Schedule] = {}
        for key in SCHEDULE_KEYS:
            if key in changed:
                try:
                    schedules[key] = parse_schedule(changed[key])
                except ScheduleValidationError as e:
                    logger.warning(f"[Zone {self.zone_id}] rejected {key}: {e.message}")
                    return e.message

        merged = dataclasses.asdict(self.settings)
        merged.pop("zone_id")
        merged.update(changed)
        try:
            candidate = ZoneSettings.from_dict(self.zone_id, merged)
        except ConfigurationError as e:
            logger.warning(f"[Zone {self.zone_id}] rejected settings: {e}")
            return str(e)

        self.settings = candidate
        self.timing = schedules.get("timing", self.timing)
        self.night_timing = schedules.get("night_timing", self.night_timing)
        self.settings_store.replace_zone(candidate)
        logger.info(f"[Zone {self.zone_id}] settings updated: {', '.join(sorted(changed)) or 'none'}")
        return None

    def describe(self) -> Dict[str, Any]:
        """Diagnostic snapshot of the zone."""
        return {
            "zone_id": self.zone_id,
            "mode": self.mode.value,
            "fade_duration": self.settings.fade_duration,
            "timing_points": len(self.timing),
            "night_timing_points": len(self.night_timing),
            "brightness": self.output.brightness if self.output else None,
            "temperature": self.output.temperature if self.output else None,
        }
