#!/usr/bin/env python3
"""Zone configuration management.

Configuration is merged from options.json (add-on options) and zones.json
(per-zone settings) in the data directory, read lazily and cached until a
settings-change notification invalidates the cache.

Example zones.json:

    {
      "zones": {
        "living_room": {
          "fade_duration": 30,
          "timing": "{\\"07:00\\": {...}, \\"22:00\\": {...}}",
          "min_brightness": 0.1
        }
      }
    }
"""

import dataclasses
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from brain import (
    CurveConfig,
    DEFAULT_MAX_BRIGHTNESS,
    DEFAULT_MIN_BRIGHTNESS,
    DEFAULT_NIGHT_BRIGHTNESS,
    DEFAULT_NIGHT_TEMPERATURE,
    DEFAULT_NOON_TEMPERATURE,
    DEFAULT_SUNSET_TEMPERATURE,
)
from exceptions import ConfigurationError
from zone_state import get_data_directory

logger = logging.getLogger(__name__)

CONFIG_FILES = ("options.json", "zones.json")

DEFAULT_FADE_DURATION = 30  # minutes
DEFAULT_UPDATE_INTERVAL = int(os.getenv("UPDATE_INTERVAL", "60"))  # seconds

FRACTION_FIELDS = (
    "min_brightness",
    "max_brightness",
    "noon_temperature",
    "sunset_temperature",
    "night_brightness",
    "night_temperature",
)


def _camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    s1 = re.sub("(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub("([a-z0-9])([A-Z])", r"\1_\2", s1).lower()


def normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Settings dict with camelCase keys converted to snake_case."""
    return {_camel_to_snake(k): v for k, v in data.items()}


@dataclass
class ZoneSettings:
    """Configuration for a single lighting zone."""

    zone_id: str
    name: str = ""
    fade_duration: int = DEFAULT_FADE_DURATION  # Minutes before a control point the fade starts
    timing: str = ""  # Adaptive schedule wire text ("" = disabled)
    night_timing: str = ""  # Night schedule wire text ("" = disabled)
    min_brightness: float = DEFAULT_MIN_BRIGHTNESS
    max_brightness: float = DEFAULT_MAX_BRIGHTNESS
    noon_temperature: float = DEFAULT_NOON_TEMPERATURE
    sunset_temperature: float = DEFAULT_SUNSET_TEMPERATURE
    night_brightness: float = DEFAULT_NIGHT_BRIGHTNESS
    night_temperature: float = DEFAULT_NIGHT_TEMPERATURE
    # Home Assistant helpers mirroring the zone's capabilities
    brightness_entity: Optional[str] = None
    temperature_entity: Optional[str] = None
    mode_entity: Optional[str] = None

    @classmethod
    def from_dict(cls, zone_id: str, data: Dict[str, Any]) -> "ZoneSettings":
        """Create from dictionary."""
        converted = normalize_keys(data)
        known = {f.name for f in dataclasses.fields(cls)}

        unknown = sorted(set(converted) - known)
        if unknown:
            logger.warning(f"[Zone {zone_id}] ignoring unknown settings: {', '.join(unknown)}")

        kwargs = {k: v for k, v in converted.items() if k in known}
        kwargs["zone_id"] = zone_id

        try:
            if "fade_duration" in kwargs:
                kwargs["fade_duration"] = int(kwargs["fade_duration"])
            for key in FRACTION_FIELDS:
                if key in kwargs:
                    kwargs[key] = float(kwargs[key])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Zone '{zone_id}' has a non-numeric setting: {e}")

        for key in ("timing", "night_timing"):
            if kwargs.get(key) is None:
                kwargs[key] = ""

        settings = cls(**kwargs)
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise ConfigurationError for out-of-range values."""
        if self.fade_duration < 0:
            raise ConfigurationError(f"Zone '{self.zone_id}': fade_duration must be >= 0")
        for key in FRACTION_FIELDS:
            value = getattr(self, key)
            if not 0 <= value <= 1:
                raise ConfigurationError(f"Zone '{self.zone_id}': {key} must be between 0 and 1, got {value}")

    def curve_config(self) -> CurveConfig:
        return CurveConfig(
            min_brightness=self.min_brightness,
            max_brightness=self.max_brightness,
            noon_temperature=self.noon_temperature,
            sunset_temperature=self.sunset_temperature,
        )


@dataclass
class GlobalSettings:
    """Location and scheduling options shared by all zones."""

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    update_interval: int = DEFAULT_UPDATE_INTERVAL  # seconds between periodic recomputes

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlobalSettings":
        lat = data.get("latitude")
        lon = data.get("longitude")
        return cls(
            latitude=float(lat) if lat is not None else None,
            longitude=float(lon) if lon is not None else None,
            timezone=data.get("timezone") or None,
            update_interval=int(data.get("update_interval", DEFAULT_UPDATE_INTERVAL)),
        )


def load_config_from_files(data_dir: Optional[str] = None) -> Dict[str, Any]:
    """Load and merge config from files.

    Args:
        data_dir: Optional data directory path. If None, auto-detected.

    Returns:
        The merged config dict
    """
    if data_dir is None:
        data_dir = get_data_directory()

    config: Dict[str, Any] = {
        "update_interval": DEFAULT_UPDATE_INTERVAL,
        "zones": {},
    }

    for filename in CONFIG_FILES:
        path = os.path.join(data_dir, filename)
        if not os.path.exists(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                part = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"JSON error reading {path}: {e}")
            continue
        except OSError as e:
            logger.debug(f"Could not load config from {path}: {e}")
            continue
        if isinstance(part, dict):
            zones = part.pop("zones", None)
            config.update(part)
            if isinstance(zones, dict):
                config["zones"].update(zones)

    logger.debug(f"Loaded config with {len(config['zones'])} zone(s) from {data_dir}")
    return config


class SettingsStore:
    """Lazily loaded, cached view of the configuration."""

    def __init__(
        self,
        loader: Callable[[], Dict[str, Any]] = load_config_from_files,
    ) -> None:
        self._loader = loader
        self._config: Optional[Dict[str, Any]] = None
        self._zones: Dict[str, ZoneSettings] = {}

    def get_config(self) -> Dict[str, Any]:
        if self._config is None:
            self._config = self._loader()
        return self._config

    def get_global(self) -> GlobalSettings:
        return GlobalSettings.from_dict(self.get_config())

    def zone_ids(self) -> List[str]:
        return list(self.get_config().get("zones", {}).keys())

    def get_zone(self, zone_id: str) -> ZoneSettings:
        """Settings for a zone (defaults when the zone is not configured)."""
        if zone_id not in self._zones:
            raw = self.get_config().get("zones", {}).get(zone_id, {})
            self._zones[zone_id] = ZoneSettings.from_dict(zone_id, raw)
        return self._zones[zone_id]

    def replace_zone(self, settings: ZoneSettings) -> None:
        """Cache updated settings for a zone (after a settings change was accepted)."""
        self._zones[settings.zone_id] = settings

    def invalidate(self) -> None:
        """Drop cached values; the next read reloads from the source."""
        self._config = None
        self._zones = {}
        logger.debug("Settings cache invalidated")
