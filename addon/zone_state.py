#!/usr/bin/env python3
"""Zone runtime state management.

This module keeps per-zone runtime state, persisted to a JSON file so the
active mode survives restarts and can be shown by the host.

Runtime state includes:
- mode: "adaptive", "night" or "manual"
- brightness: Last applied brightness fraction, or None
- temperature: Last applied temperature fraction, or None

State is:
- Loaded from JSON at startup
- Held in memory for fast access
- Written to JSON immediately after changes
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

from models import Mode, ZoneOutput

logger = logging.getLogger(__name__)

STATE_FILENAME = "zone_state.json"

# In-memory state dict
_state: Dict[str, Dict[str, Any]] = {}

# Path to state file (set during init)
_state_file_path: Optional[str] = None


def _get_default_zone_state() -> Dict[str, Any]:
    """Return default runtime state for a zone."""
    return {
        "mode": Mode.ADAPTIVE.value,
        "brightness": None,
        "temperature": None,
    }


def get_data_directory() -> str:
    """Get the appropriate data directory based on environment."""
    override = os.getenv("CIRCADIAN_DATA_DIR")
    if override:
        os.makedirs(override, exist_ok=True)
        return override
    # Prefer /config/circadian-zones (visible in HA config folder, included in backups)
    if os.path.exists("/config"):
        data_dir = "/config/circadian-zones"
        os.makedirs(data_dir, exist_ok=True)
        return data_dir
    elif os.path.exists("/data"):
        return "/data"
    else:
        # Running in development - use local .data directory
        data_dir = os.path.join(os.path.dirname(__file__), ".data")
        os.makedirs(data_dir, exist_ok=True)
        return data_dir


def init(state_file: Optional[str] = None) -> None:
    """Initialize the state module and load state from disk.

    Args:
        state_file: Optional path to state file. If not provided, uses default location.
    """
    global _state_file_path, _state

    if state_file:
        _state_file_path = state_file
    else:
        _state_file_path = os.path.join(get_data_directory(), STATE_FILENAME)

    _state = {}

    if os.path.exists(_state_file_path):
        try:
            with open(_state_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)

            if isinstance(data, dict) and "zones" in data:
                _state = data.get("zones", {})
                logger.info(f"Loaded state for {len(_state)} zone(s) from {_state_file_path}")
            else:
                logger.warning(f"Invalid state file format at {_state_file_path}, starting fresh")

        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load state from {_state_file_path}: {e}")
    else:
        logger.info(f"No state file found at {_state_file_path}, starting fresh")


def _save() -> None:
    """Save current state to disk."""
    if not _state_file_path:
        logger.debug("State module not initialized, keeping state in memory only")
        return

    try:
        with open(_state_file_path, "w", encoding="utf-8") as f:
            json.dump({"zones": _state}, f, indent=2)
        logger.debug(f"Saved state to {_state_file_path}")
    except OSError as e:
        logger.error(f"Failed to save state to {_state_file_path}: {e}")


def get_zone(zone_id: str) -> Dict[str, Any]:
    """Get state for a zone.

    Args:
        zone_id: The zone ID

    Returns:
        Dict with zone state. If zone doesn't exist, returns default state.
    """
    default = _get_default_zone_state()
    default.update(_state.get(zone_id, {}))
    return default


def update_zone(zone_id: str, updates: Dict[str, Any]) -> None:
    """Update state for a zone.

    Args:
        zone_id: The zone ID
        updates: Dict of fields to update
    """
    if zone_id not in _state:
        _state[zone_id] = _get_default_zone_state()

    _state[zone_id].update(updates)
    _save()
    logger.debug(f"[ZoneState] SET '{zone_id}': {updates}")


def get_mode(zone_id: str) -> Mode:
    """Get the persisted mode for a zone (adaptive when unknown)."""
    raw = get_zone(zone_id).get("mode")
    try:
        return Mode(raw)
    except ValueError:
        logger.warning(f"[ZoneState] '{zone_id}' has unknown mode {raw!r}, using adaptive")
        return Mode.ADAPTIVE


def set_mode(zone_id: str, mode: Mode) -> None:
    update_zone(zone_id, {"mode": mode.value})


def get_output(zone_id: str) -> Optional[ZoneOutput]:
    """Last applied output, or None if nothing was applied yet."""
    zone = get_zone(zone_id)
    if zone.get("brightness") is None or zone.get("temperature") is None:
        return None
    return ZoneOutput(zone["brightness"], zone["temperature"])


def set_output(zone_id: str, output: ZoneOutput) -> None:
    update_zone(zone_id, {"brightness": output.brightness, "temperature": output.temperature})


def reset_zone(zone_id: str) -> None:
    """Reset a zone's runtime state to defaults."""
    _state[zone_id] = _get_default_zone_state()
    _save()
    logger.info(f"Zone '{zone_id}' runtime state reset to defaults")


def get_all_zone_ids() -> List[str]:
    return list(_state.keys())
