#!/usr/bin/env python3
"""Circadian zones service – Home Assistant WebSocket client and scheduler."""

import asyncio
import json
import logging
import os
import sys
from typing import Any, Callable, Dict, Optional, Tuple

import websockets

import zone_state
from exceptions import ConfigurationError, GeoUnavailableError
from models import Mode
from settings import SettingsStore, normalize_keys
from zone import CircadianZone, utc_now

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SERVICE_DOMAIN = "circadian_zones"
VALUES_CHANGED_EVENT = "circadian_zone_changed"


class ZoneScheduler:
    """Periodically recompute every zone on the event loop.

    Zones are independent, so each pass refreshes them concurrently; a
    failing zone is logged and does not stop the others.
    """

    def __init__(self, zones: Dict[str, CircadianZone], interval: float = 60) -> None:
        self.zones = zones
        self.interval = interval
        self.refresh_event: Optional[asyncio.Event] = None  # Created lazily in the running loop
        self.task: Optional[asyncio.Task] = None

    def request_refresh(self) -> None:
        """Wake the updater for an immediate recompute."""
        if self.refresh_event is not None:
            self.refresh_event.set()

    async def refresh_all(self) -> None:
        zone_ids = list(self.zones)
        results = await asyncio.gather(
            *(self.zones[zone_id].refresh() for zone_id in zone_ids),
            return_exceptions=True,
        )
        for zone_id, result in zip(zone_ids, results):
            if isinstance(result, Exception):
                logger.error(f"[Zone {zone_id}] refresh failed: {result}")

    async def run(self) -> None:
        """Run every `interval` seconds, or immediately when refresh is requested."""
        if self.refresh_event is None:
            self.refresh_event = asyncio.Event()

        while True:
            try:
                await self.refresh_all()

                try:
                    await asyncio.wait_for(self.refresh_event.wait(), timeout=self.interval)
                    self.refresh_event.clear()
                    logger.debug("Refresh requested")
                except asyncio.TimeoutError:
                    pass  # Normal periodic tick

            except asyncio.CancelledError:
                logger.info("Zone scheduler cancelled")
                raise

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self.run())
        logger.info(f"Started zone scheduler for {len(self.zones)} zone(s) (every {self.interval}s)")
        return self.task

    async def stop(self) -> None:
        if self.task and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.task = None


class HomeAssistantWebSocketClient:
    """WebSocket client for Home Assistant."""

    def __init__(self, host: str, port: int, access_token: str, use_ssl: bool = False):
        """Initialize the client.

        Args:
            host: Home Assistant host
            port: Home Assistant port
            access_token: Long-lived access token
            use_ssl: Whether to use SSL/TLS
        """
        self.host = host
        self.port = port
        self.access_token = access_token
        self.use_ssl = use_ssl
        self.websocket = None
        self.message_id = 1
        self.latitude = None  # Home Assistant latitude
        self.longitude = None  # Home Assistant longitude
        self.timezone = None  # Home Assistant timezone
        self.bridge: Optional["HomeAssistantBridge"] = None
        self.scheduler: Optional[ZoneScheduler] = None

    @property
    def websocket_url(self) -> str:
        """Get the WebSocket URL."""
        url_from_env = os.getenv("HA_WEBSOCKET_URL")
        if url_from_env:
            return url_from_env

        protocol = "wss" if self.use_ssl else "ws"
        return f"{protocol}://{self.host}:{self.port}/api/websocket"

    def _get_next_message_id(self) -> int:
        message_id = self.message_id
        self.message_id += 1
        return message_id

    async def authenticate(self) -> bool:
        """Authenticate with Home Assistant."""
        try:
            auth_msg = json.loads(await self.websocket.recv())

            if auth_msg["type"] != "auth_required":
                logger.error(f"Unexpected message type: {auth_msg['type']}")
                return False

            await self.websocket.send(json.dumps({
                "type": "auth",
                "access_token": self.access_token
            }))

            result_msg = json.loads(await self.websocket.recv())

            if result_msg["type"] == "auth_ok":
                logger.info("Successfully authenticated with Home Assistant")
                return True
            logger.error(f"Authentication failed: {result_msg}")
            return False

        except (websockets.exceptions.WebSocketException, json.JSONDecodeError, KeyError) as e:
            logger.error(f"Authentication error: {e}")
            return False

    async def subscribe_events(self, event_type: Optional[str] = None) -> int:
        """Subscribe to events.

        Args:
            event_type: Specific event type to subscribe to, or None for all events

        Returns:
            Message ID of the subscription request
        """
        message_id = self._get_next_message_id()

        subscribe_msg = {
            "id": message_id,
            "type": "subscribe_events"
        }
        if event_type:
            subscribe_msg["event_type"] = event_type

        await self.websocket.send(json.dumps(subscribe_msg))
        logger.info(f"Subscribed to events (id: {message_id}, type: {event_type or 'all'})")
        return message_id

    async def call_service(self, domain: str, service: str, service_data: Dict[str, Any], target: Optional[Dict[str, Any]] = None) -> int:
        """Call a Home Assistant service.

        Args:
            domain: Service domain (e.g., 'input_number')
            service: Service name (e.g., 'set_value')
            service_data: Service parameters
            target: Optional target (entity_id / area_id)

        Returns:
            Message ID of the service call
        """
        message_id = self._get_next_message_id()

        service_msg = {
            "id": message_id,
            "type": "call_service",
            "domain": domain,
            "service": service
        }
        if service_data:
            service_msg["service_data"] = service_data
        if target:
            service_msg["target"] = target

        await self.websocket.send(json.dumps(service_msg))
        logger.debug(f"Called service: {domain}.{service} (id: {message_id})")
        return message_id

    async def fire_event(self, event_type: str, event_data: Dict[str, Any]) -> int:
        """Fire a custom Home Assistant event."""
        message_id = self._get_next_message_id()
        await self.websocket.send(json.dumps({
            "id": message_id,
            "type": "fire_event",
            "event_type": event_type,
            "event_data": event_data,
        }))
        logger.debug(f"Fired event {event_type} (id: {message_id})")
        return message_id

    async def send_message_wait_response(self, message: Dict[str, Any], timeout: float = 10.0) -> Optional[Any]:
        """Send a command and wait for its result frame.

        Only used before the event subscription starts, so no other
        consumer reads from the socket meanwhile.
        """
        msg_id = self._get_next_message_id()
        await self.websocket.send(json.dumps({**message, "id": msg_id}))

        while True:
            try:
                frame = await asyncio.wait_for(self.websocket.recv(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.error(f"Timed out waiting for response to id={msg_id}")
                return None

            try:
                data = json.loads(frame)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-JSON frame while waiting for id={msg_id}: {frame!r}")
                continue

            if data.get("id") != msg_id:
                continue
            if data.get("type") == "result" and data.get("success", False):
                return data.get("result")
            logger.error(f"Error response to id={msg_id}: {data.get('error')}")
            return None

    async def get_config(self) -> bool:
        """Get Home Assistant configuration (location) and wait for response.

        Returns:
            True if config was successfully loaded, False otherwise
        """
        logger.info("Requesting Home Assistant configuration...")
        result = await self.send_message_wait_response({"type": "get_config"})

        if isinstance(result, dict) and "latitude" in result and "longitude" in result:
            self.latitude = result.get("latitude")
            self.longitude = result.get("longitude")
            self.timezone = result.get("time_zone")
            logger.info(f"Loaded HA location: lat={self.latitude}, lon={self.longitude}, tz={self.timezone}")
            return True

        logger.warning(f"Config response missing location data: {result!r}")
        return False

    async def handle_message(self, message: Dict[str, Any]):
        """Dispatch an incoming frame."""
        if message.get("type") != "event" or self.bridge is None:
            return

        event = message.get("event", {})
        event_type = event.get("event_type")
        data = event.get("data", {})

        if event_type == "state_changed":
            await self.bridge.handle_state_changed(data)
        elif event_type == "call_service" and data.get("domain") == SERVICE_DOMAIN:
            await self.bridge.handle_service_call(data.get("service"), data.get("service_data", {}))

    async def listen(self):
        """Main listener loop."""
        try:
            logger.info(f"Connecting to {self.websocket_url}")

            async with websockets.connect(self.websocket_url) as websocket:
                self.websocket = websocket

                if not await self.authenticate():
                    logger.error("Failed to authenticate")
                    return

                if not await self.get_config():
                    logger.warning("Failed to load Home Assistant location - curve will use configured/env coordinates")

                await self.subscribe_events("state_changed")
                await self.subscribe_events("call_service")

                if self.scheduler:
                    self.scheduler.start()

                logger.info("Listening for events...")
                async for message in websocket:
                    try:
                        await self.handle_message(json.loads(message))
                    except json.JSONDecodeError:
                        logger.error(f"Failed to decode message: {message}")
                    except Exception as e:
                        logger.error(f"Error handling message: {e}")

        except websockets.exceptions.ConnectionClosed:
            logger.warning("WebSocket connection closed")
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error(f"Connection error: {e}")
        finally:
            if self.scheduler:
                await self.scheduler.stop()
            self.websocket = None

    async def run(self):
        """Run the client with automatic reconnection."""
        reconnect_interval = 5

        while True:
            await self.listen()
            logger.info(f"Reconnecting in {reconnect_interval} seconds...")
            await asyncio.sleep(reconnect_interval)


class HomeAssistantBridge:
    """Connects zones to Home Assistant.

    Acts as the zones' capability sink (input_number / input_select
    helpers), trigger sink (a custom event) and geo source (HA location,
    falling back to configured coordinates), and turns user changes of the
    helpers into overrides / mode changes.
    """

    def __init__(self, client: HomeAssistantWebSocketClient, settings_store: SettingsStore) -> None:
        self.client = client
        self.settings_store = settings_store
        self.zones: Dict[str, CircadianZone] = {}
        # entity_id -> value we last wrote, to ignore the state_changed echo
        self._pending_writes: Dict[str, str] = {}

    # -- geo source ----------------------------------------------------

    def get_location(self) -> Tuple[Optional[float], Optional[float], Optional[str]]:
        if self.client.latitude is not None and self.client.longitude is not None:
            return self.client.latitude, self.client.longitude, self.client.timezone

        configured = self.settings_store.get_global()
        if configured.latitude is None or configured.longitude is None:
            raise GeoUnavailableError("Home Assistant location not loaded and none configured")
        return configured.latitude, configured.longitude, configured.timezone

    # -- capability sink -----------------------------------------------

    async def _write(self, entity_id: Optional[str], domain: str, service: str, key: str, value: Any) -> None:
        if not entity_id or self.client.websocket is None:
            logger.debug(f"Skipping {domain}.{service} ({key}={value}): no entity or not connected")
            return
        self._pending_writes[entity_id] = _state_key(value)
        await self.client.call_service(domain, service, {key: value}, target={"entity_id": entity_id})

    async def set_brightness(self, zone_id: str, value: float) -> None:
        entity = self.settings_store.get_zone(zone_id).brightness_entity
        await self._write(entity, "input_number", "set_value", "value", value)

    async def set_temperature(self, zone_id: str, value: float) -> None:
        entity = self.settings_store.get_zone(zone_id).temperature_entity
        await self._write(entity, "input_number", "set_value", "value", value)

    async def set_mode(self, zone_id: str, mode: Mode) -> None:
        entity = self.settings_store.get_zone(zone_id).mode_entity
        await self._write(entity, "input_select", "select_option", "option", mode.value)

    # -- trigger sink --------------------------------------------------

    async def trigger_values_changed(self, zone_id: str, tokens: Dict[str, Any]) -> None:
        if self.client.websocket is None:
            raise ConnectionError("Not connected to Home Assistant")
        await self.client.fire_event(VALUES_CHANGED_EVENT, {"zone_id": zone_id, **tokens})

    # -- incoming ------------------------------------------------------

    def _find_entity(self, entity_id: str) -> Optional[Tuple[CircadianZone, str]]:
        for zone in self.zones.values():
            settings = zone.settings
            if entity_id == settings.brightness_entity:
                return zone, "brightness"
            if entity_id == settings.temperature_entity:
                return zone, "temperature"
            if entity_id == settings.mode_entity:
                return zone, "mode"
        return None

    async def handle_state_changed(self, data: Dict[str, Any]) -> None:
        entity_id = data.get("entity_id")
        new_state = (data.get("new_state") or {}).get("state")
        if not entity_id or new_state in (None, "unknown", "unavailable"):
            return

        match = self._find_entity(entity_id)
        if match is None:
            return
        zone, capability = match

        # Any change settles the outstanding write, echo or not
        if self._pending_writes.pop(entity_id, None) == _state_key(new_state):
            return

        try:
            if capability == "mode":
                await zone.set_mode(new_state, from_capability=True)
            elif capability == "brightness":
                await zone.override_brightness(float(new_state))
            else:
                await zone.override_temperature(float(new_state))
        except ValueError:
            logger.warning(f"[Zone {zone.zone_id}] ignoring invalid {capability} value {new_state!r}")

    async def handle_service_call(self, service: Optional[str], service_data: Dict[str, Any]) -> None:
        if service == "reload":
            self.reload_settings()
        elif service == "set_mode":
            zone = self.zones.get(service_data.get("zone_id"))
            if zone is None:
                logger.warning(f"set_mode for unknown zone {service_data.get('zone_id')!r}")
                return
            try:
                await zone.set_mode(service_data.get("mode", ""))
            except ValueError:
                logger.warning(f"[Zone {zone.zone_id}] unknown mode {service_data.get('mode')!r}")
        elif service == "refresh":
            if self.client.scheduler:
                self.client.scheduler.request_refresh()
        else:
            logger.debug(f"Ignoring {SERVICE_DOMAIN}.{service}")

    def reload_settings(self) -> Dict[str, Optional[str]]:
        """Re-read configuration and hand it to every zone.

        Returns:
            zone_id -> None on success or the rejection message
        """
        self.settings_store.invalidate()
        raw_zones = self.settings_store.get_config().get("zones", {})

        results: Dict[str, Optional[str]] = {}
        for zone_id, zone in self.zones.items():
            raw = normalize_keys(raw_zones.get(zone_id, {}))
            results[zone_id] = zone.apply_settings(raw, raw.keys())
            if results[zone_id]:
                # Keep serving the previous, still valid settings
                self.settings_store.replace_zone(zone.settings)

        if self.client.scheduler:
            self.client.scheduler.request_refresh()
        return results


def _state_key(value: Any) -> str:
    """Comparable form of a helper state (HA reports numbers as strings)."""
    try:
        return f"{float(value):.2f}"
    except (TypeError, ValueError):
        return str(value)


def build_zones(
    settings_store: SettingsStore,
    bridge: HomeAssistantBridge,
    clock: Callable = utc_now,
) -> Dict[str, CircadianZone]:
    """Create a zone for every configured zone id; invalid zones are skipped."""
    zones: Dict[str, CircadianZone] = {}
    for zone_id in settings_store.zone_ids():
        try:
            zones[zone_id] = CircadianZone(zone_id, settings_store, bridge, bridge, bridge, clock)
        except ConfigurationError as e:
            logger.error(f"Skipping zone '{zone_id}': {e}")
    return zones


def main():
    """Main entry point."""
    host = os.getenv("HA_HOST", "localhost")
    port = int(os.getenv("HA_PORT", "8123"))
    token = os.getenv("HA_TOKEN")
    use_ssl = os.getenv("HA_USE_SSL", "false").lower() == "true"

    if not token:
        logger.error("HA_TOKEN environment variable is required")
        logger.info("Please set HA_TOKEN with your Home Assistant long-lived access token")
        sys.exit(1)

    zone_state.init()
    settings_store = SettingsStore()

    client = HomeAssistantWebSocketClient(host, port, token, use_ssl)
    bridge = HomeAssistantBridge(client, settings_store)
    bridge.zones = build_zones(settings_store, bridge)
    if not bridge.zones:
        logger.warning("No zones configured - add zones to zones.json")

    client.bridge = bridge
    client.scheduler = ZoneScheduler(bridge.zones, settings_store.get_global().update_interval)

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
