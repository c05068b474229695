"""OccupancyFusionModule - hosts fused occupancy devices on the event bus.

This module wraps one FusionDevice per virtual device and integrates them
with the kernel EventBus. Sensor events are routed to every device that
monitors the reporting sensor; capability changes are emitted back onto the
bus as semantic events.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from occupancy_fusion.core.bus import Event, EventBus, EventFilter
from occupancy_fusion.modules.base import DeviceModule

from . import config as device_config
from .device import CAPABILITY_DATA_STALE, CAPABILITY_OCCUPANCY, FusionDevice
from .errors import FusionErrorId
from .models import ClearTimerPolicy

logger = logging.getLogger(__name__)

_TRUE_STATES = ("on", "true")
_FALSE_STATES = ("off", "false")


def coerce_sensor_value(value: Any) -> Any:
    """Map platform states to booleans; anything else is returned unchanged."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STATES:
            return True
        if lowered in _FALSE_STATES:
            return False
    return value


class OccupancyFusionModule(DeviceModule):
    """
    Fused occupancy module.

    Features:
    - Any number of independent fused devices, each with its own sensors
    - Trigger/reset sensor fusion with entry/exit confirmation timers
    - Staleness tracking with an all-stale fail-safe
    - Manual pause/resume per device
    - Time-agnostic testing (no internal timers)

    Note: This module does NOT schedule timeout checks internally.
    The host integration is responsible for:
    1. Calling tick(now) (or check_timeouts(now) and sweep(now)) periodically
    2. Using get_next_timeout() to know when to schedule the next call
    """

    def __init__(self, platform_adapter=None) -> None:
        """
        Initialize the module.

        Args:
            platform_adapter: Optional platform adapter. Used for
                ``get_sensor_value(sensor_id, capability)`` (startup and resume
                snapshots) and, when present, ``set_capability_value(device_id,
                capability, value)`` (capability writes).
        """
        self._platform = platform_adapter
        self._bus: Optional[EventBus] = None
        self._devices: Dict[str, FusionDevice] = {}
        self._settings: Dict[str, Dict] = {}
        self._last_values: Dict[str, Any] = {}
        self._restored: Dict[str, Dict] = {}
        self._emitted: Dict[str, bool] = {}

    @property
    def id(self) -> str:
        return "occupancy_fusion"

    @property
    def CURRENT_CONFIG_VERSION(self) -> int:
        return device_config.CURRENT_CONFIG_VERSION

    def attach(self, bus: EventBus) -> None:
        """Attach to the kernel and subscribe to sensor events."""
        logger.info("Attaching OccupancyFusionModule")
        self._bus = bus
        bus.subscribe(self._on_sensor_event, EventFilter(event_type="sensor.state_changed"))

    # --- Device lifecycle ---

    def add_device(
        self,
        device_id: str,
        settings: Optional[Dict] = None,
        warm_start: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> FusionDevice:
        """Create and start a fused device.

        An existing device with the same id is torn down and replaced. State
        restored via ``restore_state()`` is used as warm start unless an
        explicit ``warm_start`` is given.
        """
        if now is None:
            now = datetime.now(UTC)

        if device_id in self._devices:
            logger.info(f"Replacing device {device_id}")
            self.remove_device(device_id)

        settings = self.migrate_config(dict(settings or {}))
        config = device_config.build_device_config(device_id, settings)
        self._settings[device_id] = settings

        initial_values = None
        restored = self._restored.pop(device_id, None)
        if restored:
            if warm_start is None:
                warm_start = restored.get("occupied")
            initial_values = restored.get("sensor_values")

        def read_snapshot() -> Dict[str, Any]:
            return self._read_snapshot(config)

        def publish(capability: str, value: bool) -> None:
            self._publish_capability(device_id, capability, value)

        device = FusionDevice(
            config,
            publisher=publish,
            snapshot_reader=read_snapshot,
            warm_start=warm_start,
            initial_values=initial_values,
            now=now,
        )
        self._devices[device_id] = device
        device.start(now)

        logger.info(
            f"Device {device_id} added with {len(config.trigger_sensors)} trigger and "
            f"{len(config.reset_sensors)} reset sensor(s)"
        )
        return device

    def remove_device(self, device_id: str) -> None:
        """Tear down and forget a device."""
        device = self._devices.pop(device_id, None)
        if device is None:
            logger.debug(f"remove_device: unknown device {device_id}")
            return

        device.teardown()
        self._settings.pop(device_id, None)
        self._emitted.pop(device_id, None)
        logger.info(f"Device {device_id} removed")

    def get_device(self, device_id: str) -> Optional[FusionDevice]:
        return self._devices.get(device_id)

    @property
    def device_ids(self) -> List[str]:
        return list(self._devices)

    # --- Event handling ---

    def _on_sensor_event(self, event: Event) -> None:
        """Handle sensor state change from platform."""
        sensor_id = event.entity_id
        if not sensor_id:
            return

        value = coerce_sensor_value(event.payload.get("new_state"))
        capability = event.payload.get("capability")
        if isinstance(value, bool):
            self._last_values[sensor_id] = value

        targets = [d for d in self._devices.values() if sensor_id in d.config_sensor_ids]
        if not targets:
            logger.debug(f"Sensor {sensor_id} not monitored by any device")
            return

        for device in targets:
            device.on_sensor_value(sensor_id, value, capability=capability, now=event.timestamp)

    def _publish_capability(self, device_id: str, capability: str, value: bool) -> None:
        """Write a capability to the platform and emit the matching bus event.

        Raises whatever the platform write raises; the device logs the failure
        and retries on its next evaluation.
        """
        if self._platform is not None and hasattr(self._platform, "set_capability_value"):
            self._platform.set_capability_value(device_id, capability, value)

        device = self._devices.get(device_id)
        if self._bus is None or device is None:
            return

        if capability == CAPABILITY_OCCUPANCY:
            previous = self._emitted.get(device_id, False)
            self._emitted[device_id] = value
            logger.info(
                f"Occupancy changed: {device_id} → {'OCCUPIED' if value else 'VACANT'} "
                f"[{device.state.value}]"
            )
            self._bus.publish(
                Event(
                    type="occupancy.changed",
                    source=self.id,
                    device_id=device_id,
                    payload={
                        "occupied": value,
                        "previous_occupied": previous,
                        "state": device.state.value,
                    },
                    timestamp=datetime.now(UTC),
                )
            )
        elif capability == CAPABILITY_DATA_STALE:
            self._bus.publish(
                Event(
                    type="occupancy.data_quality_changed",
                    source=self.id,
                    device_id=device_id,
                    payload={
                        "stale": value,
                        "stale_sensors": device.get_state()["stale_sensors"],
                    },
                    timestamp=datetime.now(UTC),
                )
            )

    def _read_snapshot(self, config) -> Dict[str, Any]:
        """Current values of a device's sensors.

        Reads through the platform adapter when there is one, otherwise uses
        the last values seen on the bus. Sensors that cannot be read are left
        out (no observation).
        """
        values: Dict[str, Any] = {}
        for sensor in config.sensors:
            if self._platform is None:
                if sensor.id in self._last_values:
                    values[sensor.id] = self._last_values[sensor.id]
                continue

            try:
                value = coerce_sensor_value(
                    self._platform.get_sensor_value(sensor.id, sensor.capability)
                )
            except Exception as e:
                logger.warning(
                    f"{FusionErrorId.SNAPSHOT_READ_FAILED} {config.device_id}: cannot read "
                    f"{sensor.label}: {e}"
                )
                continue

            if isinstance(value, bool):
                values[sensor.id] = value
        return values

    # --- Direct API ---

    def pause(self, device_id: str, occupied: bool, now: Optional[datetime] = None) -> None:
        """Pause a device with a fixed published occupancy value."""
        device = self._require(device_id, "pause")
        if device:
            device.pause(occupied, now)

    def resume(self, device_id: str, now: Optional[datetime] = None) -> None:
        """Resume a paused device."""
        device = self._require(device_id, "resume")
        if device:
            device.resume(now)

    def check_timeouts(self, now: Optional[datetime] = None) -> None:
        """Fire expired timers on every device.

        The host integration is responsible for calling this at appropriate times.
        Use get_next_timeout() to know when to schedule the next check.
        """
        if now is None:
            now = datetime.now(UTC)

        logger.debug(f"Checking timeouts at {now}")
        for device in list(self._devices.values()):
            device.check_timeouts(now)

    def sweep(self, now: Optional[datetime] = None) -> None:
        """Run the staleness sweep on every device."""
        if now is None:
            now = datetime.now(UTC)

        for device in list(self._devices.values()):
            device.sweep(now)

    def tick(self, now: Optional[datetime] = None) -> None:
        """Run due sweeps and expired timers on every device."""
        if now is None:
            now = datetime.now(UTC)

        for device in list(self._devices.values()):
            device.tick(now)

    def get_next_timeout(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Get when the next tick() should occur.

        Returns:
            datetime of the earliest timer or sweep across all devices, or
            None if there is nothing to wait for

        Example:
            next_check = fusion.get_next_timeout()
            if next_check:
                schedule_at(next_check, lambda: fusion.tick(next_check))
        """
        deadlines = [
            t for t in (d.get_next_timeout(now) for d in self._devices.values()) if t is not None
        ]
        return min(deadlines) if deadlines else None

    def get_device_state(self, device_id: str) -> Optional[Dict]:
        """Get current status of a device."""
        device = self._devices.get(device_id)
        if device is None:
            return None
        return device.get_state()

    # --- Persistence ---

    def dump_state(self) -> Dict:
        """Export warm-start state of every device."""
        return {device_id: device.dump_state() for device_id, device in self._devices.items()}

    def restore_state(self, state: Dict) -> None:
        """Restore device state from persistence.

        Devices that already exist are rebuilt with the restored values;
        the rest are kept until ``add_device()`` is called for them.
        """
        for device_id, device_state in state.items():
            if not isinstance(device_state, dict):
                logger.warning(f"Ignoring malformed saved state for {device_id}")
                continue
            self._restored[device_id] = device_state

        for device_id in [d for d in self._restored if d in self._devices]:
            self.add_device(device_id, self._settings.get(device_id))

        logger.info(f"Restored occupancy state for {len(state)} devices")

    # --- Configuration ---

    def default_config(self) -> Dict:
        """Default configuration for a device."""
        return device_config.default_config()

    def migrate_config(self, config: Dict) -> Dict:
        return device_config.migrate_config(config)

    def config_schema(self) -> Dict:
        """JSON schema for UI configuration."""
        sensor_list = {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "capability": {"type": "string"},
                    "display_name": {"type": "string"},
                    "stale_minutes": {"type": "number"},
                },
                "required": ["id", "capability"],
            },
        }
        return {
            "type": "object",
            "properties": {
                "trigger_sensors": {
                    **sensor_list,
                    "title": "Trigger Sensors",
                    "description": "Motion/presence sensors; any rising edge means presence",
                },
                "reset_sensors": {
                    **sensor_list,
                    "title": "Reset Sensors",
                    "description": "Door/contact sensors; any rising edge means a possible exit",
                },
                "t_enter": {
                    "type": "integer",
                    "title": "Exit Confirmation (seconds)",
                    "minimum": device_config.T_ENTER_MIN_SECONDS,
                    "maximum": device_config.T_ENTER_MAX_SECONDS,
                    "default": device_config.T_ENTER_SECONDS,
                },
                "t_clear": {
                    "type": "integer",
                    "title": "Inactivity Timeout (seconds)",
                    "minimum": device_config.T_CLEAR_MIN_SECONDS,
                    "maximum": device_config.T_CLEAR_MAX_SECONDS,
                    "default": device_config.T_CLEAR_SECONDS,
                },
                "stale_trigger_minutes": {
                    "type": "integer",
                    "title": "Trigger Sensor Stale Timeout (minutes)",
                    "minimum": device_config.STALE_MIN_MINUTES,
                    "maximum": device_config.STALE_MAX_MINUTES,
                    "default": device_config.STALE_MINUTES,
                },
                "stale_reset_minutes": {
                    "type": "integer",
                    "title": "Reset Sensor Stale Timeout (minutes)",
                    "minimum": device_config.STALE_MIN_MINUTES,
                    "maximum": device_config.STALE_MAX_MINUTES,
                    "default": device_config.STALE_MINUTES,
                },
                "clear_policy": {
                    "type": "string",
                    "title": "Inactivity Timeout Policy",
                    "enum": [p.value for p in ClearTimerPolicy],
                    "default": ClearTimerPolicy.TRIGGER_ONLY.value,
                    "description": (
                        "trigger_only: only rooms without reset sensors decay; "
                        "door_open: only occupied rooms with a door left open"
                    ),
                },
            },
        }

    def _require(self, device_id: str, action: str) -> Optional[FusionDevice]:
        device = self._devices.get(device_id)
        if device is None:
            logger.warning(f"{action}: unknown device {device_id}")
        return device
