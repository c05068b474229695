"""Configuration building for fused occupancy devices.

Turns a host settings dict into a validated :class:`DeviceConfig`. The host
stores sensor lists either as lists of dicts or as JSON strings. Malformed
lists degrade to an empty sensor set and malformed entries are dropped one by
one, so a bad setting never prevents the device from starting.

Timer values are clamped to the ranges the device supports.
"""

import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from .errors import FusionErrorId
from .models import ClearTimerPolicy, DeviceConfig, SensorDescriptor, SensorRole

logger = logging.getLogger(__name__)

CURRENT_CONFIG_VERSION = 1

# Timer defaults and bounds (seconds for T_ENTER/T_CLEAR, minutes for staleness)
T_ENTER_SECONDS = 20
T_ENTER_MIN_SECONDS = 5
T_ENTER_MAX_SECONDS = 60

T_CLEAR_SECONDS = 600
T_CLEAR_MIN_SECONDS = 60
T_CLEAR_MAX_SECONDS = 3600

STALE_MINUTES = 30
STALE_MIN_MINUTES = 5
STALE_MAX_MINUTES = 120

SWEEP_INTERVAL_SECONDS = 60


def default_config() -> Dict:
    """Default settings for a fused occupancy device."""
    return {
        "version": CURRENT_CONFIG_VERSION,
        "trigger_sensors": [],
        "reset_sensors": [],
        "t_enter": T_ENTER_SECONDS,
        "t_clear": T_CLEAR_SECONDS,
        "stale_trigger_minutes": STALE_MINUTES,
        "stale_reset_minutes": STALE_MINUTES,
        "sweep_interval": SWEEP_INTERVAL_SECONDS,
        "clear_policy": ClearTimerPolicy.TRIGGER_ONLY.value,
    }


def migrate_config(config: Dict) -> Dict:
    """Upgrade version-0 settings (camelCase keys) to the current version."""
    if config.get("version", 0) >= CURRENT_CONFIG_VERSION:
        return config

    migrated = dict(config)
    renames = {
        "triggerSensors": "trigger_sensors",
        "resetSensors": "reset_sensors",
        "stalePirMinutes": "stale_trigger_minutes",
        "staleDoorMinutes": "stale_reset_minutes",
    }
    for old_key, new_key in renames.items():
        if old_key in migrated:
            migrated.setdefault(new_key, migrated.pop(old_key))

    migrated["version"] = CURRENT_CONFIG_VERSION
    logger.info(f"Migrated device settings to version {CURRENT_CONFIG_VERSION}")
    return migrated


def build_device_config(device_id: str, settings: Optional[Dict[str, Any]] = None) -> DeviceConfig:
    """Build a DeviceConfig from host settings, degrading on bad input.

    Args:
        device_id: Identifier of the virtual device.
        settings: Settings dict (see ``default_config()``). None uses defaults.

    Returns:
        A DeviceConfig. Invalid sensor entries are dropped, invalid timers
        fall back to their defaults.
    """
    settings = migrate_config(dict(settings or {}))

    triggers = parse_sensor_list(settings.get("trigger_sensors"), SensorRole.TRIGGER)
    resets = parse_sensor_list(settings.get("reset_sensors"), SensorRole.RESET)

    # A sensor id may only have one role; the first configured role wins
    seen = {s.id for s in triggers}
    duplicates = [s.id for s in resets if s.id in seen]
    if duplicates:
        logger.warning(
            f"{FusionErrorId.INVALID_SENSOR_DESCRIPTOR} {device_id}: sensors configured "
            f"as both trigger and reset, keeping trigger role: {duplicates}"
        )
        resets = tuple(s for s in resets if s.id not in seen)

    t_enter = _clamped(
        settings, "t_enter", T_ENTER_SECONDS, T_ENTER_MIN_SECONDS, T_ENTER_MAX_SECONDS
    )
    t_clear = _clamped(
        settings, "t_clear", T_CLEAR_SECONDS, T_CLEAR_MIN_SECONDS, T_CLEAR_MAX_SECONDS
    )
    stale_trigger = _clamped(
        settings, "stale_trigger_minutes", STALE_MINUTES, STALE_MIN_MINUTES, STALE_MAX_MINUTES
    )
    stale_reset = _clamped(
        settings, "stale_reset_minutes", STALE_MINUTES, STALE_MIN_MINUTES, STALE_MAX_MINUTES
    )
    sweep_interval = _positive(settings, "sweep_interval", SWEEP_INTERVAL_SECONDS)

    config = DeviceConfig(
        device_id=device_id,
        trigger_sensors=triggers,
        reset_sensors=resets,
        t_enter=timedelta(seconds=t_enter),
        t_clear=timedelta(seconds=t_clear),
        stale_trigger_timeout=timedelta(minutes=stale_trigger),
        stale_reset_timeout=timedelta(minutes=stale_reset),
        sweep_interval=timedelta(seconds=sweep_interval),
        clear_policy=_clear_policy(settings.get("clear_policy")),
    )
    logger.debug(
        f"Created config for {device_id}: {len(triggers)} trigger, {len(resets)} reset, "
        f"t_enter={t_enter}s, t_clear={t_clear}s, clear_policy={config.clear_policy.value}"
    )
    return config


def parse_sensor_list(raw: Any, role: SensorRole) -> Tuple[SensorDescriptor, ...]:
    """Parse a list (or JSON string) of sensor dicts into descriptors.

    Accepted keys per entry: ``id`` or ``device_id`` or ``deviceId``;
    ``capability``; optional ``display_name``/``deviceName``; optional
    ``stale_minutes``.
    """
    if raw is None or raw == "":
        return ()

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            logger.error(
                f"{FusionErrorId.CONFIG_PARSE_FAILED} Failed to parse {role.value} sensor "
                f"settings JSON: {e}"
            )
            return ()

    if not isinstance(raw, list):
        logger.error(
            f"{FusionErrorId.CONFIG_PARSE_FAILED} {role.value} sensor settings is not a list: "
            f"{raw!r}"
        )
        return ()

    descriptors: List[SensorDescriptor] = []
    seen = set()
    for entry in raw:
        descriptor = _parse_sensor(entry, role)
        if descriptor is None:
            continue
        if descriptor.id in seen:
            logger.warning(
                f"{FusionErrorId.INVALID_SENSOR_DESCRIPTOR} Duplicate {role.value} sensor "
                f"{descriptor.id} dropped"
            )
            continue
        seen.add(descriptor.id)
        descriptors.append(descriptor)

    return tuple(descriptors)


def _parse_sensor(entry: Any, role: SensorRole) -> Optional[SensorDescriptor]:
    if not isinstance(entry, dict):
        logger.warning(
            f"{FusionErrorId.INVALID_SENSOR_DESCRIPTOR} Ignoring {role.value} sensor entry "
            f"{entry!r}: not an object"
        )
        return None

    sensor_id = entry.get("id") or entry.get("device_id") or entry.get("deviceId")
    capability = entry.get("capability")
    if not isinstance(sensor_id, str) or not sensor_id or not isinstance(capability, str):
        logger.warning(
            f"{FusionErrorId.INVALID_SENSOR_DESCRIPTOR} Ignoring {role.value} sensor entry "
            f"{entry!r}: id and capability are required"
        )
        return None

    stale_timeout = None
    stale_minutes = entry.get("stale_minutes")
    if stale_minutes is not None:
        if _is_number(stale_minutes) and stale_minutes > 0:
            minutes = max(STALE_MIN_MINUTES, min(STALE_MAX_MINUTES, stale_minutes))
            stale_timeout = timedelta(minutes=minutes)
        else:
            logger.warning(
                f"{FusionErrorId.INVALID_SENSOR_DESCRIPTOR} {sensor_id}: invalid stale_minutes "
                f"{stale_minutes!r}, using role default"
            )

    display_name = entry.get("display_name") or entry.get("deviceName")
    return SensorDescriptor(
        id=sensor_id,
        capability=capability,
        role=role,
        display_name=display_name if isinstance(display_name, str) else None,
        stale_timeout=stale_timeout,
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _clamped(settings: Dict, key: str, default: float, minimum: float, maximum: float) -> float:
    """Read a numeric setting, falling back to the default and clamping."""
    value = settings.get(key)
    if value is None:
        return default
    if not _is_number(value) or value <= 0:
        logger.warning(
            f"{FusionErrorId.CONFIG_PARSE_FAILED} Invalid {key}={value!r}, using default {default}"
        )
        return default
    return max(minimum, min(maximum, value))


def _positive(settings: Dict, key: str, default: float) -> float:
    value = settings.get(key)
    if value is None:
        return default
    if not _is_number(value) or value <= 0:
        logger.warning(
            f"{FusionErrorId.CONFIG_PARSE_FAILED} Invalid {key}={value!r}, using default {default}"
        )
        return default
    return value


def _clear_policy(value: Any) -> ClearTimerPolicy:
    if value is None:
        return ClearTimerPolicy.TRIGGER_ONLY
    try:
        return ClearTimerPolicy(value)
    except ValueError:
        logger.warning(
            f"{FusionErrorId.CONFIG_PARSE_FAILED} Unknown clear_policy {value!r}, "
            f"using {ClearTimerPolicy.TRIGGER_ONLY.value}"
        )
        return ClearTimerPolicy.TRIGGER_ONLY
