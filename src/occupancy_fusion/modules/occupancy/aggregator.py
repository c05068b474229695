"""Edge-triggered aggregation of binary sensor observations.

The aggregator keeps the last known boolean per sensor and classifies each
new observation as a RISING edge, a FALLING edge or NONE. Repeated identical
observations (at-least-once delivery from the host) are NONE edges, so no
edge-based logic fires twice.

Trigger sensors are OR-combined (any rising edge signals presence) and so are
reset sensors (any rising edge signals a possible exit). Sensors outside the
configured set are tracked but have no role.
"""

import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from .errors import FusionErrorId
from .models import EdgeKind, SensorDescriptor, SensorRole, SensorRuntimeState

_LOGGER = logging.getLogger(__name__)

# Runtime records created for sensors outside the configured set.
_UNTRACKED_TIMEOUT = timedelta(minutes=30)


def classify_edge(previous: bool | None, value: bool) -> EdgeKind:
    """Classify a new boolean against the previous (possibly unknown) one."""
    if value and previous is not True:
        return EdgeKind.RISING
    if not value and previous is True:
        return EdgeKind.FALLING
    return EdgeKind.NONE


class SensorAggregator:
    """Last-value tracking and edge detection for one device's sensors."""

    def __init__(
        self,
        sensors: list[SensorDescriptor] | tuple[SensorDescriptor, ...],
        runtime: dict[str, SensorRuntimeState],
    ) -> None:
        """Initialize the aggregator.

        Args:
            sensors: Configured sensor descriptors (reset and trigger).
            runtime: Per-sensor runtime map shared with the staleness monitor.
                Records are created here for unknown sensors on first sight.
        """
        self.sensors: dict[str, SensorDescriptor] = {s.id: s for s in sensors}
        self._runtime = runtime

    def initialize_from_snapshot(self, values: Mapping[str, Any]) -> None:
        """Seed last known values without emitting edges.

        Non-boolean values seed the sensor as unknown. Sensors missing from
        the snapshot keep their current value.
        """
        for sensor_id, value in values.items():
            record = self._runtime.get(sensor_id)
            if record is None:
                continue
            if isinstance(value, bool):
                record.last_known_value = value
            else:
                _LOGGER.debug(f"Snapshot value for {sensor_id} is not boolean ({value!r})")
                record.last_known_value = None

        _LOGGER.debug(f"Aggregator baseline seeded: {self.snapshot()}")

    def record_observation(
        self, sensor_id: str, value: Any, now: datetime | None = None
    ) -> EdgeKind:
        """Record a new observation and return its edge kind.

        The stored value is always updated for boolean observations. Malformed
        observations are logged and classified as NONE without touching the
        stored value.
        """
        if not isinstance(value, bool):
            _LOGGER.warning(
                f"{FusionErrorId.MALFORMED_OBSERVATION} Ignoring non-boolean value "
                f"for {sensor_id}: {value!r}"
            )
            return EdgeKind.NONE

        record = self._runtime.get(sensor_id)
        if record is None:
            # Accepted and tracked, but it will never drive transitions
            _LOGGER.debug(f"Tracking unconfigured sensor {sensor_id}")
            record = SensorRuntimeState(
                last_known_value=None,
                last_updated_at=now or datetime.now(UTC),
                timeout=_UNTRACKED_TIMEOUT,
            )
            self._runtime[sensor_id] = record

        edge = classify_edge(record.last_known_value, value)
        record.last_known_value = value

        if edge == EdgeKind.NONE:
            _LOGGER.debug(f"No change: {sensor_id} stayed at {value} - ignored")
        return edge

    def role_of(self, sensor_id: str) -> SensorRole | None:
        """Role of a configured sensor, None for unknown sensors."""
        sensor = self.sensors.get(sensor_id)
        return sensor.role if sensor else None

    def value_of(self, sensor_id: str) -> bool | None:
        """Last known value of a sensor (None when unknown)."""
        record = self._runtime.get(sensor_id)
        return record.last_known_value if record else None

    def sensors_with_role(self, role: SensorRole) -> list[SensorDescriptor]:
        """Configured sensors of a role, in configuration order."""
        return [s for s in self.sensors.values() if s.role == role]

    def snapshot(self) -> dict[str, bool | None]:
        """Copy of the last known value of every tracked sensor."""
        return {sensor_id: r.last_known_value for sensor_id, r in self._runtime.items()}
