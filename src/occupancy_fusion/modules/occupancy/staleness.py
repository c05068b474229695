"""Per-sensor freshness tracking.

The monitor is decoupled from occupancy semantics: it only knows when each
configured sensor last reported and how long that report stays trustworthy.
Freshness is refreshed by ``touch()`` on every observation and recomputed by
a fixed-interval ``sweep()``. Both report only the flips (fresh -> stale and
stale -> fresh), never a repeat while a sensor stays in the same condition.

The monitor is time-agnostic like the occupancy engine: the host passes
``now`` and schedules the next sweep from ``next_sweep_at``.
"""

import logging
from datetime import datetime, timedelta

from .models import SensorRuntimeState, StalenessChange

_LOGGER = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = timedelta(seconds=60)


class StaleSensorMonitor:
    """Freshness bookkeeping for one device's configured sensors."""

    def __init__(
        self,
        timeouts: dict[str, timedelta],
        runtime: dict[str, SensorRuntimeState],
        now: datetime,
        sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        """Initialize the monitor and create runtime records.

        Args:
            timeouts: Freshness timeout per configured sensor id.
            runtime: Per-sensor runtime map shared with the aggregator.
            now: Start of tracking; every sensor starts fresh at this time.
            sweep_interval: Fixed interval between sweeps.
        """
        self._runtime = runtime
        self._sensor_ids: list[str] = list(timeouts)
        self.sweep_interval = sweep_interval
        self.next_sweep_at: datetime | None = now + sweep_interval
        self._stopped = False

        for sensor_id, timeout in timeouts.items():
            if sensor_id not in runtime:
                runtime[sensor_id] = SensorRuntimeState(
                    last_known_value=None,
                    last_updated_at=now,
                    timeout=timeout,
                )

    def touch(self, sensor_id: str, now: datetime) -> StalenessChange | None:
        """Record that a sensor reported.

        Returns:
            A "became fresh" change if the sensor was stale, otherwise None.
        """
        if sensor_id not in self._sensor_ids:
            return None

        record = self._runtime[sensor_id]
        record.last_updated_at = now

        if record.is_stale:
            record.is_stale = False
            _LOGGER.info(f"Sensor {sensor_id} is fresh again")
            return StalenessChange(sensor_id=sensor_id, is_stale=False, at=now)
        return None

    def sweep(self, now: datetime) -> list[StalenessChange]:
        """Recompute staleness for every configured sensor.

        Returns:
            One change per sensor that flipped since the last sweep.
        """
        if self._stopped:
            _LOGGER.debug("Sweep skipped: monitor stopped")
            return []

        changes: list[StalenessChange] = []
        for sensor_id in self._sensor_ids:
            record = self._runtime[sensor_id]
            is_stale = now - record.last_updated_at > record.timeout

            if is_stale == record.is_stale:
                continue

            record.is_stale = is_stale
            changes.append(StalenessChange(sensor_id=sensor_id, is_stale=is_stale, at=now))
            if is_stale:
                _LOGGER.info(
                    f"Sensor {sensor_id} became stale "
                    f"(no report since {record.last_updated_at.isoformat()}, "
                    f"timeout {record.timeout})"
                )
            else:
                _LOGGER.info(f"Sensor {sensor_id} is fresh again")

        self.next_sweep_at = now + self.sweep_interval
        _LOGGER.debug(f"Sweep at {now}: {self.stale_count()}/{len(self._sensor_ids)} stale")
        return changes

    def sweep_due(self, now: datetime) -> bool:
        """Whether the fixed-interval sweep should run at ``now``."""
        return self.next_sweep_at is not None and now >= self.next_sweep_at

    def stop(self) -> None:
        """Stop sweeping (device teardown)."""
        self._stopped = True
        self.next_sweep_at = None

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def is_stale(self, sensor_id: str) -> bool:
        """Whether a configured sensor is currently stale (unknown ids: False)."""
        record = self._runtime.get(sensor_id)
        return sensor_id in self._sensor_ids and record is not None and record.is_stale

    def any_stale(self) -> bool:
        return self.stale_count() > 0

    def all_stale(self) -> bool:
        """True when every configured sensor is stale (False with no sensors)."""
        return bool(self._sensor_ids) and self.stale_count() == len(self._sensor_ids)

    def stale_count(self) -> int:
        return len(self.stale_sensors())

    def stale_sensors(self) -> list[str]:
        """Ids of stale sensors, in configuration order."""
        return [s for s in self._sensor_ids if self._runtime[s].is_stale]
