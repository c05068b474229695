"""FusionDevice - one virtual occupancy device.

A device owns its sensor runtime map, aggregator, staleness monitor, state
machine, fail-safe evaluator and pause controller. All of them are private to
the device: two devices never share bookkeeping.

Every public entry point is wrapped. Before mutating, the device takes a
checkpoint. If anything raises, the checkpoint is restored, the failure is
logged with its error id and the call returns normally. After each entry
point the two published capabilities are recomputed and written through the
host's publisher, but only when their value actually changed.

Like the engine, the device is time-agnostic. The host calls
``check_timeouts()``/``sweep()`` (or ``tick()``) and schedules the next call
from ``get_next_timeout()``.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from .aggregator import SensorAggregator
from .engine import OccupancyStateMachine
from .errors import FusionErrorId
from .failsafe import FailSafeEvaluator
from .models import (
    DeviceConfig,
    EngineResult,
    OccupancyState,
    PendingTimer,
    SensorRuntimeState,
    StateTransition,
    TimerKind,
)
from .pause import PauseController, SnapshotReader
from .staleness import StaleSensorMonitor

logger = logging.getLogger(__name__)

CAPABILITY_OCCUPANCY = "alarm_occupancy"
CAPABILITY_DATA_STALE = "alarm_data_stale"

Publisher = Callable[[str, bool], None]


class FusionDevice:
    """
    A fused occupancy device.

    Features:
    - Edge-triggered aggregation of trigger (motion) and reset (door) sensors
    - Hysteresis with T_ENTER exit confirmation and optional T_CLEAR decay
    - Per-sensor staleness with an all-stale fail-safe
    - Manual pause/resume override with a fresh snapshot on resume

    Publishes two capabilities through ``publisher(capability, value)``:
    ``alarm_occupancy`` and ``alarm_data_stale``.
    """

    def __init__(
        self,
        config: DeviceConfig,
        publisher: Publisher,
        snapshot_reader: Optional[SnapshotReader] = None,
        warm_start: Optional[bool] = None,
        initial_values: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Create the device.

        Args:
            config: Device configuration.
            publisher: Host capability writer, called as publisher(capability, value).
            snapshot_reader: Reads current sensor values from the host; used to
                seed the aggregator at startup (unless initial_values is given)
                and on resume.
            warm_start: Last published occupancy to start from. When None the
                initial state is derived from the seeded sensor values.
            initial_values: Sensor values to seed the aggregator with.
            now: Start time (defaults to datetime.now(UTC)).

        Nothing is published until ``start()`` is called.
        """
        if now is None:
            now = datetime.now(UTC)

        self.config = config
        self.device_id = config.device_id
        self._publisher = publisher
        self._torn_down = False

        # Published value cache; None means "never written"
        self._published: Dict[str, Optional[bool]] = {
            CAPABILITY_OCCUPANCY: None,
            CAPABILITY_DATA_STALE: None,
        }

        self._runtime: Dict[str, SensorRuntimeState] = {}
        self._monitor = StaleSensorMonitor(
            {s.id: config.timeout_for(s) for s in config.sensors},
            self._runtime,
            now,
            sweep_interval=config.sweep_interval,
        )
        self._aggregator = SensorAggregator(config.sensors, self._runtime)

        seed = initial_values
        if seed is None and snapshot_reader is not None:
            seed = self._read_initial_snapshot(snapshot_reader)
        if seed:
            self._aggregator.initialize_from_snapshot(seed)

        self._machine = OccupancyStateMachine(
            config, self._aggregator, self._monitor, now, warm_start=warm_start
        )
        self._failsafe = FailSafeEvaluator(self._monitor, self._machine)
        self._pause = PauseController(self._machine, self._aggregator, snapshot_reader)

        self._created_at = now
        logger.debug(
            f"Device {self.device_id} created: {len(config.trigger_sensors)} trigger, "
            f"{len(config.reset_sensors)} reset sensor(s), state={self._machine.state.value}"
        )

    def start(self, now: Optional[datetime] = None) -> EngineResult:
        """Evaluate the fail-safe for the initial sensor set and publish.

        Must be called once after construction, before the host relies on
        the published capabilities.
        """
        if now is None:
            now = self._created_at
        if self._ignored("start"):
            return self._empty()

        logger.info(f"Device {self.device_id} started in {self._machine.state.value}")
        return self._guarded(
            FusionErrorId.FAIL_SAFE_FAILED, lambda: self._failsafe.evaluate(now)
        )

    # --- Queries ---

    @property
    def state(self) -> OccupancyState:
        return self._machine.state

    @property
    def occupied(self) -> bool:
        """Computed occupancy value (what should be published)."""
        return self._machine.occupied

    @property
    def data_stale(self) -> bool:
        """Computed data-quality value: True if any sensor is stale."""
        return self._monitor.any_stale()

    @property
    def is_paused(self) -> bool:
        return self._pause.is_paused

    @property
    def waiting_for_falling_edge(self) -> bool:
        return self._machine.waiting_for_falling_edge

    @property
    def pending_timers(self) -> Dict[TimerKind, PendingTimer]:
        return self._machine.pending_timers

    @property
    def fail_safe_active(self) -> bool:
        return self._failsafe.active

    @property
    def config_sensor_ids(self) -> List[str]:
        """Ids of the configured sensors, reset sensors first."""
        return [s.id for s in self.config.sensors]

    @property
    def is_torn_down(self) -> bool:
        return self._torn_down

    def published_value(self, capability: str) -> Optional[bool]:
        """Last value successfully written for a capability (None if never)."""
        return self._published.get(capability)

    def get_next_timeout(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """When the host should next call ``tick()``.

        Returns the earliest of the pending timers and the next staleness
        sweep, or None once the device is torn down.
        """
        if self._torn_down:
            return None

        candidates = [
            t for t in (self._machine.next_expiration(), self._monitor.next_sweep_at) if t
        ]
        return min(candidates) if candidates else None

    def get_state(self) -> Dict:
        """Current device status as a JSON-friendly dict."""
        return {
            "device_id": self.device_id,
            "state": self._machine.state.value,
            "occupied": self._machine.occupied,
            "data_stale": self._monitor.any_stale(),
            "paused": self._pause.is_paused,
            "waiting_for_falling_edge": self._machine.waiting_for_falling_edge,
            "fail_safe_active": self._failsafe.active,
            "stale_sensors": self._monitor.stale_sensors(),
            "timers": {
                kind.value: timer.fire_at.isoformat()
                for kind, timer in self._machine.pending_timers.items()
            },
        }

    def dump_state(self) -> Dict:
        """Export what a host needs to warm-start this device later."""
        return {
            "occupied": self._machine.occupied,
            "state": self._machine.state.value,
            "sensor_values": {
                sensor.id: self._aggregator.value_of(sensor.id) for sensor in self.config.sensors
            },
        }

    # --- Inbound events ---

    def on_sensor_value(
        self,
        sensor_id: str,
        value: Any,
        capability: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EngineResult:
        """Handle a value-changed notification from the host's sensor layer.

        Args:
            sensor_id: Reporting sensor.
            value: New value; anything but a bool is a malformed observation.
            capability: Reporting capability. Notifications for a capability
                other than the configured one are ignored.
            now: Observation time (defaults to datetime.now(UTC)).
        """
        if now is None:
            now = datetime.now(UTC)
        if self._ignored("observation"):
            return self._empty()

        descriptor = self._aggregator.sensors.get(sensor_id)
        if descriptor and capability and capability != descriptor.capability:
            logger.debug(
                f"{self.device_id}: {sensor_id}.{capability} is not the monitored "
                f"capability ({descriptor.capability}) - ignored"
            )
            return self._empty()

        return self._guarded(
            FusionErrorId.OBSERVATION_HANDLER_FAILED,
            lambda: self._observe(sensor_id, value, now),
        )

    def check_timeouts(self, now: Optional[datetime] = None) -> EngineResult:
        """Fire expired Enter/Clear timers."""
        if now is None:
            now = datetime.now(UTC)
        if self._ignored("timer check"):
            return self._empty()

        return self._guarded(
            FusionErrorId.TIMER_HANDLER_FAILED, lambda: self._machine.check_timeouts(now)
        )

    def fire_timer(
        self, kind: TimerKind, generation: int, now: Optional[datetime] = None
    ) -> EngineResult:
        """Fire one timer by kind and generation (hosts with real timers)."""
        if now is None:
            now = datetime.now(UTC)
        if self._ignored("timer"):
            return self._empty()

        return self._guarded(
            FusionErrorId.TIMER_HANDLER_FAILED,
            lambda: self._machine.fire_timer(kind, generation, now),
        )

    def sweep(self, now: Optional[datetime] = None) -> EngineResult:
        """Run the staleness sweep and re-evaluate the fail-safe on changes."""
        if now is None:
            now = datetime.now(UTC)
        if self._ignored("sweep"):
            return self._empty()

        return self._guarded(FusionErrorId.SWEEP_FAILED, lambda: self._sweep(now))

    def tick(self, now: Optional[datetime] = None) -> EngineResult:
        """Run whatever is due at ``now``: the sweep, then expired timers."""
        if now is None:
            now = datetime.now(UTC)
        if self._ignored("tick"):
            return self._empty()

        transitions: List[StateTransition] = []
        if self._monitor.sweep_due(now):
            transitions.extend(self.sweep(now).transitions)
        transitions.extend(self.check_timeouts(now).transitions)
        return EngineResult(next_expiration=self.get_next_timeout(now), transitions=transitions)

    def pause(self, occupied: bool, now: Optional[datetime] = None) -> EngineResult:
        """Suspend automatic evaluation and publish ``occupied``."""
        if now is None:
            now = datetime.now(UTC)
        if self._ignored("pause"):
            return self._empty()

        return self._guarded(
            FusionErrorId.PAUSE_FAILED, lambda: self._pause.pause(bool(occupied), now)
        )

    def resume(self, now: Optional[datetime] = None) -> EngineResult:
        """Resume automatic evaluation from a fresh sensor snapshot."""
        if now is None:
            now = datetime.now(UTC)
        if self._ignored("resume"):
            return self._empty()

        return self._guarded(FusionErrorId.RESUME_FAILED, lambda: self._resume(now))

    def teardown(self) -> None:
        """Cancel all timers and stop the staleness sweep."""
        if self._torn_down:
            return

        try:
            self._machine.cancel_all_timers()
            self._monitor.stop()
        except Exception as e:
            logger.error(
                f"{FusionErrorId.TEARDOWN_FAILED} {self.device_id}: teardown failed: {e}",
                exc_info=True,
            )
        self._torn_down = True
        logger.info(f"Device {self.device_id} torn down")

    # --- Internals ---

    def _observe(self, sensor_id: str, value: Any, now: datetime) -> EngineResult:
        edge = self._aggregator.record_observation(sensor_id, value, now)
        if not isinstance(value, bool):
            return self._empty()

        transitions: List[StateTransition] = []
        if self._monitor.touch(sensor_id, now) is not None:
            transitions.extend(self._failsafe.evaluate(now).transitions)

        transitions.extend(self._machine.handle_edge(sensor_id, edge, now).transitions)
        return EngineResult(next_expiration=self.get_next_timeout(now), transitions=transitions)

    def _sweep(self, now: datetime) -> EngineResult:
        changes = self._monitor.sweep(now)
        if not changes:
            return self._empty()
        return self._failsafe.evaluate(now)

    def _resume(self, now: datetime) -> EngineResult:
        transitions = list(self._pause.resume(now).transitions)
        transitions.extend(self._failsafe.evaluate(now).transitions)
        return EngineResult(next_expiration=self.get_next_timeout(now), transitions=transitions)

    def _guarded(
        self, error_id: FusionErrorId, action: Callable[[], EngineResult]
    ) -> EngineResult:
        """Run ``action`` with rollback on failure, then publish."""
        saved = self._checkpoint()
        try:
            result = action()
        except Exception as e:
            self._rollback(saved)
            logger.error(
                f"{error_id} {self.device_id}: {e} - previous state kept", exc_info=True
            )
            result = self._empty()

        self._publish()
        return EngineResult(
            next_expiration=self.get_next_timeout(),
            transitions=result.transitions,
        )

    def _checkpoint(self) -> tuple:
        runtime = {sensor_id: replace(record) for sensor_id, record in self._runtime.items()}
        return (
            self._machine.checkpoint(),
            runtime,
            self._monitor.next_sweep_at,
            self._failsafe.active,
        )

    def _rollback(self, saved: tuple) -> None:
        machine, runtime, next_sweep_at, failsafe_active = saved
        self._machine.restore(machine)
        # The runtime map is shared by reference; restore it in place
        self._runtime.clear()
        self._runtime.update(runtime)
        self._monitor.next_sweep_at = next_sweep_at
        self._failsafe.active = failsafe_active

    def _publish(self) -> None:
        """Write both capabilities if their computed value changed."""
        self._write(CAPABILITY_OCCUPANCY, self._machine.occupied)
        self._write(CAPABILITY_DATA_STALE, self._monitor.any_stale())

    def _write(self, capability: str, value: bool) -> None:
        previous = self._published[capability]
        if previous == value:
            return

        # Cached before the call: the publisher may re-enter this device
        self._published[capability] = value
        try:
            self._publisher(capability, value)
        except Exception as e:
            # Back to the old value so the next evaluation retries the write
            self._published[capability] = previous
            logger.error(
                f"{FusionErrorId.PUBLISH_FAILED} {self.device_id}: failed to publish "
                f"{capability}={value}: {e}",
                exc_info=True,
            )
            return

        logger.debug(f"{self.device_id}: published {capability}={value}")

    def _read_initial_snapshot(self, reader: SnapshotReader) -> Dict[str, Any]:
        try:
            return dict(reader())
        except Exception as e:
            logger.error(
                f"{FusionErrorId.SNAPSHOT_READ_FAILED} {self.device_id}: failed to read "
                f"initial sensor values: {e}",
                exc_info=True,
            )
            return {}

    def _ignored(self, what: str) -> bool:
        if self._torn_down:
            logger.debug(f"{self.device_id}: {what} after teardown - ignored")
            return True
        return False

    def _empty(self) -> EngineResult:
        return EngineResult(next_expiration=self.get_next_timeout())
