"""The hysteresis state machine for fused occupancy.

This module contains the pure business logic. It accepts classified sensor
edges and time, mutates the device's committed state and returns state
transitions and the next timer deadline.

States: OCCUPIED, UNOCCUPIED, UNKNOWN, PAUSED.

- A fresh trigger RISING edge always means presence: OCCUPIED, timers off.
- A fresh reset RISING edge while OCCUPIED/UNKNOWN means a possible exit:
  UNKNOWN, and the T_ENTER timer confirms the exit. If every fresh trigger
  sensor still reads true the timer waits for a trigger FALLING edge first,
  because a sensor stuck on "motion" cannot tell us anybody is leaving.
- The optional T_CLEAR timer decays the room to UNOCCUPIED after a period
  without sensor activity. Its policy decides which rooms get it: rooms
  without reset sensors, leaky rooms with a door open, every room, or none.

The published occupancy boolean keeps the last confirmed value while the
state is UNKNOWN, so downstream automations do not flap. While PAUSED it is
the manual value.

Licensed under MIT License
"""

import logging
from datetime import datetime

from .aggregator import SensorAggregator
from .errors import FusionErrorId
from .models import (
    ClearTimerPolicy,
    DeviceConfig,
    EdgeKind,
    EngineResult,
    MachineSnapshot,
    OccupancyState,
    PendingTimer,
    SensorRole,
    StateTransition,
    TimerKind,
)
from .staleness import StaleSensorMonitor

_LOGGER = logging.getLogger(__name__)


class OccupancyStateMachine:
    """The functional core of one fused occupancy device."""

    def __init__(
        self,
        config: DeviceConfig,
        aggregator: SensorAggregator,
        monitor: StaleSensorMonitor,
        now: datetime,
        warm_start: bool | None = None,
    ) -> None:
        """Initialize the state machine.

        Args:
            config: Device configuration (timer durations, clear policy).
            aggregator: Seeded sensor aggregator of this device.
            monitor: Staleness monitor of this device.
            now: Current datetime.
            warm_start: Optional last published occupancy. When None the
                initial state is derived from the seeded sensor values.
        """
        self.config = config
        self.device_id = config.device_id
        self._aggregator = aggregator
        self._monitor = monitor

        self.state = self._initial_state(warm_start)
        self.last_stable_occupancy = self.state == OccupancyState.OCCUPIED
        self.waiting_for_falling_edge = False
        self.paused_value: bool | None = None

        self._timers: dict[TimerKind, PendingTimer] = {}
        self._generation = 0

        self._refresh_clear_timer(now)
        _LOGGER.info(f"{self.device_id}: initial state {self.state.value}")

    # --- Queries ---

    @property
    def occupied(self) -> bool:
        """Published occupancy boolean.

        OCCUPIED -> True, UNOCCUPIED -> False, UNKNOWN -> last confirmed
        value, PAUSED -> the manual value.
        """
        if self.state == OccupancyState.OCCUPIED:
            return True
        if self.state == OccupancyState.PAUSED and self.paused_value is not None:
            return self.paused_value
        if self.state in (OccupancyState.UNKNOWN, OccupancyState.PAUSED):
            return self.last_stable_occupancy
        return False

    @property
    def pending_timers(self) -> dict[TimerKind, PendingTimer]:
        return dict(self._timers)

    def next_expiration(self) -> datetime | None:
        """Earliest pending timer deadline, or None if no timer is armed."""
        if not self._timers:
            return None
        return min(t.fire_at for t in self._timers.values())

    def checkpoint(self) -> MachineSnapshot:
        """Capture the committed state (for pause and rollback)."""
        return MachineSnapshot(
            state=self.state,
            last_stable_occupancy=self.last_stable_occupancy,
            waiting_for_falling_edge=self.waiting_for_falling_edge,
            timers=tuple(self._timers.values()),
            paused_value=self.paused_value,
        )

    def restore(self, snapshot: MachineSnapshot) -> None:
        """Put back a previously captured state, timers included."""
        self.state = snapshot.state
        self.last_stable_occupancy = snapshot.last_stable_occupancy
        self.waiting_for_falling_edge = snapshot.waiting_for_falling_edge
        self._timers = {t.kind: t for t in snapshot.timers}
        self.paused_value = snapshot.paused_value

    # --- Events ---

    def handle_edge(self, sensor_id: str, edge: EdgeKind, now: datetime) -> EngineResult:
        """Process one classified sensor edge.

        Args:
            sensor_id: The sensor that reported.
            edge: Edge kind computed by the aggregator.
            now: Current datetime (time-agnostic).

        Returns:
            EngineResult with state transitions and next expiration time.
        """
        transitions: list[StateTransition] = []

        if self.state == OccupancyState.PAUSED:
            _LOGGER.debug(f"{self.device_id}: {sensor_id} {edge.value} ignored (paused)")
            return self._result(transitions)

        previous = (self.state, self.occupied)
        if self._apply_edge(sensor_id, edge, now):
            self._refresh_clear_timer(now)
            self._record(previous, f"{sensor_id} {edge.value}", transitions)

        return self._result(transitions)

    def check_timeouts(self, now: datetime) -> EngineResult:
        """Fire every timer whose deadline has passed, earliest first.

        Args:
            now: Current datetime.

        Returns:
            EngineResult with state transitions and next expiration time.
        """
        transitions: list[StateTransition] = []

        for timer in sorted(self._timers.values(), key=lambda t: t.fire_at):
            if timer.fire_at > now:
                break
            # An earlier expiry in this loop may already have cancelled it
            if self._timers.get(timer.kind) is not timer:
                continue
            self._fire(timer.kind, timer.generation, now, transitions)

        return self._result(transitions)

    def fire_timer(self, kind: TimerKind, generation: int, now: datetime) -> EngineResult:
        """Fire a specific timer (for hosts that schedule real timers)."""
        transitions: list[StateTransition] = []
        self._fire(kind, generation, now, transitions)
        return self._result(transitions)

    def apply_fail_safe(self, now: datetime) -> EngineResult:
        """Force UNKNOWN with an UNOCCUPIED default (no sensor can be trusted)."""
        transitions: list[StateTransition] = []
        previous = (self.state, self.occupied)

        self.cancel_all_timers()
        self.waiting_for_falling_edge = False
        self.state = OccupancyState.UNKNOWN
        self.last_stable_occupancy = False

        self._record(previous, "fail_safe", transitions)
        return self._result(transitions)

    @property
    def fail_safe_applied(self) -> bool:
        """True if the machine already sits in the fail-safe state."""
        return (
            self.state == OccupancyState.UNKNOWN
            and not self.last_stable_occupancy
            and not self.waiting_for_falling_edge
            and not self._timers
        )

    def enter_pause(self, occupied: bool, now: datetime) -> EngineResult:
        """Suspend automatic evaluation and publish a fixed value.

        The manual value is kept apart from ``last_stable_occupancy``, which
        stays as it was when the pause began.
        """
        transitions: list[StateTransition] = []
        previous = (self.state, self.occupied)

        self.cancel_all_timers()
        self.waiting_for_falling_edge = False
        self.state = OccupancyState.PAUSED
        self.paused_value = occupied

        self._record(previous, "pause", transitions)
        return self._result(transitions)

    def resume_from(
        self,
        saved: MachineSnapshot,
        edges: list[tuple[str, EdgeKind]],
        now: datetime,
    ) -> EngineResult:
        """Leave PAUSED: restore the pre-pause state and apply missed edges.

        Timers that were pending before the pause stay cancelled; the UNKNOWN
        dwell restarts its confirmation from ``now``. All edges are applied as
        one step, so the resume produces at most one transition.

        Args:
            saved: Checkpoint taken when the pause began.
            edges: Edges between the pause baseline and the fresh snapshot,
                reset sensors first.
            now: Current datetime.
        """
        transitions: list[StateTransition] = []
        previous = (self.state, self.occupied)

        self.restore(saved)
        self.cancel_all_timers()
        if self.state == OccupancyState.UNKNOWN and not self.waiting_for_falling_edge:
            self._arm(TimerKind.ENTER, OccupancyState.UNOCCUPIED, now)

        for sensor_id, edge in edges:
            self._apply_edge(sensor_id, edge, now)

        self._refresh_clear_timer(now)
        self._record(previous, "resume", transitions)
        return self._result(transitions)

    def cancel_all_timers(self) -> None:
        for kind in list(self._timers):
            self._cancel(kind)

    # --- Transition rules ---

    def _apply_edge(self, sensor_id: str, edge: EdgeKind, now: datetime) -> bool:
        """Apply one edge to the state. Returns True if the edge was acted on."""
        role = self._aggregator.role_of(sensor_id)
        if role is None:
            _LOGGER.debug(f"{self.device_id}: {sensor_id} is not configured - ignored")
            return False

        if edge == EdgeKind.NONE:
            return False

        if self._monitor.is_stale(sensor_id):
            _LOGGER.debug(f"{self.device_id}: {sensor_id} {edge.value} ignored (sensor stale)")
            return False

        if role == SensorRole.TRIGGER:
            if edge == EdgeKind.RISING:
                self._on_trigger_rising(sensor_id)
            else:
                self._on_trigger_falling(sensor_id, now)
        elif edge == EdgeKind.RISING:
            self._on_reset_rising(sensor_id, now)
        else:
            _LOGGER.debug(f"{self.device_id}: reset sensor {sensor_id} cleared")

        return True

    def _on_trigger_rising(self, sensor_id: str) -> None:
        """Presence detected: commit OCCUPIED immediately."""
        if TimerKind.ENTER in self._timers:
            _LOGGER.info(f"{self.device_id}: motion on {sensor_id} before exit was confirmed")

        self.cancel_all_timers()
        self.waiting_for_falling_edge = False
        self.state = OccupancyState.OCCUPIED
        self.last_stable_occupancy = True

    def _on_trigger_falling(self, sensor_id: str, now: datetime) -> None:
        """Motion cleared: only meaningful while waiting after a reset event."""
        if not self.waiting_for_falling_edge:
            _LOGGER.debug(f"{self.device_id}: {sensor_id} cleared, not waiting - ignored")
            return

        self.waiting_for_falling_edge = False
        self._arm(TimerKind.ENTER, OccupancyState.UNOCCUPIED, now)
        _LOGGER.info(f"{self.device_id}: {sensor_id} cleared after reset event")

    def _on_reset_rising(self, sensor_id: str, now: datetime) -> None:
        """Possible exit: move to UNKNOWN and start (or defer) confirmation."""
        if self.state not in (OccupancyState.OCCUPIED, OccupancyState.UNKNOWN):
            _LOGGER.debug(
                f"{self.device_id}: reset {sensor_id} while {self.state.value} - nothing to confirm"
            )
            return

        self.state = OccupancyState.UNKNOWN

        if self._all_fresh_triggers_active():
            self._cancel(TimerKind.ENTER)
            self.waiting_for_falling_edge = True
            _LOGGER.info(
                f"{self.device_id}: reset {sensor_id} with all trigger sensors active - "
                f"waiting for a falling edge"
            )
        else:
            self.waiting_for_falling_edge = False
            self._arm(TimerKind.ENTER, OccupancyState.UNOCCUPIED, now)

    def _all_fresh_triggers_active(self) -> bool:
        """True if there is at least one fresh trigger and all of them read true."""
        fresh = [
            s
            for s in self._aggregator.sensors_with_role(SensorRole.TRIGGER)
            if not self._monitor.is_stale(s.id)
        ]
        return bool(fresh) and all(self._aggregator.value_of(s.id) is True for s in fresh)

    def _any_fresh_trigger_active(self) -> bool:
        return any(
            self._aggregator.value_of(s.id) is True and not self._monitor.is_stale(s.id)
            for s in self._aggregator.sensors_with_role(SensorRole.TRIGGER)
        )

    def _any_fresh_reset_open(self) -> bool:
        return any(
            self._aggregator.value_of(s.id) is True and not self._monitor.is_stale(s.id)
            for s in self._aggregator.sensors_with_role(SensorRole.RESET)
        )

    def _clear_path_open(self) -> bool:
        """Whether the policy lets T_CLEAR run right now."""
        if self.config.clear_policy != ClearTimerPolicy.DOOR_OPEN:
            return True
        return self.last_stable_occupancy and self._any_fresh_reset_open()

    def _refresh_clear_timer(self, now: datetime) -> None:
        """Restart the T_CLEAR decay after activity, or drop it when vacant.

        Under DOOR_OPEN the decay only runs for an occupied room that is
        leaky (a fresh reset sensor reads open); closing every door stops it.
        """
        if (
            not self.config.clear_timer_enabled
            or self.state in (OccupancyState.UNOCCUPIED, OccupancyState.PAUSED)
            or not self._clear_path_open()
        ):
            self._cancel(TimerKind.CLEAR)
            return
        self._arm(TimerKind.CLEAR, OccupancyState.UNOCCUPIED, now)

    def _initial_state(self, warm_start: bool | None) -> OccupancyState:
        """Start state from a warm-start value or the seeded sensor values.

        Without a warm-start value the room is OCCUPIED only if no fresh reset
        sensor reads true and at least one trigger sensor does.
        """
        if warm_start is not None:
            return OccupancyState.OCCUPIED if warm_start else OccupancyState.UNOCCUPIED

        for sensor in self._aggregator.sensors_with_role(SensorRole.RESET):
            if self._monitor.is_stale(sensor.id):
                continue
            if self._aggregator.value_of(sensor.id) is True:
                _LOGGER.debug(f"{self.device_id}: reset sensor {sensor.label} active at start")
                return OccupancyState.UNOCCUPIED

        if self._any_fresh_trigger_active():
            return OccupancyState.OCCUPIED
        return OccupancyState.UNOCCUPIED

    # --- Timers ---

    def _arm(self, kind: TimerKind, target: OccupancyState, now: datetime) -> None:
        """Arm a timer, superseding any prior timer of the same kind."""
        duration = self.config.t_enter if kind == TimerKind.ENTER else self.config.t_clear
        self._generation += 1
        self._timers[kind] = PendingTimer(
            kind=kind,
            target_state=target,
            fire_at=now + duration,
            generation=self._generation,
        )
        _LOGGER.debug(f"{self.device_id}: {kind.name} timer armed for {duration}")

    def _cancel(self, kind: TimerKind) -> None:
        if self._timers.pop(kind, None) is not None:
            _LOGGER.debug(f"{self.device_id}: {kind.name} timer cancelled")

    def _fire(
        self,
        kind: TimerKind,
        generation: int,
        now: datetime,
        transitions: list[StateTransition],
    ) -> None:
        timer = self._timers.get(kind)
        if timer is None or timer.generation != generation:
            _LOGGER.warning(
                f"{FusionErrorId.INVARIANT_VIOLATION} {self.device_id}: {kind.name} timer "
                f"#{generation} fired after it was cancelled - ignored"
            )
            return

        del self._timers[kind]
        previous = (self.state, self.occupied)

        if self.state == OccupancyState.PAUSED:
            _LOGGER.warning(
                f"{FusionErrorId.INVARIANT_VIOLATION} {self.device_id}: {kind.name} timer "
                f"fired while paused - ignored"
            )
            return

        if kind == TimerKind.ENTER:
            if self.state != OccupancyState.UNKNOWN:
                _LOGGER.warning(
                    f"{FusionErrorId.INVARIANT_VIOLATION} {self.device_id}: ENTER timer "
                    f"fired in {self.state.value} - ignored"
                )
                return
            _LOGGER.info(f"{self.device_id}: T_ENTER expired without motion")
            self._commit_vacant()
            self._record(previous, "enter_timeout", transitions)
            return

        if self.state == OccupancyState.UNOCCUPIED:
            return

        if not self._clear_path_open():
            _LOGGER.info(f"{self.device_id}: T_CLEAR expired with no open door - dropped")
            return

        if self._any_fresh_trigger_active():
            _LOGGER.info(f"{self.device_id}: T_CLEAR expired with motion still active - restarted")
            self._arm(TimerKind.CLEAR, OccupancyState.UNOCCUPIED, now)
            return

        _LOGGER.info(f"{self.device_id}: T_CLEAR expired without activity")
        self._commit_vacant()
        self._record(previous, "clear_timeout", transitions)

    def _commit_vacant(self) -> None:
        self.cancel_all_timers()
        self.waiting_for_falling_edge = False
        self.state = OccupancyState.UNOCCUPIED
        self.last_stable_occupancy = False

    # --- Results ---

    def _record(
        self,
        previous: tuple[OccupancyState, bool],
        reason: str,
        transitions: list[StateTransition],
    ) -> None:
        """Append a transition if the state or published value changed."""
        prev_state, prev_occupied = previous
        if prev_state == self.state and prev_occupied == self.occupied:
            return

        transition = StateTransition(
            device_id=self.device_id,
            previous_state=prev_state,
            new_state=self.state,
            previous_occupied=prev_occupied,
            new_occupied=self.occupied,
            reason=reason,
        )
        transitions.append(transition)
        _LOGGER.info(
            f"  {self.device_id}: {prev_state.value} -> {self.state.value} "
            f"(occupied={self.occupied}, {reason})"
        )

    def _result(self, transitions: list[StateTransition]) -> EngineResult:
        return EngineResult(
            next_expiration=self.next_expiration(),
            transitions=transitions,
        )
