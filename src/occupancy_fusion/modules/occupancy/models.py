"""Data models for the occupancy fusion module.

This module defines the data structures shared by the aggregator, the
staleness monitor and the state machine. Configuration and result classes
are frozen (immutable); the per-sensor runtime record is mutable and owned
by exactly one device.

Licensed under MIT License
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


class EdgeKind(Enum):
    """Classification of a boolean observation against the previous value.

    RISING: previous false/unknown -> true
    FALLING: previous true -> false
    NONE: unchanged (or not classifiable)
    """

    RISING = "rising"
    FALLING = "falling"
    NONE = "none"


class SensorRole(Enum):
    """What a sensor's rising edge means for the room."""

    TRIGGER = "trigger"  # Motion/presence: rising edge signals presence
    RESET = "reset"  # Door/contact: rising edge signals a possible exit


class OccupancyState(Enum):
    """Internal state of a fused occupancy device."""

    OCCUPIED = "OCCUPIED"
    UNOCCUPIED = "UNOCCUPIED"
    UNKNOWN = "UNKNOWN"
    PAUSED = "PAUSED"


class TimerKind(Enum):
    """The two confirmation timers of the state machine."""

    ENTER = "enter"  # T_ENTER: confirm an exit after a reset event
    CLEAR = "clear"  # T_CLEAR: decay toward UNOCCUPIED without activity


class ClearTimerPolicy(Enum):
    """When the T_CLEAR decay path applies."""

    DISABLED = "disabled"
    TRIGGER_ONLY = "trigger_only"  # Only rooms without reset sensors
    DOOR_OPEN = "door_open"  # Only while a reset sensor reads open
    ALWAYS = "always"


@dataclass(frozen=True)
class SensorDescriptor:
    """Immutable configuration for one monitored sensor.

    Attributes:
        id: Sensor/device identifier used by the host.
        capability: Capability being monitored (e.g. "alarm_motion").
        role: TRIGGER or RESET.
        display_name: Optional human-readable name for logs.
        stale_timeout: Optional freshness timeout (role default if None).
    """

    id: str
    capability: str
    role: SensorRole
    display_name: str | None = None
    stale_timeout: timedelta | None = None

    @property
    def label(self) -> str:
        """Name used in log lines."""
        return self.display_name or self.id


@dataclass
class SensorRuntimeState:
    """Runtime record for one sensor (mutable, device-owned).

    Attributes:
        last_known_value: Last boolean seen, None while unknown.
        last_updated_at: When the sensor last reported (or tracking began).
        timeout: Freshness timeout for this sensor.
        is_stale: Result of the last sweep/observation for this sensor.
    """

    last_known_value: bool | None
    last_updated_at: datetime
    timeout: timedelta
    is_stale: bool = False


@dataclass(frozen=True)
class PendingTimer:
    """A deadline for one of the confirmation timers.

    Attributes:
        kind: ENTER or CLEAR.
        target_state: State to commit when the timer fires.
        fire_at: Deadline.
        generation: Arming counter; only the current generation may fire.
    """

    kind: TimerKind
    target_state: OccupancyState
    fire_at: datetime
    generation: int


@dataclass(frozen=True)
class MachineSnapshot:
    """Committed state-machine variables, used for pause and rollback."""

    state: OccupancyState
    last_stable_occupancy: bool
    waiting_for_falling_edge: bool
    timers: tuple[PendingTimer, ...] = ()
    paused_value: bool | None = None


@dataclass(frozen=True)
class StalenessChange:
    """A one-time fresh/stale flip for a sensor."""

    sensor_id: str
    is_stale: bool
    at: datetime


@dataclass(frozen=True)
class DeviceConfig:
    """Configuration for one fused occupancy device.

    Attributes:
        device_id: Unique identifier of the virtual device.
        trigger_sensors: Ordered trigger sensor descriptors.
        reset_sensors: Ordered reset sensor descriptors.
        t_enter: Confirmation delay before committing to UNOCCUPIED.
        t_clear: Inactivity decay delay.
        stale_trigger_timeout: Default freshness timeout for trigger sensors.
        stale_reset_timeout: Default freshness timeout for reset sensors.
        sweep_interval: Fixed interval of the staleness sweep.
        clear_policy: When the T_CLEAR decay path applies.
    """

    device_id: str
    trigger_sensors: tuple[SensorDescriptor, ...] = ()
    reset_sensors: tuple[SensorDescriptor, ...] = ()
    t_enter: timedelta = timedelta(seconds=20)
    t_clear: timedelta = timedelta(seconds=600)
    stale_trigger_timeout: timedelta = timedelta(minutes=30)
    stale_reset_timeout: timedelta = timedelta(minutes=30)
    sweep_interval: timedelta = timedelta(seconds=60)
    clear_policy: ClearTimerPolicy = ClearTimerPolicy.TRIGGER_ONLY

    @property
    def sensors(self) -> tuple[SensorDescriptor, ...]:
        """All descriptors, reset sensors first."""
        return self.reset_sensors + self.trigger_sensors

    def timeout_for(self, sensor: SensorDescriptor) -> timedelta:
        """Freshness timeout for a sensor (own value or role default)."""
        if sensor.stale_timeout is not None:
            return sensor.stale_timeout
        if sensor.role == SensorRole.TRIGGER:
            return self.stale_trigger_timeout
        return self.stale_reset_timeout

    @property
    def clear_timer_enabled(self) -> bool:
        """Whether the T_CLEAR decay path applies to this room."""
        if self.clear_policy == ClearTimerPolicy.ALWAYS:
            return True
        if self.clear_policy == ClearTimerPolicy.TRIGGER_ONLY:
            return len(self.reset_sensors) == 0
        if self.clear_policy == ClearTimerPolicy.DOOR_OPEN:
            return len(self.reset_sensors) > 0
        return False


@dataclass(frozen=True)
class StateTransition:
    """A record of a state change for debugging and publishing."""

    device_id: str
    previous_state: OccupancyState
    new_state: OccupancyState
    previous_occupied: bool
    new_occupied: bool
    reason: str

    @property
    def occupancy_changed(self) -> bool:
        """True if the published occupancy boolean flipped."""
        return self.previous_occupied != self.new_occupied


@dataclass(frozen=True)
class EngineResult:
    """Instructions for the host application."""

    next_expiration: datetime | None
    transitions: list[StateTransition] = field(default_factory=list)
