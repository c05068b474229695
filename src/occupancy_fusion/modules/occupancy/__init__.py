"""
Fused occupancy module.

Computes one occupied/vacant signal per virtual device from trigger and
reset sensors.

Features:
- Rising/falling edge detection with duplicate suppression
- OCCUPIED / UNOCCUPIED / UNKNOWN / PAUSED hysteresis states
- T_ENTER exit confirmation, optional T_CLEAR inactivity decay
- Wait-for-falling-edge when every motion sensor still reads true
- Per-sensor staleness and an all-stale fail-safe (fails toward vacant)
- Pause/resume with a fresh sensor snapshot on resume
"""

from .module import OccupancyFusionModule
from .device import CAPABILITY_DATA_STALE, CAPABILITY_OCCUPANCY, FusionDevice
from .config import build_device_config
from .errors import FusionErrorId
from .models import (
    ClearTimerPolicy,
    DeviceConfig,
    EdgeKind,
    EngineResult,
    OccupancyState,
    SensorDescriptor,
    SensorRole,
    StateTransition,
    TimerKind,
)
from .engine import OccupancyStateMachine

__all__ = [
    "OccupancyFusionModule",
    "FusionDevice",
    "OccupancyStateMachine",
    "CAPABILITY_OCCUPANCY",
    "CAPABILITY_DATA_STALE",
    "build_device_config",
    "FusionErrorId",
    "ClearTimerPolicy",
    "DeviceConfig",
    "EdgeKind",
    "EngineResult",
    "OccupancyState",
    "SensorDescriptor",
    "SensorRole",
    "StateTransition",
    "TimerKind",
]
