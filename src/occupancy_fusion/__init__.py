"""
occupancy-fusion: stable room occupancy from unreliable binary sensors.

This library fuses motion ("trigger") and door/contact ("reset") sensors
into one virtual occupancy signal:
- Edge-triggered sensor aggregation
- Hysteresis state machine with entry/exit confirmation timers
- Per-sensor staleness tracking with a fail-safe
- Manual pause/resume override
- Synchronous Event Bus for host integration
"""

from occupancy_fusion.core.bus import Event, EventBus, EventFilter
from occupancy_fusion.modules.occupancy import FusionDevice, OccupancyFusionModule

__version__ = "0.1.0"

__all__ = [
    "Event",
    "EventBus",
    "EventFilter",
    "FusionDevice",
    "OccupancyFusionModule",
]
