"""
Core components of the occupancy-fusion kernel.

This package contains:
- bus: Event Bus implementation
"""

from occupancy_fusion.core.bus import Event, EventBus, EventFilter

__all__ = [
    "Event",
    "EventBus",
    "EventFilter",
]
