"""
Modules package for occupancy-fusion.

Modules are plug-ins that attach to the event bus and host devices.
"""

from occupancy_fusion.modules.base import DeviceModule

__all__ = ["DeviceModule"]
