"""
Base class for modules that host virtual devices on the event bus.

A module turns bus events into per-device inputs and emits semantic events
for the values its devices publish. Modules never schedule anything
themselves: the host drives them through ``tick()`` at the deadline
reported by ``get_next_timeout()``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional


class DeviceModule(ABC):
    """Device-hosting module plugged into an EventBus."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Module id; used as the ``source`` of emitted events."""

    @property
    @abstractmethod
    def CURRENT_CONFIG_VERSION(self) -> int:
        """Settings version produced by ``migrate_config()``."""

    @abstractmethod
    def attach(self, bus) -> None:
        """Capture the bus and register event subscriptions."""

    @abstractmethod
    def default_config(self) -> Dict:
        """Settings a new device starts from."""

    @abstractmethod
    def config_schema(self) -> Dict:
        """JSON schema of the per-device settings, for UIs."""

    @abstractmethod
    def tick(self, now: Optional[datetime] = None) -> None:
        """Run whatever is due at ``now`` on every hosted device."""

    @abstractmethod
    def get_next_timeout(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest deadline across hosted devices (None: nothing pending)."""

    def migrate_config(self, config: Dict) -> Dict:
        """Upgrade stored settings to ``CURRENT_CONFIG_VERSION``.

        Default implementation returns config unchanged.
        """
        return config

    def dump_state(self) -> Dict:
        """Runtime state for the host to persist, keyed by device id."""
        return {}

    def restore_state(self, state: Dict) -> None:
        """Load state produced by ``dump_state()``; ignored by default."""
