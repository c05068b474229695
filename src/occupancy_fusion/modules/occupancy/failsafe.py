"""Fail-safe policy for devices whose sensors can no longer be trusted.

When every configured sensor is stale the device is forced into UNKNOWN with
an UNOCCUPIED default: the room fails toward the energy-saving state, never
toward occupied. Partial staleness changes nothing because any single fresh
sensor is still trusted. Recovery is passive; ordinary transitions resume on
the next real observation from a fresh sensor.
"""

import logging
from datetime import datetime

from .engine import OccupancyStateMachine
from .models import EngineResult, OccupancyState
from .staleness import StaleSensorMonitor

logger = logging.getLogger(__name__)


class FailSafeEvaluator:
    """Re-evaluates the fail-safe condition on staleness changes."""

    def __init__(self, monitor: StaleSensorMonitor, machine: OccupancyStateMachine) -> None:
        self._monitor = monitor
        self._machine = machine
        self.active = False

    def evaluate(self, now: datetime) -> EngineResult:
        """Apply the fail-safe if all sensors are stale and the device is not paused.

        Called at startup and whenever the set of stale sensors changes.
        """
        if not self._monitor.all_stale():
            if self.active:
                logger.info(
                    f"{self._machine.device_id}: fail-safe released "
                    f"({self._monitor.stale_count()} sensor(s) still stale)"
                )
            self.active = False
            return EngineResult(next_expiration=self._machine.next_expiration())

        if self._machine.state == OccupancyState.PAUSED:
            logger.debug(f"{self._machine.device_id}: all sensors stale while paused - no action")
            return EngineResult(next_expiration=self._machine.next_expiration())

        if self.active and self._machine.fail_safe_applied:
            return EngineResult(next_expiration=self._machine.next_expiration())

        logger.warning(
            f"{self._machine.device_id}: all {self._monitor.stale_count()} sensor(s) stale - "
            f"applying fail-safe (UNKNOWN, default unoccupied)"
        )
        self.active = True
        return self._machine.apply_fail_safe(now)
