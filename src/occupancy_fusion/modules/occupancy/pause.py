"""Manual pause/resume override for a fused occupancy device.

While paused the device publishes a fixed occupancy value. Observations are
still recorded for staleness bookkeeping but never acted upon, and both
confirmation timers are cancelled.

Resuming re-reads the current sensor values instead of trusting what arrived
during the pause. The difference between the values seen when the pause began
and the fresh snapshot is applied to the pre-pause state as a single step, so
a resume produces at most one transition.
"""

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .aggregator import SensorAggregator, classify_edge
from .engine import OccupancyStateMachine
from .errors import FusionErrorId
from .models import EdgeKind, EngineResult, MachineSnapshot, OccupancyState, SensorRole

logger = logging.getLogger(__name__)

SnapshotReader = Callable[[], Mapping[str, Any]]


class PauseController:
    """Pause/resume layer wrapped around the state machine."""

    def __init__(
        self,
        machine: OccupancyStateMachine,
        aggregator: SensorAggregator,
        snapshot_reader: Optional[SnapshotReader] = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            machine: The device's state machine.
            aggregator: The device's aggregator (baseline owner).
            snapshot_reader: Reads current sensor values from the host. Without
                one, the values recorded during the pause are used.
        """
        self._machine = machine
        self._aggregator = aggregator
        self._snapshot_reader = snapshot_reader
        self._saved: Optional[MachineSnapshot] = None
        self._baseline: Dict[str, Optional[bool]] = {}

    @property
    def is_paused(self) -> bool:
        return self._machine.state == OccupancyState.PAUSED

    def pause(self, occupied: bool, now: datetime) -> EngineResult:
        """Suspend automatic evaluation and publish ``occupied``."""
        device_id = self._machine.device_id

        if self.is_paused:
            logger.info(f"{device_id}: already paused - published value set to {occupied}")
        else:
            self._saved = self._machine.checkpoint()
            self._baseline = self._aggregator.snapshot()
            logger.info(f"{device_id}: pausing with occupied={occupied}")

        return self._machine.enter_pause(occupied, now)

    def resume(self, now: datetime) -> EngineResult:
        """Resume automatic evaluation from a fresh sensor snapshot.

        Calling this while not paused is a no-op.
        """
        device_id = self._machine.device_id

        if not self.is_paused or self._saved is None:
            logger.info(f"{device_id}: not paused - resume request ignored")
            return EngineResult(next_expiration=self._machine.next_expiration())

        snapshot = self._read_snapshot()
        edges = self._missed_edges(snapshot)
        self._aggregator.initialize_from_snapshot(
            {k: v for k, v in snapshot.items() if isinstance(v, bool)}
        )

        if edges:
            logger.info(f"{device_id}: resuming, sensors changed while paused: {edges}")
        else:
            logger.info(f"{device_id}: resuming, no sensor changes while paused")

        result = self._machine.resume_from(self._saved, edges, now)
        self._saved = None
        self._baseline = {}
        return result

    def _read_snapshot(self) -> Dict[str, Any]:
        """Current sensor values; falls back to the recorded values on failure."""
        recorded = self._aggregator.snapshot()
        if self._snapshot_reader is None:
            return recorded

        try:
            fresh = dict(self._snapshot_reader())
        except Exception as e:
            logger.error(
                f"{FusionErrorId.SNAPSHOT_READ_FAILED} {self._machine.device_id}: "
                f"failed to read sensor snapshot: {e}",
                exc_info=True,
            )
            return recorded

        # Unreadable sensors count as no observation
        for sensor_id, value in recorded.items():
            if not isinstance(fresh.get(sensor_id), bool):
                fresh[sensor_id] = value
        return fresh

    def _missed_edges(self, snapshot: Mapping[str, Any]) -> List[Tuple[str, EdgeKind]]:
        """Edges between the pause baseline and the snapshot, resets first."""
        edges: List[Tuple[str, EdgeKind]] = []
        ordered = self._aggregator.sensors_with_role(
            SensorRole.RESET
        ) + self._aggregator.sensors_with_role(SensorRole.TRIGGER)

        for sensor in ordered:
            value = snapshot.get(sensor.id)
            if not isinstance(value, bool):
                continue
            edge = classify_edge(self._baseline.get(sensor.id), value)
            if edge != EdgeKind.NONE:
                edges.append((sensor.id, edge))
        return edges
