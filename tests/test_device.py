"""
Tests for FusionDevice.

Tests verify:
- Capability publishing is idempotent and retried after failures
- Internal errors roll back to the last committed state
- Malformed and mismatched observations
- tick()/get_next_timeout() scheduling
- Teardown, status and warm-start export
"""

import pytest
from datetime import datetime, UTC, timedelta

from occupancy_fusion.modules.occupancy.device import (
    CAPABILITY_DATA_STALE,
    CAPABILITY_OCCUPANCY,
    FusionDevice,
)
from occupancy_fusion.modules.occupancy.models import (
    DeviceConfig,
    OccupancyState,
    SensorDescriptor,
    SensorRole,
    TimerKind,
)


@pytest.fixture
def base_time():
    """Fixed base time for deterministic tests."""
    return datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)


class RecordingPublisher:
    """Capability publisher that records writes and can be told to fail."""

    def __init__(self):
        self.writes = []
        self.fail_next = 0

    def __call__(self, capability, value):
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("capability write rejected")
        self.writes.append((capability, value))

    def values(self, capability):
        return [v for c, v in self.writes if c == capability]


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def config():
    return DeviceConfig(
        device_id="office",
        trigger_sensors=(SensorDescriptor("motion", "alarm_motion", SensorRole.TRIGGER),),
        reset_sensors=(SensorDescriptor("door", "alarm_contact", SensorRole.RESET),),
    )


@pytest.fixture
def device(config, publisher, base_time):
    device = FusionDevice(config, publisher, now=base_time)
    device.start()
    return device


class TestPublishing:
    """Test suite for capability publishing."""

    def test_start_publishes_both_capabilities(self, device, publisher):
        """Test the initial values are written once at start."""
        assert publisher.writes == [
            (CAPABILITY_OCCUPANCY, False),
            (CAPABILITY_DATA_STALE, False),
        ]

    def test_nothing_published_before_start(self, config, publisher, base_time):
        """Test construction alone never writes capabilities."""
        FusionDevice(config, publisher, now=base_time)
        assert publisher.writes == []

    def test_only_changes_are_published(self, device, publisher, base_time):
        """Test repeated evaluations with the same value write nothing."""
        device.on_sensor_value("motion", True, now=base_time)
        device.on_sensor_value("motion", True, now=base_time + timedelta(seconds=1))
        device.on_sensor_value("motion", False, now=base_time + timedelta(seconds=2))
        device.check_timeouts(base_time + timedelta(seconds=3))

        assert publisher.values(CAPABILITY_OCCUPANCY) == [False, True]
        assert device.published_value(CAPABILITY_OCCUPANCY) is True

    def test_unknown_dwell_keeps_published_value(self, device, publisher, base_time):
        """Test UNKNOWN does not flap the published occupancy."""
        device.on_sensor_value("motion", True, now=base_time)
        device.on_sensor_value("motion", False, now=base_time + timedelta(seconds=5))
        device.on_sensor_value("door", True, now=base_time + timedelta(seconds=6))

        assert device.state == OccupancyState.UNKNOWN
        assert publisher.values(CAPABILITY_OCCUPANCY) == [False, True]

        device.check_timeouts(base_time + timedelta(seconds=26))
        assert device.state == OccupancyState.UNOCCUPIED
        assert publisher.values(CAPABILITY_OCCUPANCY) == [False, True, False]

    def test_publish_failure_is_retried(self, device, publisher, base_time, caplog):
        """Test a rejected write is logged and retried on the next evaluation."""
        publisher.fail_next = 1
        result = device.on_sensor_value("motion", True, now=base_time)

        assert device.state == OccupancyState.OCCUPIED
        assert len(result.transitions) == 1
        assert device.published_value(CAPABILITY_OCCUPANCY) is False
        assert "[FUSION_007]" in caplog.text

        device.on_sensor_value("motion", True, now=base_time + timedelta(seconds=1))
        assert device.published_value(CAPABILITY_OCCUPANCY) is True
        assert publisher.values(CAPABILITY_OCCUPANCY) == [False, True]


class TestErrorHandling:
    """Test suite for wrapped entry points."""

    def test_internal_error_rolls_back(self, device, publisher, base_time, caplog, monkeypatch):
        """Test an exception mid-transition restores the committed state."""

        def broken(now):
            raise RuntimeError("boom")

        monkeypatch.setattr(device._machine, "_refresh_clear_timer", broken)

        result = device.on_sensor_value("motion", True, now=base_time)

        assert result.transitions == []
        assert device.state == OccupancyState.UNOCCUPIED
        assert device.occupied is False
        assert device.dump_state()["sensor_values"]["motion"] is None
        assert publisher.values(CAPABILITY_OCCUPANCY) == [False]
        assert "[FUSION_004]" in caplog.text

    def test_timer_error_does_not_raise(self, device, base_time, caplog, monkeypatch):
        """Test a failing timer handler is reported, never raised."""

        def broken(now):
            raise ValueError("bad timer")

        monkeypatch.setattr(device._machine, "check_timeouts", broken)

        device.check_timeouts(base_time)
        assert "[FUSION_005]" in caplog.text

    def test_malformed_observation(self, device, publisher, base_time, caplog):
        """Test non-boolean values are logged and change nothing."""
        result = device.on_sensor_value("motion", "banana", now=base_time)

        assert result.transitions == []
        assert device.state == OccupancyState.UNOCCUPIED
        assert "[FUSION_003]" in caplog.text

    def test_malformed_observation_does_not_refresh(self, device, base_time):
        """Test a malformed value does not count as the sensor reporting."""
        device.on_sensor_value("door", False, now=base_time + timedelta(minutes=25))
        device.on_sensor_value("motion", None, now=base_time + timedelta(minutes=25))
        device.sweep(base_time + timedelta(minutes=31))

        assert device.get_state()["stale_sensors"] == ["motion"]

    def test_other_capability_ignored(self, device, base_time):
        """Test notifications for a capability that is not monitored are dropped."""
        device.on_sensor_value("motion", True, capability="measure_battery", now=base_time)
        assert device.state == OccupancyState.UNOCCUPIED

        device.on_sensor_value("motion", True, capability="alarm_motion", now=base_time)
        assert device.state == OccupancyState.OCCUPIED


class TestScheduling:
    """Test suite for time handling."""

    def test_next_timeout_is_next_sweep(self, device, base_time):
        """Test an idle device wakes up for the next sweep."""
        assert device.get_next_timeout() == base_time + timedelta(seconds=60)

    def test_next_timeout_prefers_earlier_timer(self, device, base_time):
        """Test a pending T_ENTER earlier than the sweep is returned."""
        device.on_sensor_value("motion", True, now=base_time)
        device.on_sensor_value("motion", False, now=base_time + timedelta(seconds=1))
        device.on_sensor_value("door", True, now=base_time + timedelta(seconds=5))

        assert device.get_next_timeout() == base_time + timedelta(seconds=25)

    def test_tick_runs_sweep_and_timers(self, device, publisher, base_time):
        """Test tick() sweeps when due and fires expired timers."""
        device.on_sensor_value("motion", True, now=base_time)
        device.on_sensor_value("motion", False, now=base_time + timedelta(seconds=1))
        device.on_sensor_value("door", True, now=base_time + timedelta(seconds=5))

        now = base_time + timedelta(seconds=25)
        result = device.tick(now)
        assert device.state == OccupancyState.UNOCCUPIED
        assert [t.reason for t in result.transitions] == ["enter_timeout"]

        result = device.tick(base_time + timedelta(minutes=31))
        assert device.data_stale is True
        assert device.state == OccupancyState.UNKNOWN
        assert publisher.values(CAPABILITY_DATA_STALE) == [False, True]


class TestLifecycle:
    """Test suite for teardown, status and persistence."""

    def test_teardown(self, device, base_time):
        """Test teardown cancels timers, stops sweeping and ignores input."""
        device.on_sensor_value("motion", True, now=base_time)
        device.on_sensor_value("motion", False, now=base_time + timedelta(seconds=1))
        device.on_sensor_value("door", True, now=base_time + timedelta(seconds=1))
        assert device.pending_timers

        device.teardown()

        assert device.is_torn_down
        assert device.pending_timers == {}
        assert device.get_next_timeout() is None

        device.on_sensor_value("motion", True, now=base_time + timedelta(seconds=2))
        device.check_timeouts(base_time + timedelta(minutes=1))
        assert device.state == OccupancyState.UNKNOWN

    def test_get_state(self, device, base_time):
        """Test the status dict reflects state, flags and timers."""
        device.on_sensor_value("motion", True, now=base_time)
        device.on_sensor_value("door", True, now=base_time + timedelta(seconds=5))

        state = device.get_state()
        assert state["device_id"] == "office"
        assert state["state"] == "UNKNOWN"
        assert state["occupied"] is True
        assert state["paused"] is False
        assert state["data_stale"] is False
        assert state["waiting_for_falling_edge"] is True
        assert state["timers"] == {}

    def test_dump_state_warm_start(self, device, config, publisher, base_time):
        """Test a dumped state starts a new device in the same place."""
        device.on_sensor_value("motion", True, now=base_time)
        saved = device.dump_state()

        assert saved == {
            "occupied": True,
            "state": "OCCUPIED",
            "sensor_values": {"door": None, "motion": True},
        }

        restored = FusionDevice(
            config,
            RecordingPublisher(),
            warm_start=saved["occupied"],
            initial_values=saved["sensor_values"],
            now=base_time + timedelta(hours=1),
        )
        restored.start()
        assert restored.state == OccupancyState.OCCUPIED

        # The seeded true value does not produce a fresh edge
        result = restored.on_sensor_value("motion", True, now=base_time + timedelta(hours=1))
        assert result.transitions == []

    def test_snapshot_reader_seeds_initial_state(self, config, publisher, base_time):
        """Test the startup snapshot drives the initial state derivation."""
        device = FusionDevice(
            config,
            publisher,
            snapshot_reader=lambda: {"motion": True, "door": False},
            now=base_time,
        )
        device.start()

        assert device.state == OccupancyState.OCCUPIED
        assert publisher.values(CAPABILITY_OCCUPANCY) == [True]

    def test_failing_snapshot_reader_at_startup(self, config, publisher, base_time, caplog):
        """Test an unreadable sensor layer at startup is not fatal."""

        def reader():
            raise TimeoutError("sensor layer unavailable")

        device = FusionDevice(config, publisher, snapshot_reader=reader, now=base_time)
        device.start()

        assert device.state == OccupancyState.UNOCCUPIED
        assert "[FUSION_010]" in caplog.text

    def test_fire_timer_by_generation(self, device, base_time):
        """Test hosts with real timers can fire a timer by kind and generation."""
        device.on_sensor_value("motion", True, now=base_time)
        device.on_sensor_value("door", True, now=base_time + timedelta(seconds=1))
        # Motion still reads true: waiting for the falling edge
        device.on_sensor_value("motion", False, now=base_time + timedelta(seconds=2))
        timer = device.pending_timers[TimerKind.ENTER]

        device.fire_timer(TimerKind.ENTER, timer.generation, timer.fire_at)

        assert device.state == OccupancyState.UNOCCUPIED
