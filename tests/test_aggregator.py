"""
Tests for SensorAggregator.

Tests verify:
- Edge classification (rising, falling, none)
- Duplicate observations are NONE edges
- Snapshot seeding emits no edges
- Malformed and unknown-sensor observations
"""

import pytest
from datetime import datetime, UTC, timedelta

from occupancy_fusion.modules.occupancy.aggregator import SensorAggregator, classify_edge
from occupancy_fusion.modules.occupancy.models import EdgeKind, SensorDescriptor, SensorRole
from occupancy_fusion.modules.occupancy.staleness import StaleSensorMonitor


@pytest.fixture
def base_time():
    """Fixed base time for deterministic tests."""
    return datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def sensors():
    return [
        SensorDescriptor("door", "alarm_contact", SensorRole.RESET),
        SensorDescriptor("motion_1", "alarm_motion", SensorRole.TRIGGER),
        SensorDescriptor("motion_2", "alarm_motion", SensorRole.TRIGGER),
    ]


@pytest.fixture
def aggregator(sensors, base_time):
    """Aggregator sharing its runtime map with a monitor, as a device does."""
    runtime = {}
    StaleSensorMonitor({s.id: timedelta(minutes=30) for s in sensors}, runtime, base_time)
    return SensorAggregator(sensors, runtime)


class TestClassifyEdge:
    """Test suite for edge classification."""

    @pytest.mark.parametrize(
        "previous,value,expected",
        [
            (None, True, EdgeKind.RISING),
            (False, True, EdgeKind.RISING),
            (True, False, EdgeKind.FALLING),
            (True, True, EdgeKind.NONE),
            (False, False, EdgeKind.NONE),
            (None, False, EdgeKind.NONE),
        ],
    )
    def test_classify(self, previous, value, expected):
        """Test every previous/new combination."""
        assert classify_edge(previous, value) == expected


class TestRecordObservation:
    """Test suite for recording observations."""

    def test_first_true_is_rising(self, aggregator, base_time):
        """Test that the first true from an unknown value is a rising edge."""
        assert aggregator.record_observation("motion_1", True, base_time) == EdgeKind.RISING
        assert aggregator.value_of("motion_1") is True

    def test_duplicate_is_none(self, aggregator, base_time):
        """Test that at-least-once redelivery never fires a second edge."""
        aggregator.record_observation("motion_1", True, base_time)
        assert aggregator.record_observation("motion_1", True, base_time) == EdgeKind.NONE

    def test_falling_after_rising(self, aggregator, base_time):
        """Test true -> false is a falling edge and the value is stored."""
        aggregator.record_observation("door", True, base_time)
        assert aggregator.record_observation("door", False, base_time) == EdgeKind.FALLING
        assert aggregator.value_of("door") is False

    def test_malformed_value_is_ignored(self, aggregator, base_time, caplog):
        """Test non-boolean values are NONE edges and keep the stored value."""
        aggregator.record_observation("motion_1", True, base_time)

        assert aggregator.record_observation("motion_1", "on", base_time) == EdgeKind.NONE
        assert aggregator.record_observation("motion_1", None, base_time) == EdgeKind.NONE
        assert aggregator.value_of("motion_1") is True
        assert "[FUSION_003]" in caplog.text

    def test_unknown_sensor_tracked_without_role(self, aggregator, base_time):
        """Test unconfigured sensors are accepted and tracked but have no role."""
        edge = aggregator.record_observation("hallway_motion", True, base_time)

        assert edge == EdgeKind.RISING
        assert aggregator.value_of("hallway_motion") is True
        assert aggregator.role_of("hallway_motion") is None
        assert "hallway_motion" in aggregator.snapshot()


class TestSnapshotSeeding:
    """Test suite for initialize_from_snapshot."""

    def test_seeding_emits_no_edges(self, aggregator, base_time):
        """Test a seeded true value does not produce a rising edge later."""
        aggregator.initialize_from_snapshot({"motion_1": True, "door": False})

        assert aggregator.value_of("motion_1") is True
        assert aggregator.record_observation("motion_1", True, base_time) == EdgeKind.NONE
        assert aggregator.record_observation("door", True, base_time) == EdgeKind.RISING

    def test_non_boolean_seed_is_unknown(self, aggregator):
        """Test unreadable snapshot values seed the sensor as unknown."""
        aggregator.initialize_from_snapshot({"motion_1": True})
        aggregator.initialize_from_snapshot({"motion_1": "unavailable"})
        assert aggregator.value_of("motion_1") is None

    def test_missing_sensors_keep_value(self, aggregator):
        """Test sensors absent from the snapshot keep their last value."""
        aggregator.initialize_from_snapshot({"motion_1": True})
        aggregator.initialize_from_snapshot({"door": True})
        assert aggregator.value_of("motion_1") is True


def test_sensors_with_role_keeps_config_order(aggregator):
    """Test role queries return descriptors in configuration order."""
    triggers = aggregator.sensors_with_role(SensorRole.TRIGGER)
    assert [s.id for s in triggers] == ["motion_1", "motion_2"]
    assert [s.id for s in aggregator.sensors_with_role(SensorRole.RESET)] == ["door"]
