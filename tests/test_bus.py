"""Tests for the synchronous EventBus."""

from occupancy_fusion import Event, EventBus, EventFilter


def test_event_bus_publish_subscribe():
    """Test basic event publishing and subscription."""
    bus = EventBus()

    # Track received events
    received = []

    def handler(event: Event):
        received.append(event)

    bus.subscribe(handler)

    bus.publish(Event(type="test.event", source="test", payload={"data": "value"}))

    assert len(received) == 1
    assert received[0].type == "test.event"
    assert received[0].payload["data"] == "value"
    assert received[0].timestamp.tzinfo is not None


def test_event_bus_filtering():
    """Test event filtering by type."""
    bus = EventBus()

    sensor_events = []
    occupancy_events = []

    def sensor_handler(event: Event):
        sensor_events.append(event)

    def occupancy_handler(event: Event):
        occupancy_events.append(event)

    bus.subscribe(sensor_handler, EventFilter(event_type="sensor.state_changed"))
    bus.subscribe(occupancy_handler, EventFilter(event_type="occupancy.changed"))

    bus.publish(Event(type="sensor.state_changed", source="test"))
    bus.publish(Event(type="occupancy.changed", source="test"))
    bus.publish(Event(type="other.event", source="test"))

    assert len(sensor_events) == 1
    assert len(occupancy_events) == 1


def test_event_bus_filtering_by_device_and_entity():
    """Test device and entity filters."""
    bus = EventBus()
    kitchen = []
    door = []

    bus.subscribe(kitchen.append, EventFilter(device_id="kitchen"))
    bus.subscribe(door.append, EventFilter(entity_id="door"))

    bus.publish(Event(type="occupancy.changed", source="test", device_id="kitchen"))
    bus.publish(Event(type="occupancy.changed", source="test", device_id="bedroom"))
    bus.publish(Event(type="sensor.state_changed", source="test", entity_id="door"))

    assert [e.device_id for e in kitchen] == ["kitchen"]
    assert [e.entity_id for e in door] == ["door"]


def test_failing_handler_does_not_stop_others(caplog):
    """Test one broken subscriber cannot break delivery to the rest."""
    bus = EventBus()
    received = []

    def broken(event: Event):
        raise RuntimeError("handler bug")

    bus.subscribe(broken)
    bus.subscribe(received.append)

    bus.publish(Event(type="test.event", source="test"))

    assert len(received) == 1
    assert "Error in event handler broken" in caplog.text


def test_unsubscribe():
    """Test an unsubscribed handler no longer receives events."""
    bus = EventBus()
    received = []

    def handler(event: Event):
        received.append(event)

    bus.subscribe(handler)
    bus.unsubscribe(handler)
    bus.publish(Event(type="test.event", source="test"))

    assert received == []
