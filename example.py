#!/usr/bin/env python3
"""
Quick example demonstrating occupancy-fusion basic usage.

Run with: PYTHONPATH=src python3 example.py
"""

from datetime import datetime, UTC, timedelta
from occupancy_fusion.core.bus import EventBus, Event, EventFilter
from occupancy_fusion.modules.occupancy.module import OccupancyFusionModule

print("=" * 60)
print("occupancy-fusion Example")
print("=" * 60)

now = datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)

# 1. Kernel components
print("\n1. Creating event bus...")
bus = EventBus()
bus.subscribe(
    lambda e: print(f"   → {e.type}: {e.device_id} {e.payload}"),
    EventFilter(event_type="occupancy.changed"),
)
print("   ✓ EventBus created")

# 2. Attach the module and add a bathroom
print("\n2. Attaching OccupancyFusion module...")
fusion = OccupancyFusionModule()
fusion.attach(bus)
fusion.add_device(
    "bathroom",
    {
        "version": fusion.CURRENT_CONFIG_VERSION,
        "trigger_sensors": [{"id": "binary_sensor.bathroom_motion", "capability": "alarm_motion"}],
        "reset_sensors": [{"id": "binary_sensor.bathroom_door", "capability": "alarm_contact"}],
        "t_enter": 20,
    },
    now=now,
)
print(f"   ✓ Module '{fusion.id}' attached, devices: {fusion.device_ids}")


def sensor(entity_id: str, state: str, at: datetime) -> None:
    bus.publish(
        Event(
            type="sensor.state_changed",
            source="example",
            entity_id=entity_id,
            payload={"new_state": state},
            timestamp=at,
        )
    )
    print(f"   ✓ {entity_id} = {state}")


# 3. Someone walks in and closes the door
print("\n3. Entering the bathroom...")
sensor("binary_sensor.bathroom_door", "on", now)
sensor("binary_sensor.bathroom_motion", "on", now + timedelta(seconds=2))
sensor("binary_sensor.bathroom_door", "off", now + timedelta(seconds=5))

# 4. Sitting still: motion clears, room stays occupied
print("\n4. Sitting still...")
sensor("binary_sensor.bathroom_motion", "off", now + timedelta(minutes=1))
print(f"   ✓ State: {fusion.get_device_state('bathroom')['state']}")

# 5. Leaving: door opens, no motion follows
print("\n5. Leaving...")
left_at = now + timedelta(minutes=10)
sensor("binary_sensor.bathroom_door", "on", left_at)
print(f"   ✓ State: {fusion.get_device_state('bathroom')['state']}")
print(f"   ✓ Next check due at {fusion.get_next_timeout()}")
fusion.tick(left_at + timedelta(seconds=20))
print(f"   ✓ State: {fusion.get_device_state('bathroom')['state']}")

# 6. Manual override
print("\n6. Pausing with occupied=True...")
fusion.pause("bathroom", True, left_at + timedelta(seconds=30))
fusion.resume("bathroom", left_at + timedelta(seconds=60))
print(f"   ✓ After resume: {fusion.get_device_state('bathroom')['state']}")

print("\n" + "=" * 60)
print("Example complete!")
print("=" * 60)
