"""Error ids for the occupancy fusion module.

Every error logged by the module carries one of these ids as a prefix,
e.g. ``[FUSION_007] Failed to publish alarm_occupancy``, so that failures
can be filtered and aggregated in logs.
"""

from enum import Enum


class FusionErrorId(str, Enum):
    """Stable error ids used as log prefixes."""

    CONFIG_PARSE_FAILED = "FUSION_001"
    INVALID_SENSOR_DESCRIPTOR = "FUSION_002"
    MALFORMED_OBSERVATION = "FUSION_003"
    OBSERVATION_HANDLER_FAILED = "FUSION_004"
    TIMER_HANDLER_FAILED = "FUSION_005"
    SWEEP_FAILED = "FUSION_006"
    PUBLISH_FAILED = "FUSION_007"
    PAUSE_FAILED = "FUSION_008"
    RESUME_FAILED = "FUSION_009"
    SNAPSHOT_READ_FAILED = "FUSION_010"
    FAIL_SAFE_FAILED = "FUSION_011"
    INVARIANT_VIOLATION = "FUSION_012"
    TEARDOWN_FAILED = "FUSION_013"

    def __str__(self) -> str:
        return f"[{self.value}]"
