"""
Device policy lookup.

Maps a device class to the polling / movement parameters the client side uses.
The server enforces none of it: the movement threshold feeds the session
segmenter, everything else is advisory and surfaces as flags on ingestion.
"""
import enum
from dataclasses import dataclass
from typing import List

from utils.variables import GPS_EXPECTED_ACCURACY_M, WIFI_EXPECTED_ACCURACY_M


class DeviceClass(str, enum.Enum):
    PHONE = "phone"
    TABLET = "tablet"
    WATCH = "watch"
    LAPTOP = "laptop"
    GPS_TAG = "gps_tag"


@dataclass(frozen=True)
class DevicePolicy:
    has_gps: bool
    update_interval_ms: int
    movement_threshold_m: float
    geo_timeout_ms: int
    max_sample_age_ms: int
    high_accuracy: bool
    description: str


POLICIES = {
    DeviceClass.PHONE: DevicePolicy(
        has_gps=True, update_interval_ms=20_000, movement_threshold_m=5,
        geo_timeout_ms=20_000, max_sample_age_ms=30_000, high_accuracy=True,
        description="GPS-enabled mobile device with high accuracy tracking",
    ),
    DeviceClass.TABLET: DevicePolicy(
        has_gps=True, update_interval_ms=25_000, movement_threshold_m=7,
        geo_timeout_ms=20_000, max_sample_age_ms=30_000, high_accuracy=True,
        description="GPS-enabled tablet (cellular models have better accuracy)",
    ),
    DeviceClass.WATCH: DevicePolicy(
        has_gps=True, update_interval_ms=30_000, movement_threshold_m=5,
        geo_timeout_ms=20_000, max_sample_age_ms=30_000, high_accuracy=True,
        description="GPS-enabled smartwatch with fitness tracking",
    ),
    DeviceClass.LAPTOP: DevicePolicy(
        has_gps=False, update_interval_ms=30_000, movement_threshold_m=10,
        geo_timeout_ms=15_000, max_sample_age_ms=60_000, high_accuracy=True,
        description="WiFi-based laptop tracking (less accurate than GPS)",
    ),
    DeviceClass.GPS_TAG: DevicePolicy(
        has_gps=True, update_interval_ms=60_000, movement_threshold_m=10,
        geo_timeout_ms=30_000, max_sample_age_ms=120_000, high_accuracy=True,
        description="Physical GPS tag with battery-efficient updates",
    ),
}

# unknown hardware gets WiFi-grade settings instead of a rejection
FALLBACK_POLICY = DevicePolicy(
    has_gps=False, update_interval_ms=30_000, movement_threshold_m=10,
    geo_timeout_ms=15_000, max_sample_age_ms=60_000, high_accuracy=True,
    description="Unknown device type - using default settings",
)


def resolve_policy(device_class) -> DevicePolicy:
    try:
        return POLICIES[DeviceClass(device_class)]
    except ValueError:
        return FALLBACK_POLICY


def movement_threshold_for(device) -> float:
    """Per-device override if set, else the class policy threshold."""
    if device.movement_threshold_m is not None:
        return float(device.movement_threshold_m)
    return float(resolve_policy(device.device_class).movement_threshold_m)


def check_sample(policy: DevicePolicy, ping, previous_recorded_at=None) -> List[str]:
    """
    Advisory flags for a ping against its device policy:
      stale_sample: received later than max_sample_age after it was recorded
      early_sample: arrived in under half the polling interval since the previous ping
      low_accuracy: reported accuracy worse than the hardware should deliver
    """
    flags = []

    age_ms = (ping.received_at - ping.recorded_at).total_seconds() * 1000
    if age_ms > policy.max_sample_age_ms:
        flags.append("stale_sample")

    if previous_recorded_at is not None:
        interval_ms = (ping.recorded_at - previous_recorded_at).total_seconds() * 1000
        if 0 < interval_ms < policy.update_interval_ms / 2:
            flags.append("early_sample")

    expected = GPS_EXPECTED_ACCURACY_M if policy.has_gps else WIFI_EXPECTED_ACCURACY_M
    if ping.accuracy is not None and ping.accuracy > expected:
        flags.append("low_accuracy")

    return flags
