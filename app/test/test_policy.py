import datetime as dt
from types import SimpleNamespace

import pytest

from policy import (DeviceClass, FALLBACK_POLICY, POLICIES, check_sample,
                    movement_threshold_for, resolve_policy)
from conftest import T0


@pytest.mark.parametrize("device_class, gps, interval, threshold", [
    ("phone", True, 20_000, 5),
    ("tablet", True, 25_000, 7),
    ("watch", True, 30_000, 5),
    ("laptop", False, 30_000, 10),
    ("gps_tag", True, 60_000, 10),
])
def test_known_classes(device_class, gps, interval, threshold):
    policy = resolve_policy(device_class)
    assert policy is POLICIES[DeviceClass(device_class)]
    assert policy.has_gps is gps
    assert policy.update_interval_ms == interval
    assert policy.movement_threshold_m == threshold


@pytest.mark.parametrize("device_class", ["toaster", "", None, "PHONE"])
def test_unknown_class_falls_back(device_class):
    policy = resolve_policy(device_class)
    assert policy is FALLBACK_POLICY
    assert policy.has_gps is False
    assert policy.movement_threshold_m == 10


def test_enum_member_resolves():
    assert resolve_policy(DeviceClass.WATCH).update_interval_ms == 30_000


def test_device_override_wins():
    device = SimpleNamespace(device_class="phone", movement_threshold_m=25)
    assert movement_threshold_for(device) == 25.0

    device.movement_threshold_m = None
    assert movement_threshold_for(device) == 5.0


def _ping(recorded_at, received_at=None, accuracy=None):
    return SimpleNamespace(recorded_at=recorded_at, received_at=received_at or recorded_at, accuracy=accuracy)


def test_clean_sample_has_no_flags():
    policy = resolve_policy("phone")
    ping = _ping(T0, T0 + dt.timedelta(seconds=2), accuracy=8)
    assert check_sample(policy, ping, T0 - dt.timedelta(seconds=20)) == []


def test_stale_early_and_inaccurate_flags():
    policy = resolve_policy("phone")
    ping = _ping(T0, T0 + dt.timedelta(minutes=2), accuracy=250)
    flags = check_sample(policy, ping, T0 - dt.timedelta(seconds=3))
    assert flags == ["stale_sample", "early_sample", "low_accuracy"]


def test_wifi_devices_tolerate_coarser_accuracy():
    ping = _ping(T0, accuracy=500)
    assert check_sample(resolve_policy("laptop"), ping) == []
    assert check_sample(resolve_policy("phone"), ping) == ["low_accuracy"]
