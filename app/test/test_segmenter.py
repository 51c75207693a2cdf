import datetime as dt

import pytest

from geo import haversine_m
from segmenter import apply_ping, close_session, is_idle_gap
from conftest import T0

S = dt.timedelta(seconds=1)


def test_first_ping_opens_a_session(make_ping):
    res = apply_ping(None, make_ping(40.0, -74.0, T0), movement_threshold_m=5)

    assert res.opened and res.closed is None
    s = res.session
    assert s.start_time == T0 and s.last_ping_at == T0 and s.end_time is None
    assert s.ping_count == 1
    assert s.distance_m == 0.0


def test_movement_adds_distance_and_speed(make_ping):
    first = apply_ping(None, make_ping(40.0, -74.0, T0), 5)
    res = apply_ping(first.session, make_ping(40.001, -74.0, T0 + 5 * S), 5)

    assert not res.opened and res.session is first.session
    s = res.session
    assert res.distance_added == pytest.approx(111.19, abs=0.05)
    assert s.distance_m == pytest.approx(111.19, abs=0.05)
    assert s.avg_speed_kmh == pytest.approx(80.06, abs=0.05)
    assert s.max_speed_kmh == pytest.approx(80.06, abs=0.05)
    assert s.ping_count == 2
    assert s.end_time is None
    assert s.last_ping_at == T0 + 5 * S


def test_jitter_below_threshold_adds_nothing(make_ping):
    first = apply_ping(None, make_ping(40.0, -74.0, T0), 5)
    res = apply_ping(first.session, make_ping(40.00001, -74.0, T0 + 30 * S), 5)

    assert res.distance_added == 0.0
    assert res.session.distance_m == 0.0
    assert res.session.avg_speed_kmh == 0.0
    assert res.session.ping_count == 2
    assert res.session.last_ping_at == T0 + 30 * S


def test_slow_drift_below_threshold_adds_nothing(make_ping):
    # each step ~3.3 m from the previous ping, under the 5 m threshold
    s = apply_ping(None, make_ping(40.0, -74.0, T0), 5).session
    results = [
        apply_ping(s, make_ping(40.0 + 0.00003 * i, -74.0, T0 + 10 * i * S), 5)
        for i in range(1, 6)
    ]

    assert [r.distance_added for r in results] == [0.0] * 5
    assert s.distance_m == 0.0
    assert s.avg_speed_kmh == 0.0 and s.max_speed_kmh == 0.0
    assert s.ping_count == 6
    assert s.last_lat == pytest.approx(40.00015)
    assert s.last_ping_at == T0 + 50 * S


def test_speed_uses_time_since_previous_ping(make_ping):
    s = apply_ping(None, make_ping(40.0, -74.0, T0), 5).session
    apply_ping(s, make_ping(40.0, -74.0, T0 + 60 * S), 5)
    res = apply_ping(s, make_ping(40.001, -74.0, T0 + 65 * S), 5)

    assert res.distance_added == pytest.approx(111.19, abs=0.05)
    assert s.max_speed_kmh == pytest.approx(80.06, abs=0.05)


def test_average_speed_is_distance_weighted(make_ping):
    s = apply_ping(None, make_ping(40.0, -74.0, T0), 5).session
    apply_ping(s, make_ping(40.001, -74.0, T0 + 10 * S), 5)
    apply_ping(s, make_ping(40.004, -74.0, T0 + 20 * S), 5)

    d1 = haversine_m(40.0, -74.0, 40.001, -74.0)
    d2 = haversine_m(40.001, -74.0, 40.004, -74.0)
    v1, v2 = d1 / 10 * 3.6, d2 / 10 * 3.6

    assert s.distance_m == pytest.approx(d1 + d2)
    assert s.avg_speed_kmh == pytest.approx((d1 * v1 + d2 * v2) / (d1 + d2))
    assert s.max_speed_kmh == pytest.approx(v2)


def test_idle_gap_closes_at_last_ping_and_opens_new(make_ping):
    first = apply_ping(None, make_ping(40.0, -74.0, T0), 5).session
    res = apply_ping(first, make_ping(40.0, -74.0, T0 + dt.timedelta(minutes=20)), 5)

    assert res.opened
    assert res.closed is first
    assert first.end_time == T0
    assert first.distance_m == 0.0
    assert res.session is not first
    assert res.session.start_time == T0 + dt.timedelta(minutes=20)
    assert res.session.end_time is None


def test_gap_equal_to_timeout_keeps_session(make_ping):
    first = apply_ping(None, make_ping(40.0, -74.0, T0), 5, idle_timeout_s=600).session
    res = apply_ping(first, make_ping(40.0, -74.0, T0 + 600 * S), 5, idle_timeout_s=600)

    assert not res.opened and res.closed is None
    assert res.session is first


def test_idle_gap_boundary(make_session):
    s = make_session(T0, T0)
    assert not is_idle_gap(s, T0 + 600 * S, 600)
    assert is_idle_gap(s, T0 + 601 * S, 600)


def test_close_keeps_existing_end_time(make_session):
    s = make_session(T0, T0 + 60 * S, end=T0 + 30 * S)
    close_session(s)
    assert s.end_time == T0 + 30 * S

    s = make_session(T0, T0 + 60 * S)
    close_session(s)
    assert s.end_time == T0 + 60 * S


def test_driving_events_from_reported_speed(make_ping):
    s = apply_ping(None, make_ping(40.0, -74.0, T0, speed=50), 5).session
    r1 = apply_ping(s, make_ping(40.0001, -74.0, T0 + S, speed=100), 5)
    r2 = apply_ping(s, make_ping(40.0002, -74.0, T0 + 2 * S, speed=135), 5)
    r3 = apply_ping(s, make_ping(40.0003, -74.0, T0 + 3 * S, speed=95), 5)
    r4 = apply_ping(s, make_ping(40.0003, -74.0, T0 + 4 * S, speed=5), 5)

    assert [(e.kind, e.severity) for e in r1.driving_events] == [("rapid_acceleration", "high")]
    assert [(e.kind, e.severity) for e in r2.driving_events] == [
        ("rapid_acceleration", "high"), ("speeding", "medium"),
    ]
    assert [(e.kind, e.severity) for e in r3.driving_events] == [("hard_braking", "critical")]
    assert r4.driving_events == []

    assert s.rapid_acceleration_events == 2
    assert s.speeding_events == 1
    assert s.hard_braking_events == 1
    assert s.harsh_turning_events == 0
    assert s.safety_score == 100 - 5 - 5 - 2 - 10
    assert s.last_speed_kmh == 5


def test_driving_events_from_derived_speed(make_ping):
    s = apply_ping(None, make_ping(40.0, -74.0, T0), 5).session
    r1 = apply_ping(s, make_ping(40.001, -74.0, T0 + 5 * S), 5)
    r2 = apply_ping(s, make_ping(40.00265, -74.0, T0 + 10 * S), 5)

    assert r1.driving_events == []
    assert s.last_speed_kmh == pytest.approx(132.1, abs=0.1)
    assert [(e.kind, e.severity) for e in r2.driving_events] == [("speeding", "medium")]
    assert s.safety_score == 98


def test_new_session_starts_with_clean_score(make_ping):
    s = apply_ping(None, make_ping(40.0, -74.0, T0, speed=130, heading=90), 5).session
    assert s.safety_score == 100.0
    assert s.speeding_events == 0
    assert s.last_speed_kmh == 130
    assert s.last_heading == 90
