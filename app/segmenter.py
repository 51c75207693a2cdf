# app/segmenter.py
import datetime as dt
from dataclasses import dataclass, field
from typing import List, Optional

from models import LocationPing, MovementSession
from geo import haversine_m
from config import IDLE_TIMEOUT_S
from driving import COUNTERS, DrivingEvent, analyze_leg, safety_score

from logging_config import get_logger


logger = get_logger("segmenter", "segmenter.log")


@dataclass
class SegmentResult:
    session: MovementSession                   # the session the ping now belongs to
    opened: bool = False                       # session was created by this ping
    closed: Optional[MovementSession] = None   # previous session frozen by this ping
    distance_added: float = 0.0
    driving_events: List[DrivingEvent] = field(default_factory=list)


# =====================================================================
# Helper: open / close
# =====================================================================
def open_session(ping: LocationPing) -> MovementSession:
    """New single-ping session starting at the ping. Not yet added to a db session."""
    return MovementSession(
        device_id=ping.device_id,
        start_time=ping.recorded_at,
        end_time=None,
        last_ping_at=ping.recorded_at,
        start_lat=ping.lat,
        start_lon=ping.lon,
        last_lat=ping.lat,
        last_lon=ping.lon,
        distance_m=0.0,
        avg_speed_kmh=0.0,
        max_speed_kmh=0.0,
        ping_count=1,
        last_speed_kmh=ping.speed,
        last_heading=ping.heading,
        speeding_events=0,
        hard_braking_events=0,
        rapid_acceleration_events=0,
        harsh_turning_events=0,
        safety_score=100.0,
    )


def close_session(session: MovementSession) -> MovementSession:
    """
    Freeze the session at its last ping. A session that already has an end
    time keeps it.
    """
    if session.end_time is None:
        session.end_time = session.last_ping_at
        logger.info(
            f"[session] Closed session id={session.id} device={session.device_id} "
            f"start={session.start_time} end={session.end_time} "
            f"distance={session.distance_m:.1f}m pings={session.ping_count} "
            f"safety={session.safety_score}"
        )
    return session


def is_idle_gap(session: MovementSession, at: dt.datetime, idle_timeout_s: float) -> bool:
    return (at - session.last_ping_at).total_seconds() > idle_timeout_s


# =====================================================================
# Helper: bookkeeping on an open session
# =====================================================================
def _record_movement(session: MovementSession, moved_m: float, elapsed_s: float) -> float:
    """Add one movement leg; returns the leg speed in km/h (0 when no time passed)."""
    speed_kmh = 0.0

    if elapsed_s > 0:
        speed_kmh = moved_m / elapsed_s * 3.6
        travelled = float(session.distance_m or 0)

        # running average weighted by the distance of each leg
        session.avg_speed_kmh = (
            (float(session.avg_speed_kmh or 0) * travelled + speed_kmh * moved_m)
            / (travelled + moved_m)
        )
        session.max_speed_kmh = max(float(session.max_speed_kmh or 0), speed_kmh)

    session.distance_m = float(session.distance_m or 0) + moved_m
    return speed_kmh


def _record_driving(session: MovementSession, events: List[DrivingEvent]) -> None:
    for e in events:
        column = COUNTERS[e.kind]
        setattr(session, column, (getattr(session, column) or 0) + 1)
    if events:
        session.safety_score = safety_score(float(session.safety_score or 100), events)


def _extend(session: MovementSession, ping: LocationPing, speed_kmh: float) -> None:
    session.last_ping_at = ping.recorded_at
    session.last_lat = ping.lat
    session.last_lon = ping.lon
    session.last_speed_kmh = speed_kmh
    session.last_heading = ping.heading
    session.ping_count = (session.ping_count or 0) + 1


# =====================================================================
# MAIN: apply one ping to the device's session state
# =====================================================================
def apply_ping(
    open_session_row: Optional[MovementSession],
    ping: LocationPing,
    movement_threshold_m: float,
    idle_timeout_s: float = IDLE_TIMEOUT_S,
) -> SegmentResult:
    """
    Two states per device: no open session / one open session.

    - No open session, or the gap since its last ping exceeds idle_timeout_s
      → close the old one at its last ping and open a new one at this ping.
    - Distance from the previous ping above movement_threshold_m
      → movement: distance and speed stats grow.
    - Otherwise the ping only extends the session (end candidate, ping count).

    The leg is also checked for driving events (speeding, hard braking, rapid
    acceleration, harsh turning) using the reported speed, or the derived leg
    speed when the device reports none.

    Pings must arrive in recorded_at order and already be deduplicated.
    Nothing here touches the database; the caller persists the returned rows.
    """
    closed = None

    if open_session_row is not None and is_idle_gap(open_session_row, ping.recorded_at, idle_timeout_s):
        logger.info(
            f"[session] Idle gap for device={ping.device_id}: "
            f"last={open_session_row.last_ping_at} now={ping.recorded_at}"
        )
        closed = close_session(open_session_row)
        open_session_row = None

    if open_session_row is None:
        session = open_session(ping)
        logger.info(f"[session] Opened session device={ping.device_id} at {ping.recorded_at}")
        return SegmentResult(session=session, opened=True, closed=closed)

    session = open_session_row
    elapsed_s = (ping.recorded_at - session.last_ping_at).total_seconds()
    moved_m = haversine_m(session.last_lat, session.last_lon, ping.lat, ping.lon)

    added = 0.0
    leg_speed = 0.0
    if moved_m > movement_threshold_m:
        leg_speed = _record_movement(session, moved_m, elapsed_s)
        added = moved_m

    speed_kmh = float(ping.speed) if ping.speed is not None else leg_speed
    events = analyze_leg(session.last_speed_kmh, speed_kmh, elapsed_s, session.last_heading, ping.heading)
    if events:
        _record_driving(session, events)
        logger.info(
            f"[driving] device={ping.device_id} session={session.id} "
            f"events={[(e.kind, e.severity) for e in events]} safety={session.safety_score}"
        )

    _extend(session, ping, speed_kmh)

    return SegmentResult(session=session, distance_added=added, driving_events=events)
