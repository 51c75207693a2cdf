"""
Driving behaviour between two consecutive pings of an open session.

Only legs where the device is actually driving (current speed at or above
MIN_DRIVING_SPEED_KMH, previous speed known) are analysed. Every event carries
a severity; the session safety score starts at 100 and loses points per event.
"""
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

from utils.variables import (MIN_DRIVING_SPEED_KMH, SPEEDING_KMH, HARD_BRAKING_MS2,
                             RAPID_ACCELERATION_MS2, HARSH_TURN_G, HARSH_TURN_MIN_DEG,
                             HARSH_TURN_MIN_KMH)

G = 9.81

SPEEDING = "speeding"
HARD_BRAKING = "hard_braking"
RAPID_ACCELERATION = "rapid_acceleration"
HARSH_TURNING = "harsh_turning"

# session column holding the counter for each kind
COUNTERS = {
    SPEEDING: "speeding_events",
    HARD_BRAKING: "hard_braking_events",
    RAPID_ACCELERATION: "rapid_acceleration_events",
    HARSH_TURNING: "harsh_turning_events",
}

SEVERITY_DEDUCTION = {"critical": 10, "high": 5, "medium": 2, "low": 1}


@dataclass
class DrivingEvent:
    kind: str
    severity: str
    speed_kmh: float
    acceleration_ms2: Optional[float] = None
    g_force: Optional[float] = None

    def as_dict(self):
        return {
            "kind": self.kind,
            "severity": self.severity,
            "speed_kmh": self.speed_kmh,
            "acceleration_ms2": self.acceleration_ms2,
            "g_force": self.g_force,
        }


def _braking_severity(g):
    if g > 0.8:
        return "critical"
    if g > 0.6:
        return "high"
    if g > 0.4:
        return "medium"
    return "low"


def _acceleration_severity(g):
    if g > 0.5:
        return "high"
    if g > 0.35:
        return "medium"
    return "low"


def _speeding_severity(over_kmh):
    if over_kmh > 30:
        return "critical"
    if over_kmh > 20:
        return "high"
    if over_kmh > 10:
        return "medium"
    return "low"


def heading_change(prev_deg: float, deg: float) -> float:
    """Smallest angle between two headings, 0..180."""
    change = abs(deg - prev_deg) % 360
    return min(change, 360 - change)


def analyze_leg(prev_speed_kmh: Optional[float], speed_kmh: Optional[float], elapsed_s: float,
                prev_heading: Optional[float] = None, heading: Optional[float] = None) -> List[DrivingEvent]:
    if speed_kmh is None or speed_kmh < MIN_DRIVING_SPEED_KMH:
        return []
    if not prev_speed_kmh or elapsed_s <= 0:
        return []

    events = []
    acceleration = (speed_kmh - prev_speed_kmh) / 3.6 / elapsed_s

    if acceleration < HARD_BRAKING_MS2:
        g = abs(acceleration) / G
        events.append(DrivingEvent(HARD_BRAKING, _braking_severity(g), speed_kmh, acceleration, g))

    if acceleration > RAPID_ACCELERATION_MS2:
        g = acceleration / G
        events.append(DrivingEvent(RAPID_ACCELERATION, _acceleration_severity(g), speed_kmh, acceleration, g))

    if speed_kmh > SPEEDING_KMH:
        events.append(DrivingEvent(SPEEDING, _speeding_severity(speed_kmh - SPEEDING_KMH), speed_kmh))

    if prev_heading is not None and heading is not None:
        turn = heading_change(prev_heading, heading)
        if turn > HARSH_TURN_MIN_DEG and speed_kmh > HARSH_TURN_MIN_KMH:
            g = (speed_kmh / 3.6) * math.radians(turn) / elapsed_s / G
            if g > HARSH_TURN_G:
                severity = "high" if g > 0.7 else "medium"
                events.append(DrivingEvent(HARSH_TURNING, severity, speed_kmh, None, g))

    return events


def safety_score(score: float, events: Iterable[DrivingEvent]) -> float:
    for e in events:
        score -= SEVERITY_DEDUCTION[e.severity]
    return max(0.0, min(100.0, score))
