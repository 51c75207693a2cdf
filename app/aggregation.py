import datetime as dt
from collections import defaultdict
from typing import Iterable, List, Optional

import pytz

from crud import to_dt
from driving import COUNTERS
from geo import grid_key
from logging_config import log_defect
from utils.variables import LOCATION_KEY_SCALE

UTC = pytz.utc


# =====================================================================
# Helpers
# =====================================================================
def local_date(ping) -> dt.date:
    """Calendar date of the ping in the zone it was recorded in (UTC when unknown)."""
    ts = to_dt(ping.recorded_at)
    tz_name = getattr(ping, "tz_name", None)
    offset = getattr(ping, "utc_offset_min", None)

    if tz_name:
        try:
            return ts.astimezone(pytz.timezone(tz_name)).date()
        except pytz.UnknownTimeZoneError:
            log_defect("aggregation", ping.device_id, f"ping={ping.id} unknown time zone {tz_name!r}")
    if offset is not None:
        return (ts.astimezone(UTC) + dt.timedelta(minutes=offset)).date()
    return ts.astimezone(UTC).date()


def location_key(ping) -> tuple:
    # ~1.1 km cells as a proxy for "distinct places"
    return grid_key(float(ping.lat), float(ping.lon), LOCATION_KEY_SCALE)


def clip_session(session, window_start: dt.datetime, window_end: dt.datetime,
                 include_overlapping: bool = False):
    """
    (seconds inside the window, fraction of the session inside the window),
    or None when the session does not count for this window.

    Sessions count when they start inside the window. Sessions that started
    earlier only count with include_overlapping, and then only for the overlap.
    Open sessions run until their last ping.
    """
    start = to_dt(session.start_time)
    end = to_dt(session.end_time or session.last_ping_at)

    if start >= window_end or end < window_start:
        return None
    if start < window_start and not include_overlapping:
        return None

    lo = max(start, window_start)
    hi = min(end, window_end)
    total_s = (end - start).total_seconds()
    inside_s = max((hi - lo).total_seconds(), 0.0)
    fraction = inside_s / total_s if total_s > 0 else 1.0
    return inside_s, fraction


def _stats(pings: List, clipped: List) -> dict:
    durations = [inside_s for _, inside_s, _ in clipped]
    speeds = [float(s.avg_speed_kmh or 0) for s, _, _ in clipped]

    return {
        "total_pings": len(pings),
        "total_distance_m": sum(float(s.distance_m or 0) * frac for s, _, frac in clipped),
        "total_sessions": len(clipped),
        "total_duration_s": sum(durations),
        "avg_session_duration_s": sum(durations) / len(durations) if durations else 0.0,
        "max_session_duration_s": max(durations, default=0.0),
        # one vote per session so dense idle sampling cannot skew it
        "avg_speed_kmh": sum(speeds) / len(speeds) if speeds else 0.0,
        "max_speed_kmh": max((float(s.max_speed_kmh or 0) for s, _, _ in clipped), default=0.0),
        "active_days": len({local_date(p) for p in pings}),
        "unique_locations": len({location_key(p) for p in pings}),
        "driving_events": sum(getattr(s, column) or 0 for s, _, _ in clipped for column in COUNTERS.values()),
        "min_safety_score": min(
            (float(s.safety_score) for s, _, _ in clipped if s.safety_score is not None), default=100.0
        ),
    }


# =====================================================================
# MAIN
# =====================================================================
def summarize(
    pings: Iterable,
    sessions: Iterable,
    window_start: dt.datetime,
    window_end: dt.datetime,
    devices: Optional[Iterable] = None,
    include_overlapping: bool = False,
) -> dict:
    """
    Summary statistics over [window_start, window_end) plus a per-device breakdown.

    Only pings recorded inside the window are counted. Session figures follow
    clip_session(); distance of a partially covered session is pro-rated by
    the covered fraction of its duration.
    """
    window_start = to_dt(window_start)
    window_end = to_dt(window_end)

    pings = [p for p in pings if window_start <= to_dt(p.recorded_at) < window_end]

    clipped = []
    for s in sessions:
        c = clip_session(s, window_start, window_end, include_overlapping)
        if c is not None:
            clipped.append((s, c[0], c[1]))

    pings_by_device = defaultdict(list)
    for p in pings:
        pings_by_device[p.device_id].append(p)
    clipped_by_device = defaultdict(list)
    for entry in clipped:
        clipped_by_device[entry[0].device_id].append(entry)

    devices = list(devices) if devices is not None else []
    per_device = []
    for d in devices:
        row = {
            "id": d.id,
            "name": getattr(d, "name", None),
            "device_class": getattr(d, "device_class", None),
        }
        row.update(_stats(pings_by_device[d.id], clipped_by_device[d.id]))
        per_device.append(row)

    seen = set(pings_by_device) | set(clipped_by_device)
    summary = {"total_devices": len(devices) if devices else len(seen)}
    summary.update(_stats(pings, clipped))

    return {
        "timeframe": {"start": window_start.isoformat(), "end": window_end.isoformat()},
        "summary": summary,
        "devices": per_device,
    }
