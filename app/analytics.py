import datetime as dt
from typing import Optional

from sqlalchemy.exc import DBAPIError, OperationalError

import crud
from aggregation import summarize
from driving import COUNTERS
from database import AsyncSessionLocal
from errors import TransientStoreError, UnknownDeviceError, ValidationError
from heatmap import build_heatmap
from logging_config import get_logger
from utils.variables import DEFAULT_TIMEFRAME, REPORT_TYPES, TIMEFRAME_DAYS

logger = get_logger("analytics", "analytics.log")

UTC = dt.timezone.utc


def resolve_window(timeframe: Optional[str], now: Optional[dt.datetime] = None):
    timeframe = timeframe or DEFAULT_TIMEFRAME
    if timeframe not in TIMEFRAME_DAYS:
        raise ValidationError("timeframe", f"expected one of {sorted(TIMEFRAME_DAYS)}, got {timeframe!r}")
    end = crud.to_dt(now) if now else dt.datetime.now(UTC)
    return end - dt.timedelta(days=TIMEFRAME_DAYS[timeframe]), end


def session_row(s, device=None) -> dict:
    end = s.end_time or s.last_ping_at
    return {
        "id": s.id,
        "device_id": s.device_id,
        "device_name": device.name if device else None,
        "device_class": device.device_class if device else None,
        "session_start": s.start_time.isoformat(),
        "session_end": s.end_time.isoformat() if s.end_time else None,
        "is_open": s.end_time is None,
        "last_ping_at": s.last_ping_at.isoformat(),
        "duration_s": (end - s.start_time).total_seconds(),
        "start": {"lat": s.start_lat, "lon": s.start_lon},
        "last": {"lat": s.last_lat, "lon": s.last_lon},
        "total_distance_meters": float(s.distance_m or 0),
        "avg_speed_kmh": float(s.avg_speed_kmh or 0),
        "max_speed_kmh": float(s.max_speed_kmh or 0),
        "ping_count": s.ping_count,
        "driving_events": {kind: getattr(s, column) or 0 for kind, column in COUNTERS.items()},
        "safety_score": float(s.safety_score if s.safety_score is not None else 100),
    }


class AnalyticsOrchestrator:
    """
    Read side. Loads one snapshot of pings / sessions for the window and
    hands it to the aggregation engine or the heatmap binner. Never writes,
    so cancelling the awaiting task leaves nothing behind.
    """

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def run(self, owner_id: int, device_id: Optional[int] = None,
                  timeframe: Optional[str] = DEFAULT_TIMEFRAME, report: str = "summary",
                  now: Optional[dt.datetime] = None, include_overlapping: bool = False) -> dict:
        if report not in REPORT_TYPES:
            raise ValidationError("report", f"expected one of {list(REPORT_TYPES)}, got {report!r}")
        start, end = resolve_window(timeframe, now)

        logger.info(
            f"[analytics] report={report} owner={owner_id} device={device_id} "
            f"window={start.isoformat()}..{end.isoformat()}"
        )

        try:
            async with self.session_factory() as db:
                devices = await crud.devices_for_owner(db, owner_id, device_id)
                if device_id is not None and not devices:
                    raise UnknownDeviceError(device_id)
                device_ids = [d.id for d in devices]

                if report == "heatmap":
                    pings = await crud.pings_in_window(db, device_ids, start, end)
                    return {"timeframe": _timeframe(start, end), **build_heatmap(pings)}

                sessions = await crud.sessions_in_window(db, device_ids, start, end, include_overlapping)
                if report == "sessions":
                    by_id = {d.id: d for d in devices}
                    return {
                        "timeframe": _timeframe(start, end),
                        "sessions": [session_row(s, by_id.get(s.device_id)) for s in sessions],
                    }

                pings = await crud.pings_in_window(db, device_ids, start, end)
                return summarize(pings, sessions, start, end, devices=devices,
                                 include_overlapping=include_overlapping)
        except (DBAPIError, OperationalError, OSError) as e:
            logger.warning(f"[analytics] Store read failed: {e}")
            raise TransientStoreError(f"analytics read failed: {e}") from e


def _timeframe(start: dt.datetime, end: dt.datetime) -> dict:
    return {"start": start.isoformat(), "end": end.isoformat()}
