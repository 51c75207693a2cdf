from typing import Iterable, List, Optional
import datetime as dt

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_, and_, func
from sqlalchemy.orm.attributes import set_committed_value

from models import (Device, LocationPing, MovementSession, GeofenceEvent, MovementAlert,
                    MovementAlertTrigger)
from errors import InvariantViolation
from logging_config import get_logger, log_defect

logger = get_logger("crud", "crud.log")


def to_dt(v):
    if isinstance(v, dt.datetime):
        # ensure tz-aware
        return v if v.tzinfo else v.replace(tzinfo=dt.timezone.utc)

    if isinstance(v, str):
        dt_obj = dt.datetime.fromisoformat(v)
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=dt.timezone.utc)

    return None


def _tz_aware(row, *attrs):
    # some backends hand back naive datetimes; fix them without dirtying the row
    for attr in attrs:
        value = getattr(row, attr)
        if isinstance(value, dt.datetime) and value.tzinfo is None:
            set_committed_value(row, attr, to_dt(value))
    return row


# =====================================================================
# Devices
# =====================================================================
async def get_device(db: AsyncSession, device_id: int) -> Optional[Device]:
    device = await db.get(Device, device_id)
    return _tz_aware(device, "last_ping_at") if device else None


async def devices_for_owner(db: AsyncSession, owner_id: int, device_id: Optional[int] = None) -> List[Device]:
    q = select(Device).where(Device.owner_id == owner_id, Device.is_active.is_(True))
    if device_id is not None:
        q = q.where(Device.id == device_id)
    rows = await db.execute(q.order_by(Device.id))
    return list(rows.scalars().all())


# =====================================================================
# Pings
# =====================================================================
async def find_ping(db: AsyncSession, device_id: int, recorded_at: dt.datetime) -> Optional[LocationPing]:
    """Dedup lookup on the (device, recorded_at) key."""
    row = await db.execute(
        select(LocationPing)
        .where(LocationPing.device_id == device_id, LocationPing.recorded_at == recorded_at)
        .limit(1)
    )
    return row.scalar_one_or_none()


async def pings_in_window(db: AsyncSession, device_ids: Iterable[int],
                          start: dt.datetime, end: dt.datetime) -> List[LocationPing]:
    device_ids = list(device_ids)
    if not device_ids:
        return []
    rows = await db.execute(
        select(LocationPing)
        .where(
            LocationPing.device_id.in_(device_ids),
            LocationPing.recorded_at >= start,
            LocationPing.recorded_at < end,
        )
        .order_by(LocationPing.recorded_at.asc(), LocationPing.id.asc())
    )
    return [_tz_aware(p, "recorded_at", "received_at") for p in rows.scalars().all()]


# =====================================================================
# Sessions
# =====================================================================
SESSION_TIMES = ("start_time", "end_time", "last_ping_at")


async def get_open_session(db: AsyncSession, device_id: int) -> Optional[MovementSession]:
    """
    The device's open session, if any.
    More than one open session is a defect: the newest one wins, the rest are
    closed at their own last ping.
    """
    rows = await db.execute(
        select(MovementSession)
        .where(MovementSession.device_id == device_id, MovementSession.end_time.is_(None))
        .order_by(MovementSession.start_time.desc(), MovementSession.id.desc())
    )
    open_rows = [_tz_aware(s, *SESSION_TIMES) for s in rows.scalars().all()]
    if not open_rows:
        return None

    current, extras = open_rows[0], open_rows[1:]
    if extras:
        err = InvariantViolation(
            f"{len(open_rows)} open sessions, keeping id={current.id}, "
            f"force-closing {[s.id for s in extras]}"
        )
        log_defect("session", device_id, str(err))
        for s in extras:
            s.end_time = s.last_ping_at
        await db.flush()

    return current


async def sessions_in_window(db: AsyncSession, device_ids: Iterable[int],
                             start: dt.datetime, end: dt.datetime,
                             include_overlapping: bool = False) -> List[MovementSession]:
    """
    Sessions that started in [start, end). With include_overlapping, also the
    ones that started earlier but were still running at `start`.
    """
    device_ids = list(device_ids)
    if not device_ids:
        return []

    started_inside = and_(MovementSession.start_time >= start, MovementSession.start_time < end)
    if include_overlapping:
        running_at_start = and_(
            MovementSession.start_time < start,
            MovementSession.last_ping_at >= start,
        )
        window_filter = or_(started_inside, running_at_start)
    else:
        window_filter = started_inside

    rows = await db.execute(
        select(MovementSession)
        .where(MovementSession.device_id.in_(device_ids), window_filter)
        .order_by(MovementSession.start_time.desc())
    )
    return [_tz_aware(s, *SESSION_TIMES) for s in rows.scalars().all()]


# =====================================================================
# Geofence events (append-only)
# =====================================================================
async def last_event_kind(db: AsyncSession, device_id: int, geofence_id: int) -> Optional[str]:
    row = await db.execute(
        select(GeofenceEvent.kind)
        .where(GeofenceEvent.device_id == device_id, GeofenceEvent.geofence_id == geofence_id)
        .order_by(GeofenceEvent.id.desc())
        .limit(1)
    )
    return row.scalar_one_or_none()


async def append_geofence_event(db: AsyncSession, event: GeofenceEvent) -> GeofenceEvent:
    """Raises InvariantViolation instead of writing a second same-kind event in a row."""
    previous = await last_event_kind(db, event.device_id, event.geofence_id)
    if previous == event.kind:
        raise InvariantViolation(
            f"geofence={event.geofence_id} would record '{event.kind}' twice in a row"
        )
    db.add(event)
    await db.flush()
    return event


# =====================================================================
# Movement alerts
# =====================================================================
async def active_movement_alerts(db: AsyncSession, device_id: int) -> List[MovementAlert]:
    rows = await db.execute(
        select(MovementAlert)
        .where(MovementAlert.device_id == device_id, MovementAlert.is_active.is_(True))
        .order_by(MovementAlert.id)
    )
    return list(rows.scalars().all())


async def first_ping_between(db: AsyncSession, device_id: int,
                             start: dt.datetime, end: dt.datetime) -> Optional[LocationPing]:
    """Earliest ping recorded in [start, end]."""
    row = await db.execute(
        select(LocationPing)
        .where(
            LocationPing.device_id == device_id,
            LocationPing.recorded_at >= start,
            LocationPing.recorded_at <= end,
        )
        .order_by(LocationPing.recorded_at.asc(), LocationPing.id.asc())
        .limit(1)
    )
    ping = row.scalar_one_or_none()
    return _tz_aware(ping, "recorded_at", "received_at") if ping else None


async def last_trigger_at(db: AsyncSession, alert_id: int) -> Optional[dt.datetime]:
    value = await db.scalar(
        select(func.max(MovementAlertTrigger.triggered_at)).where(MovementAlertTrigger.alert_id == alert_id)
    )
    return to_dt(value)
