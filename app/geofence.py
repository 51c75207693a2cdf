from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, or_, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from models import Device, Geofence, GeofenceEvent, LocationPing
from geo import haversine_m
from config import HYSTERESIS
from logging_config import get_logger

ENTER = "enter"
EXIT = "exit"

logger = get_logger("geofence", "geofence.log")


# =====================================================================
# Store reads (fences are re-read for every ping; edits apply immediately)
# =====================================================================
async def active_fences_for(db: AsyncSession, device: Device) -> List[Geofence]:
    """Active fences scoped to this device, plus the owner's fences that name no device."""
    rows = await db.execute(
        select(Geofence)
        .where(
            Geofence.is_active.is_(True),
            or_(
                Geofence.device_id == device.id,
                and_(Geofence.device_id.is_(None), Geofence.user_id == device.owner_id),
            ),
        )
        .order_by(Geofence.id)
    )
    return list(rows.scalars().all())


async def last_event_kinds(db: AsyncSession, device_id: int, fence_ids: Iterable[int]) -> Dict[int, str]:
    """geofence_id → kind of the latest event for this device. Missing key → no history."""
    fence_ids = list(fence_ids)
    if not fence_ids:
        return {}

    latest = (
        select(func.max(GeofenceEvent.id).label("id"))
        .where(GeofenceEvent.device_id == device_id, GeofenceEvent.geofence_id.in_(fence_ids))
        .group_by(GeofenceEvent.geofence_id)
        .subquery()
    )
    rows = await db.execute(
        select(GeofenceEvent.geofence_id, GeofenceEvent.kind).join(latest, GeofenceEvent.id == latest.c.id)
    )
    return {fence_id: kind for fence_id, kind in rows.all()}


# =====================================================================
# Containment with hysteresis
# =====================================================================
def transition(fence: Geofence, distance_m: float, inside: bool,
               hysteresis: float = HYSTERESIS) -> Optional[str]:
    """
    Confirmed-state change for one fence, or None.
    Enter needs distance <= radius; exit needs distance > radius * (1 + hysteresis).
    Anything in between keeps the current state.
    """
    radius = float(fence.radius_m)
    if not inside and distance_m <= radius:
        return ENTER
    if inside and distance_m > radius * (1 + hysteresis):
        return EXIT
    return None


def evaluate_ping(
    ping: LocationPing,
    fences: Iterable[Geofence],
    last_kinds: Dict[int, str],
    hysteresis: float = HYSTERESIS,
) -> List[GeofenceEvent]:
    """
    Transient GeofenceEvent rows for every fence whose confirmed state this ping changes.
    The confirmed state is the last recorded event; no history counts as outside.
    `alert` carries the fence's alert_on_enter / alert_on_exit flag.
    """
    events = []
    for fence in fences:
        if fence.radius_m is None or fence.radius_m <= 0:
            logger.warning(f"[geofence] Skipping fence id={fence.id} with radius={fence.radius_m}")
            continue

        inside = last_kinds.get(fence.id) == ENTER
        distance = haversine_m(fence.center_lat, fence.center_lon, ping.lat, ping.lon)
        kind = transition(fence, distance, inside, hysteresis)
        if kind is None:
            continue

        alert = bool(fence.alert_on_enter if kind == ENTER else fence.alert_on_exit)
        events.append(GeofenceEvent(
            geofence_id=fence.id,
            device_id=ping.device_id,
            kind=kind,
            occurred_at=ping.recorded_at,
            ping_id=ping.id,
            distance_m=distance,
            alert=alert,
        ))
        logger.info(
            f"[geofence] {kind.upper()} fence={fence.id}/{fence.name} device={ping.device_id} "
            f"distance={distance:.1f}m radius={fence.radius_m}m alert={alert}"
        )
    return events
