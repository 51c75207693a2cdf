import datetime as dt
from typing import Iterable, List

from sqlalchemy.ext.asyncio import AsyncSession

import crud
from geo import haversine_m
from logging_config import get_logger
from models import LocationPing, MovementAlert, MovementAlertTrigger

MOVEMENT = "movement"
THEFT_PROTECTION = "theft_protection"

logger = get_logger("movement_alerts", "movement_alerts.log")


async def evaluate_ping(db: AsyncSession, ping: LocationPing,
                        alerts: Iterable[MovementAlert]) -> List[MovementAlertTrigger]:
    """
    Fire every alert whose device moved more than threshold_m away from where
    it was at the start of the alert's time window (earliest ping recorded in
    [ping time - window, ping time]).

    An alert fires at most once per window length. Triggers are added and
    flushed here, inside the caller's unit of work.
    """
    fired = []
    for alert in alerts:
        if not alert.threshold_m or alert.threshold_m <= 0 or not alert.window_min or alert.window_min <= 0:
            logger.warning(
                f"[movement] Skipping alert id={alert.id} threshold={alert.threshold_m} window={alert.window_min}"
            )
            continue

        since = ping.recorded_at - dt.timedelta(minutes=float(alert.window_min))

        last = await crud.last_trigger_at(db, alert.id)
        if last is not None and last > since:
            continue

        reference = await crud.first_ping_between(db, ping.device_id, since, ping.recorded_at)
        if reference is None or reference.id == ping.id:
            continue

        distance = haversine_m(reference.lat, reference.lon, ping.lat, ping.lon)
        if distance <= alert.threshold_m:
            continue

        trigger = MovementAlertTrigger(
            alert_id=alert.id,
            device_id=ping.device_id,
            kind=alert.kind,
            triggered_at=ping.recorded_at,
            ping_id=ping.id,
            reference_ping_id=reference.id,
            distance_m=distance,
        )
        db.add(trigger)
        await db.flush()
        fired.append(trigger)

        logger.info(
            f"[movement] {alert.kind.upper()} alert={alert.id} device={ping.device_id} "
            f"moved {distance:.1f}m in {alert.window_min} min (threshold {alert.threshold_m}m)"
        )
    return fired
