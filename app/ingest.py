import datetime as dt
import math
import numbers
from dataclasses import dataclass, field
from typing import List, Optional

import asyncpg
import pytz
from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import (AsyncRetrying, retry_if_exception_type, stop_after_attempt,
                      wait_exponential_jitter, wait_none)

import crud
from config import IDLE_TIMEOUT_S, HYSTERESIS, RETRY_ATTEMPTS, RETRY_WAIT_S
from database import AsyncSessionLocal
from errors import (InvariantViolation, TrackingError, TransientStoreError,
                    UnknownDeviceError, ValidationError)
from geofence import active_fences_for, evaluate_ping, last_event_kinds
from logging_config import get_logger, log_defect
from models import LocationPing
from movement_alerts import evaluate_ping as check_movement_alerts
from policy import check_sample, movement_threshold_for, resolve_policy
from segmenter import apply_ping
from utils.variables import MAX_CLOCK_SKEW_S

logger = get_logger("ingest", "ingest.log")

UTC = dt.timezone.utc


# =====================================================================
# Payload validation: nothing is written before this passes
# =====================================================================
def _number(payload: dict, name: str, required: bool = False) -> Optional[float]:
    value = payload.get(name)
    if value is None:
        if required:
            raise ValidationError(name, "is required")
        return None
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValidationError(name, f"must be a number, got {value!r}")
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError(name, "must be finite")
    return value


def _device_id(payload: dict) -> int:
    value = payload.get("device_id")
    if isinstance(value, bool):
        raise ValidationError("device_id", "must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    raise ValidationError("device_id", f"must be an integer, got {value!r}")


def _timestamp(value, received_at: dt.datetime):
    """(recorded_at in UTC, utc offset in minutes or None)."""
    if value is None:
        return received_at, None

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = dt.datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError("timestamp", f"not an ISO-8601 timestamp: {value!r}")
    elif not isinstance(value, dt.datetime):
        raise ValidationError("timestamp", f"unsupported type {type(value).__name__}")

    offset = None
    if value.tzinfo is not None and value.utcoffset() is not None:
        offset = int(value.utcoffset().total_seconds() // 60)
    recorded_at = crud.to_dt(value).astimezone(UTC)

    if (recorded_at - received_at).total_seconds() > MAX_CLOCK_SKEW_S:
        raise ValidationError("timestamp", f"{recorded_at.isoformat()} is ahead of receipt time")
    return recorded_at, offset


def parse_payload(payload: dict, received_at: dt.datetime) -> dict:
    """
    Validate the ingestion contract and return LocationPing column values.
    Out-of-range coordinates are rejected, never clamped.
    """
    if not isinstance(payload, dict):
        raise ValidationError("payload", "must be an object")

    device_id = _device_id(payload)

    lat = _number(payload, "latitude", required=True)
    lon = _number(payload, "longitude", required=True)
    if not -90 <= lat <= 90:
        raise ValidationError("latitude", f"{lat} outside [-90, 90]")
    if not -180 <= lon <= 180:
        raise ValidationError("longitude", f"{lon} outside [-180, 180]")

    accuracy = _number(payload, "accuracy")
    if accuracy is not None and accuracy < 0:
        raise ValidationError("accuracy", "must not be negative")

    is_background = payload.get("is_background", False)
    if not isinstance(is_background, bool):
        raise ValidationError("is_background", "must be a boolean")

    source = payload.get("source") or ("background" if is_background else "gps")
    if not isinstance(source, str):
        raise ValidationError("source", "must be a string")

    tz_name = payload.get("timezone")
    if tz_name is not None:
        try:
            pytz.timezone(tz_name)
        except (pytz.UnknownTimeZoneError, AttributeError):
            raise ValidationError("timezone", f"unknown time zone {tz_name!r}")

    recorded_at, offset = _timestamp(payload.get("timestamp"), received_at)

    return {
        "device_id": device_id,
        "lat": lat,
        "lon": lon,
        "accuracy": accuracy,
        "altitude": _number(payload, "altitude"),
        "speed": _number(payload, "speed"),
        "heading": _number(payload, "heading"),
        "source": source,
        "is_background": is_background,
        "recorded_at": recorded_at,
        "received_at": received_at,
        "tz_name": tz_name,
        "utc_offset_min": offset,
    }


@dataclass
class IngestResult:
    device_id: int
    recorded_at: dt.datetime
    ping_id: Optional[int] = None
    duplicate: bool = False
    late: bool = False
    session_id: Optional[int] = None
    session_opened: bool = False
    closed_session_id: Optional[int] = None
    distance_added: float = 0.0
    events: List[dict] = field(default_factory=list)
    driving_events: List[dict] = field(default_factory=list)
    movement_alerts: List[dict] = field(default_factory=list)
    advisories: List[str] = field(default_factory=list)


# =====================================================================
# Ingestion service
# =====================================================================
class IngestionService:
    """
    One ping = one unit of work: dedup, session segmentation, driving checks,
    geofence and movement-alert evaluation and persistence commit together or
    not at all.

    Callers must serialize pings of the same device (see worker.DeviceDispatcher).
    """

    def __init__(self, session_factory=AsyncSessionLocal, *,
                 idle_timeout_s: float = IDLE_TIMEOUT_S,
                 hysteresis: float = HYSTERESIS,
                 retry_attempts: int = RETRY_ATTEMPTS,
                 retry_wait_s: float = RETRY_WAIT_S):
        self.session_factory = session_factory
        self.idle_timeout_s = idle_timeout_s
        self.hysteresis = hysteresis
        self.retry_attempts = retry_attempts
        self.retry_wait_s = retry_wait_s

    def _retrying(self) -> AsyncRetrying:
        wait = wait_exponential_jitter(initial=self.retry_wait_s, max=30) if self.retry_wait_s > 0 else wait_none()
        return AsyncRetrying(
            wait=wait,
            stop=stop_after_attempt(self.retry_attempts),
            retry=retry_if_exception_type(TransientStoreError),
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                f"[ingest] Store unavailable, retrying attempt {rs.attempt_number + 1}: {rs.outcome.exception()}"
            ),
        )

    async def ingest(self, payload: dict, owner_id: Optional[int] = None,
                     received_at: Optional[dt.datetime] = None) -> IngestResult:
        received_at = crud.to_dt(received_at) if received_at else dt.datetime.now(UTC)
        fields = parse_payload(payload, received_at.astimezone(UTC))

        async for attempt in self._retrying():
            with attempt:
                result = await self._apply(fields, owner_id)
        return result

    async def _apply(self, fields: dict, owner_id: Optional[int]) -> IngestResult:
        device_id = fields["device_id"]
        try:
            async with self.session_factory() as db:
                result = await self._unit_of_work(db, fields, owner_id)
                await db.commit()
        except TrackingError:
            raise
        except (DBAPIError, OperationalError, OSError, asyncpg.CannotConnectNowError) as e:
            logger.warning(f"[ingest] Store failure for device {device_id}: {e}")
            raise TransientStoreError(f"store failure for device {device_id}: {e}") from e
        return result

    async def _unit_of_work(self, db, fields: dict, owner_id: Optional[int]) -> IngestResult:
        device_id = fields["device_id"]
        recorded_at = fields["recorded_at"]
        result = IngestResult(device_id=device_id, recorded_at=recorded_at)

        # ---------------------- Device ----------------------
        device = await crud.get_device(db, device_id)
        if device is None or not device.is_active or (owner_id is not None and device.owner_id != owner_id):
            raise UnknownDeviceError(device_id)

        # ---------------------- Dedup ----------------------
        existing = await crud.find_ping(db, device_id, recorded_at)
        if existing is not None:
            logger.info(f"[ingest] Duplicate ping device={device_id} recorded_at={recorded_at} → ignored")
            result.ping_id = existing.id
            result.duplicate = True
            return result

        ping = LocationPing(**fields)
        db.add(ping)
        await db.flush()
        result.ping_id = ping.id

        result.advisories = check_sample(resolve_policy(device.device_class), ping, device.last_ping_at)
        if result.advisories:
            logger.info(f"[ingest] Advisory device={device_id} ping={ping.id}: {result.advisories}")

        # ---------------------- Out of order ----------------------
        if device.last_ping_at is not None and recorded_at < device.last_ping_at:
            logger.warning(
                f"[ingest] Late ping device={device_id} recorded_at={recorded_at} "
                f"< last applied {device.last_ping_at} → stored only"
            )
            result.late = True
            return result

        # ---------------------- Sessions ----------------------
        open_row = await crud.get_open_session(db, device_id)
        seg = apply_ping(open_row, ping, movement_threshold_for(device), self.idle_timeout_s)
        if seg.closed is not None:
            # close must reach the db before the new open row (one open session per device)
            await db.flush()
            result.closed_session_id = seg.closed.id
        if seg.opened:
            db.add(seg.session)
        await db.flush()
        result.session_id = seg.session.id
        result.session_opened = seg.opened
        result.distance_added = seg.distance_added
        result.driving_events = [e.as_dict() for e in seg.driving_events]

        # ---------------------- Geofences ----------------------
        fences = await active_fences_for(db, device)
        kinds = await last_event_kinds(db, device_id, [f.id for f in fences])
        for event in evaluate_ping(ping, fences, kinds, self.hysteresis):
            try:
                await crud.append_geofence_event(db, event)
            except InvariantViolation as e:
                log_defect("geofence", device_id, str(e))
                continue
            result.events.append({
                "event_id": event.id,
                "geofence_id": event.geofence_id,
                "kind": event.kind,
                "occurred_at": event.occurred_at.isoformat(),
                "distance_m": event.distance_m,
                "alert": event.alert,
            })

        # ---------------------- Movement alerts ----------------------
        alerts = await crud.active_movement_alerts(db, device_id)
        for trigger in await check_movement_alerts(db, ping, alerts):
            result.movement_alerts.append({
                "trigger_id": trigger.id,
                "alert_id": trigger.alert_id,
                "kind": trigger.kind,
                "triggered_at": trigger.triggered_at.isoformat(),
                "distance_m": trigger.distance_m,
            })

        device.last_ping_at = recorded_at
        await db.flush()

        logger.info(
            f"[ingest] Applied ping={ping.id} device={device_id} session={result.session_id} "
            f"opened={result.session_opened} +{result.distance_added:.1f}m events={len(result.events)} "
            f"driving={len(result.driving_events)} movement_alerts={len(result.movement_alerts)}"
        )
        return result
