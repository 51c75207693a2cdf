import os
import tempfile

# logging_config creates LOG_DIR on import; keep test runs out of /logs
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="tracker-logs-"))

import datetime as dt

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from database import Base, make_session_factory
from models import Device, Geofence, LocationPing, MovementSession

UTC = dt.timezone.utc
T0 = dt.datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

# metres per degree of latitude on the model sphere
M_PER_DEG = 6_371_000 * 3.141592653589793 / 180

HOME = (40.0, -74.0)
OWNER_ID = 10


def north_of(center, metres):
    """(lat, lon) exactly `metres` north of center along the meridian."""
    return center[0] + metres / M_PER_DEG, center[1]


@pytest.fixture
def make_ping():
    def _make(lat, lon, recorded_at, device_id=1, **kw):
        kw.setdefault("received_at", recorded_at)
        return LocationPing(device_id=device_id, lat=lat, lon=lon, recorded_at=recorded_at, **kw)
    return _make


@pytest.fixture
def make_session():
    def _make(start, last, end=None, device_id=1, distance_m=0.0, avg=0.0, top=0.0, **kw):
        return MovementSession(
            device_id=device_id, start_time=start, end_time=end, last_ping_at=last,
            start_lat=HOME[0], start_lon=HOME[1], last_lat=HOME[0], last_lon=HOME[1],
            distance_m=distance_m, avg_speed_kmh=avg, max_speed_kmh=top, ping_count=1, **kw,
        )
    return _make


@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def devices(session_factory):
    async with session_factory() as db:
        db.add_all([
            Device(id=1, owner_id=OWNER_ID, name="Pixel", device_class="phone"),
            Device(id=2, owner_id=OWNER_ID, name="MacBook", device_class="laptop"),
            Device(id=3, owner_id=99, name="Someone else's", device_class="phone"),
            Device(id=4, owner_id=OWNER_ID, name="Old tag", device_class="gps_tag", is_active=False),
        ])
        await db.commit()


@pytest.fixture
async def home_fence(session_factory, devices):
    async with session_factory() as db:
        fence = Geofence(
            user_id=OWNER_ID, device_id=None, name="Home",
            center_lat=HOME[0], center_lon=HOME[1], radius_m=100,
            alert_on_enter=True, alert_on_exit=False,
        )
        db.add(fence)
        await db.commit()
        return fence.id
