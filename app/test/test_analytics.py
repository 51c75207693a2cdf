import datetime as dt

import pytest
from sqlalchemy.exc import OperationalError

from analytics import AnalyticsOrchestrator, resolve_window
from errors import TransientStoreError, UnknownDeviceError, ValidationError
from ingest import IngestionService
from conftest import OWNER_ID, T0

M = dt.timedelta(minutes=1)
NOW = T0 + dt.timedelta(hours=12)


@pytest.fixture
async def history(session_factory, devices):
    """Phone: a 3-ping drive, a 20 minute stop, one more ping. Laptop: one ping."""
    service = IngestionService(session_factory, retry_wait_s=0)
    trail = [
        (1, 40.000, -74.0, T0),
        (1, 40.001, -74.0, T0 + M),
        (1, 40.002, -74.0, T0 + 2 * M),
        (1, 40.002, -74.0, T0 + 22 * M),
        (2, 41.000, -73.0, T0 + 5 * M),
    ]
    for device_id, lat, lon, at in trail:
        await service.ingest(
            {"device_id": device_id, "latitude": lat, "longitude": lon, "timestamp": at.isoformat()},
            received_at=NOW,
        )
    return AnalyticsOrchestrator(session_factory)


def test_resolve_window():
    start, end = resolve_window("30d", NOW)
    assert end == NOW
    assert end - start == dt.timedelta(days=30)
    assert resolve_window(None, NOW)[0] == NOW - dt.timedelta(days=7)
    with pytest.raises(ValidationError):
        resolve_window("2w", NOW)


async def test_summary_report(history):
    result = await history.run(OWNER_ID, timeframe="1d", now=NOW)
    s = result["summary"]

    assert s["total_devices"] == 2
    assert s["total_pings"] == 5
    assert s["total_sessions"] == 3
    assert s["total_distance_m"] == pytest.approx(2 * 111.19, abs=0.1)
    assert s["max_session_duration_s"] == 120
    assert s["active_days"] == 1
    assert s["unique_locations"] == 2

    phone, laptop = result["devices"]
    assert phone["total_sessions"] == 2
    assert phone["total_pings"] == 4
    assert laptop["total_sessions"] == 1
    assert laptop["total_distance_m"] == 0


async def test_single_device_summary(history):
    result = await history.run(OWNER_ID, device_id=2, timeframe="1d", now=NOW)
    assert result["summary"]["total_devices"] == 1
    assert result["summary"]["total_pings"] == 1
    assert [d["id"] for d in result["devices"]] == [2]


async def test_sessions_report_is_newest_first(history):
    result = await history.run(OWNER_ID, device_id=1, report="sessions", now=NOW)
    latest, first = result["sessions"]

    assert latest["is_open"] and latest["session_end"] is None
    assert latest["session_start"] == (T0 + 22 * M).isoformat()
    assert first["session_end"] == (T0 + 2 * M).isoformat()
    assert first["duration_s"] == 120
    assert first["ping_count"] == 3
    assert first["device_name"] == "Pixel"
    assert first["total_distance_meters"] == pytest.approx(2 * 111.19, abs=0.1)
    # walking pace: nothing to flag
    assert first["driving_events"] == {
        "speeding": 0, "hard_braking": 0, "rapid_acceleration": 0, "harsh_turning": 0,
    }
    assert first["safety_score"] == 100.0


async def test_heatmap_report_matches_ping_total(history):
    heatmap = await history.run(OWNER_ID, report="heatmap", timeframe="7d", now=NOW)
    summary = await history.run(OWNER_ID, report="summary", timeframe="7d", now=NOW)

    assert heatmap["total_points"] == summary["summary"]["total_pings"] == 5
    assert sum(c["count"] for c in heatmap["cells"]) == 5
    assert heatmap["timeframe"] == summary["timeframe"]


async def test_window_excludes_older_data(history):
    result = await history.run(OWNER_ID, timeframe="1d", now=NOW + dt.timedelta(days=2))
    assert result["summary"]["total_pings"] == 0
    assert result["summary"]["total_sessions"] == 0


@pytest.mark.parametrize("kwargs", [{"report": "pdf"}, {"timeframe": "365d"}])
async def test_invalid_request(history, kwargs):
    with pytest.raises(ValidationError):
        await history.run(OWNER_ID, now=NOW, **kwargs)


@pytest.mark.parametrize("device_id", [3, 4, 999])
async def test_foreign_inactive_or_missing_device(history, device_id):
    with pytest.raises(UnknownDeviceError):
        await history.run(OWNER_ID, device_id=device_id, now=NOW)


async def test_store_failure_is_transient():
    class Unreachable:
        async def __aenter__(self):
            raise OperationalError("SELECT", {}, Exception("connection refused"))

        async def __aexit__(self, *exc):
            return False

    orchestrator = AnalyticsOrchestrator(lambda: Unreachable())
    with pytest.raises(TransientStoreError):
        await orchestrator.run(OWNER_ID, now=NOW)
