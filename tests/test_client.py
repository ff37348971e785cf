from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from tripsync.client import TrackingClient
from tripsync.config import TrackingConfig
from tripsync.events import TrackingEvent
from tripsync.exceptions import TripSyncError
from tripsync.models import GeoFix, SyncState
from tripsync.sensor import ReplayLocationProvider

PICKUP = (33.5731, -7.5898)


def _dt(seconds: float = 0) -> datetime:
    return datetime(2026, 5, 1, 12, 0, tzinfo=UTC) + timedelta(seconds=seconds)


def _track() -> list[GeoFix]:
    # One fix every 10 s, each about 110 m further north.
    return [GeoFix(lat=PICKUP[0] + i * 0.001, lng=PICKUP[1], speed=11.0, timestamp=_dt(i * 10)) for i in range(3)]


@asynccontextmanager
async def _api() -> AsyncIterator[tuple[str, list[dict[str, Any]]]]:
    received: list[dict[str, Any]] = []

    async def handler(request: web.Request) -> web.Response:
        body = await request.json()
        received.append({"method": request.method, "endpoint": request.match_info["endpoint"], **body})
        return web.json_response({"success": True})

    app = web.Application()
    app.router.add_route("*", "/api/{endpoint}", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("/api")), received
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_session_delivers_positions_on_stop(tmp_path: Path) -> None:
    async with _api() as (api_url, received):
        config = TrackingConfig(api_base_url=api_url, ws_url=None, db_path=tmp_path / "trips.db")
        async with TrackingClient(config, ReplayLocationProvider(_track())) as client:
            assert client.tracker is not None
            assert client.supervisor is None
            updates: list[Any] = []
            client.tracker.events.subscribe(TrackingEvent.POSITION_UPDATE, updates.append)

            await client.start_tracking(42, "driver")
            assert client.is_tracking

            async def _three_updates() -> None:
                while len(updates) < 3:
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(_three_updates(), timeout=2.0)
            assert client.last_position is not None
            assert client.trip_stats is not None
            assert client.trip_stats.total_distance_m > 200

            final = await client.stop_tracking()

            assert final is not None
            assert not client.is_tracking
            assert client.store is not None
            assert await client.store.count_unsynced() == 0

    batches = [r for r in received if r.get("action") == "batch-positions"]
    assert len(batches) == 1
    assert [p["lat"] for p in batches[0]["positions"]] == pytest.approx([PICKUP[0] + i * 0.001 for i in range(3)])
    assert {p["ride_id"] for p in batches[0]["positions"]} == {"42"}


@pytest.mark.asyncio
async def test_side_actions_are_queued_and_flushed(tmp_path: Path) -> None:
    async with _api() as (api_url, received):
        config = TrackingConfig(api_base_url=api_url, ws_url=None, db_path=tmp_path / "trips.db")
        async with TrackingClient(config, ReplayLocationProvider([])) as client:
            message = await client.queue_message(42, "I'm at the gate")
            await client.update_ride_status(42, "cancel")

            result = await client.flush()

            assert result.queue_sent == 2
            assert client.store is not None
            stored = await client.store.list_messages("42")
            assert [m.local_id for m in stored] == [message.local_id]
            assert stored[0].sync_state == SyncState.SYNCED
            assert await client.store.list_queue() == []

    chat = [r for r in received if r["endpoint"] == "chat"]
    status = [r for r in received if r["method"] == "PUT"]
    assert chat == [{"method": "POST", "endpoint": "chat", "action": "send", "ride_id": "42", "message": "I'm at the gate"}]
    assert status == [{"method": "PUT", "endpoint": "rides", "action": "cancel", "ride_id": "42"}]


@pytest.mark.asyncio
async def test_ride_cache_round_trip(tmp_path: Path) -> None:
    config = TrackingConfig(ws_url=None, db_path=tmp_path / "trips.db")
    async with TrackingClient(config) as client:
        await client.save_ride({"id": 42, "status": "accepted", "driverName": "Sam"})
        ride = await client.get_ride("42")

    assert ride is not None
    assert ride.status == "accepted"
    assert ride.data == {"driverName": "Sam"}


@pytest.mark.asyncio
async def test_client_requires_context_manager() -> None:
    client = TrackingClient(TrackingConfig(ws_url=None))
    assert client.is_tracking is False
    with pytest.raises(TripSyncError):
        await client.flush()
    with pytest.raises(TripSyncError):
        await client.start_tracking(42)
