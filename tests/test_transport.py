from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from tripsync.config import TrackingConfig
from tripsync.exceptions import ChannelError, DeliveryRejectedError, TransportError
from tripsync.models import PositionSample, QueueItem, QueueItemType, to_epoch_ms
from tripsync.transport import ChannelTransport, FallbackTransport, HttpTransport


def _dt() -> datetime:
    return datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


def _positions(count: int) -> list[PositionSample]:
    return [
        PositionSample(ride_id="42", lat=33.57, lng=-7.59, heading=90.0, speed=8.0, captured_at=_dt())
        for _ in range(count)
    ]


class _Api:
    """Records requests and answers with a configurable response."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, dict[str, Any], str | None]] = []
        self.status = 200
        self.body: str | None = None
        self.raw: bytes | None = None
        self.reply: dict[str, Any] = {"success": True}

    async def handler(self, request: web.Request) -> web.Response:
        payload = await request.json()
        self.requests.append((request.method, request.path, payload, request.headers.get("Authorization")))
        if self.raw is not None:
            return web.Response(status=self.status, body=self.raw, content_type="application/json", charset="utf-8")
        if self.body is not None:
            return web.Response(status=self.status, text=self.body, content_type="application/json")
        return web.json_response(self.reply, status=self.status)


@asynccontextmanager
async def _http(api: _Api, **overrides: Any) -> AsyncIterator[HttpTransport]:
    app = web.Application()
    app.router.add_route("*", "/api/{endpoint}", api.handler)
    server = TestServer(app)
    await server.start_server()
    session = aiohttp.ClientSession()
    config = TrackingConfig(api_base_url=str(server.make_url("/api")), ws_url=None, **overrides)
    try:
        yield HttpTransport(config, session)
    finally:
        await session.close()
        await server.close()


@pytest.mark.asyncio
async def test_send_positions_posts_batch_with_bearer_token() -> None:
    api = _Api()
    async with _http(api, auth_token="tok-123") as http:
        await http.send_positions(_positions(3))

    method, path, payload, auth = api.requests[0]
    assert (method, path) == ("POST", "/api/rides")
    assert auth == "Bearer tok-123"
    assert payload["action"] == "batch-positions"
    assert len(payload["positions"]) == 3
    assert payload["positions"][0] == {
        "ride_id": "42",
        "lat": 33.57,
        "lng": -7.59,
        "accuracy": None,
        "heading": 90.0,
        "speed": 8.0,
        "timestamp": to_epoch_ms(_dt()),
    }


@pytest.mark.asyncio
async def test_send_positions_with_empty_batch_is_noop() -> None:
    api = _Api()
    async with _http(api) as http:
        await http.send_positions([])
    assert api.requests == []


@pytest.mark.asyncio
async def test_send_single_position() -> None:
    api = _Api()
    async with _http(api) as http:
        await http.send_position(_positions(1)[0])

    _, _, payload, auth = api.requests[0]
    assert auth is None
    assert payload["action"] == "position"
    assert payload["ride_id"] == "42"


@pytest.mark.asyncio
async def test_success_false_is_rejected_delivery() -> None:
    api = _Api()
    api.reply = {"success": False, "message": "Ride not found"}
    async with _http(api) as http:
        with pytest.raises(DeliveryRejectedError) as excinfo:
            await http.send_positions(_positions(1))

    assert excinfo.value.server_message == "Ride not found"
    assert excinfo.value.endpoint == "rides"


@pytest.mark.asyncio
async def test_non_2xx_is_transport_error() -> None:
    api = _Api()
    api.status = 500
    api.reply = {"success": True}
    async with _http(api) as http:
        with pytest.raises(TransportError) as excinfo:
            await http.send_positions(_positions(1))

    assert not isinstance(excinfo.value, DeliveryRejectedError)
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_invalid_json_is_transport_error() -> None:
    api = _Api()
    api.body = "<html>maintenance</html>"
    async with _http(api) as http:
        with pytest.raises(TransportError, match="Invalid JSON"):
            await http.post("rides", {"action": "position"})


@pytest.mark.asyncio
async def test_undecodable_response_is_transport_error() -> None:
    api = _Api()
    api.raw = b'{"success":\xff}'
    async with _http(api) as http:
        with pytest.raises(TransportError, match="Undecodable"):
            await http.send_positions(_positions(1))


@pytest.mark.asyncio
async def test_unreachable_server_is_transport_error() -> None:
    async with aiohttp.ClientSession() as session:
        config = TrackingConfig(api_base_url="http://127.0.0.1:1/api", ws_url=None, request_timeout=2.0)
        http = HttpTransport(config, session)
        with pytest.raises(TransportError):
            await http.send_positions(_positions(1))


@pytest.mark.asyncio
async def test_queue_actions_dispatch_by_type() -> None:
    api = _Api()
    async with _http(api) as http:
        await http.send_action(
            QueueItem(id=1, type=QueueItemType.MESSAGE, payload={"ride_id": "42", "message": "hi", "local_id": 5})
        )
        await http.send_action(QueueItem(id=2, type=QueueItemType.STATUS, payload={"action": "cancel", "ride_id": "42"}))
        await http.send_action(QueueItem(id=3, type=QueueItemType.POSITION, payload={"ride_id": "42", "lat": 1.0}))

    message, status, position = api.requests
    assert message[:3] == ("POST", "/api/chat", {"action": "send", "ride_id": "42", "message": "hi"})
    assert status[:3] == ("PUT", "/api/rides", {"action": "cancel", "ride_id": "42"})
    assert position[:3] == ("POST", "/api/rides", {"action": "position", "ride_id": "42", "lat": 1.0})


# ----------------------------------------------------------------------
# Channel and fallback
# ----------------------------------------------------------------------


@dataclass
class _FakeSupervisor:
    is_connected: bool = True
    fail: bool = False
    frames: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    async def send_or_raise(self, frame_type: str, data: dict[str, Any] | None = None) -> None:
        if self.fail:
            raise ChannelError("WebSocket send failed")
        self.frames.append((frame_type, data or {}))


@dataclass
class _FakeHttp:
    singles: list[PositionSample] = field(default_factory=list)
    batches: list[int] = field(default_factory=list)
    actions: list[QueueItem] = field(default_factory=list)

    async def send_position(self, position: PositionSample) -> None:
        self.singles.append(position)

    async def send_positions(self, positions: Sequence[PositionSample]) -> None:
        self.batches.append(len(positions))

    async def send_action(self, item: QueueItem) -> None:
        self.actions.append(item)


@pytest.mark.asyncio
async def test_channel_transport_sends_position_frame() -> None:
    supervisor = _FakeSupervisor()
    channel = ChannelTransport(supervisor)  # type: ignore[arg-type]

    await channel.send_position(_positions(1)[0])

    assert supervisor.frames == [
        ("position", {"rideId": "42", "lat": 33.57, "lng": -7.59, "heading": 90.0, "speed": 8.0})
    ]


@pytest.mark.asyncio
async def test_channel_transport_requires_connection() -> None:
    channel = ChannelTransport(_FakeSupervisor(is_connected=False))  # type: ignore[arg-type]
    assert channel.available is False
    with pytest.raises(ChannelError):
        await channel.send_position(_positions(1)[0])


@pytest.mark.asyncio
async def test_stored_batches_always_use_http_even_when_channel_connected() -> None:
    supervisor = _FakeSupervisor()
    http = _FakeHttp()
    transport = FallbackTransport(http, ChannelTransport(supervisor))  # type: ignore[arg-type]

    await transport.send_positions(_positions(120))

    assert supervisor.frames == []
    assert http.batches == [120]


@pytest.mark.asyncio
async def test_live_position_prefers_connected_channel() -> None:
    supervisor = _FakeSupervisor()
    http = _FakeHttp()
    transport = FallbackTransport(http, ChannelTransport(supervisor))  # type: ignore[arg-type]

    await transport.send_position(_positions(1)[0])

    assert len(supervisor.frames) == 1
    assert http.singles == []


@pytest.mark.asyncio
async def test_live_position_uses_http_when_channel_down_or_failing() -> None:
    http = _FakeHttp()
    sample = _positions(1)[0]

    disconnected = FallbackTransport(http, ChannelTransport(_FakeSupervisor(is_connected=False)))  # type: ignore[arg-type]
    await disconnected.send_position(sample)

    failing = FallbackTransport(http, ChannelTransport(_FakeSupervisor(fail=True)))  # type: ignore[arg-type]
    await failing.send_position(sample)

    without_channel = FallbackTransport(http)  # type: ignore[arg-type]
    await without_channel.send_position(sample)

    assert http.singles == [sample, sample, sample]


@pytest.mark.asyncio
async def test_fallback_sends_actions_over_http() -> None:
    http = _FakeHttp()
    transport = FallbackTransport(http, ChannelTransport(_FakeSupervisor()))  # type: ignore[arg-type]
    item = QueueItem(id=1, type=QueueItemType.STATUS, payload={"action": "cancel", "ride_id": "42"})

    await transport.send_action(item)

    assert http.actions == [item]
