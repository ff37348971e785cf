"""Persistent WebSocket channel and its connection lifecycle.

Frames are JSON objects ``{"type": ..., "data": {...}, "timestamp": <ms>}``.

Reconnection is driven only by close/error events: a normal close (code
1000) never reconnects, any other close schedules attempt *n* after
``reconnect_interval * 1.5 ** (n - 1)`` seconds until
``max_reconnect_attempts`` is reached. The heartbeat ``ping`` is fire and
forget; there is no ack tracking.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import aiohttp

from tripsync._constants import ABNORMAL_CLOSE_CODE, NORMAL_CLOSE_CODE, RECONNECT_BACKOFF_FACTOR
from tripsync._redact import redact_for_log
from tripsync.config import TrackingConfig
from tripsync.events import ConnectionEvent, EventEmitter
from tripsync.exceptions import ChannelError, ConfigError
from tripsync.models.position import PositionSample

_logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], None]

_INBOUND_EVENTS: dict[str, ConnectionEvent] = {
    "position": ConnectionEvent.POSITION,
    "ride_status": ConnectionEvent.RIDE_STATUS,
    "driver_arrived": ConnectionEvent.DRIVER_ARRIVED,
}


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


@dataclass(frozen=True)
class ReconnectPlan:
    attempt: int
    delay: float


def reconnect_delay(attempt: int, base_interval: float) -> float:
    """Backoff delay for 1-based *attempt*."""
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return base_interval * RECONNECT_BACKOFF_FACTOR ** (attempt - 1)


def plan_reconnect(
    close_code: int | None,
    attempts: int,
    max_attempts: int,
    base_interval: float,
) -> ReconnectPlan | None:
    """Decide whether a close with *close_code* leads to a reconnection.

    *attempts* is the number of attempts already made since the last
    successful connection. Returns ``None`` for a normal close or once
    *max_attempts* is exhausted.
    """
    if close_code == NORMAL_CLOSE_CODE:
        return None
    if attempts >= max_attempts:
        return None
    attempt = attempts + 1
    return ReconnectPlan(attempt=attempt, delay=reconnect_delay(attempt, base_interval))


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConnectionSupervisor:
    """Owns the WebSocket connection, its state, heartbeat and reconnection."""

    def __init__(self, config: TrackingConfig, http_session: aiohttp.ClientSession) -> None:
        if not config.ws_url:
            raise ConfigError("ws_url is required for the persistent channel")
        self._config = config
        self._http = http_session
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._state = ConnectionState.DISCONNECTED
        self._user_id: str | None = config.user_id
        self._ride_id: str | None = None
        self._attempts = 0
        self._reader: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._handlers: dict[str, MessageHandler] = {}
        self.events: EventEmitter[ConnectionEvent] = EventEmitter()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._ws is not None and not self._ws.closed

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def current_ride_id(self) -> str | None:
        return self._ride_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, *, user_id: str | None = None, ride_id: str | None = None) -> None:
        """Open the channel; authenticates and rejoins the ride room on success.

        Raises :class:`ChannelError` when the connection cannot be opened;
        a reconnection is scheduled in that case.
        """
        if user_id is not None:
            self._user_id = user_id
        if ride_id is not None:
            self._ride_id = ride_id

        if self.is_connected:
            _logger.debug("WebSocket already connected")
            return
        if self._state == ConnectionState.CONNECTING:
            _logger.debug("WebSocket connection already in progress")
            return

        self._cancel_reconnect()
        self._state = ConnectionState.CONNECTING
        url = str(self._config.ws_url)
        _logger.debug("WebSocket connecting to %s", url)

        try:
            ws = await asyncio.wait_for(self._http.ws_connect(url), self._config.request_timeout)
        except (aiohttp.ClientError, OSError, TimeoutError) as exc:
            aborted = self._state != ConnectionState.CONNECTING
            self._state = ConnectionState.DISCONNECTED
            _logger.debug("WebSocket connection failed: %s", exc)
            self.events.emit(ConnectionEvent.ERROR, exc)
            if not aborted:
                self._handle_close(ABNORMAL_CLOSE_CODE)
            raise ChannelError(f"WebSocket connection to {url} failed: {exc}") from exc

        if self._state != ConnectionState.CONNECTING:
            # disconnect() ran while the handshake was in flight.
            _logger.debug("WebSocket connect aborted by disconnect")
            try:
                await ws.close(code=NORMAL_CLOSE_CODE, message=b"Normal disconnect")
            except (aiohttp.ClientError, OSError):
                _logger.debug("WebSocket close failed", exc_info=True)
            return

        self._ws = ws
        self._state = ConnectionState.CONNECTED
        self._attempts = 0
        _logger.debug("WebSocket connected")

        if self._user_id:
            await self.send("auth", {"userId": self._user_id})
        if self._ride_id:
            await self.send("join_ride", {"rideId": self._ride_id})

        loop = asyncio.get_running_loop()
        self._start_heartbeat(ws)
        self._reader = loop.create_task(self._read_loop(ws), name="tripsync-ws-reader")
        self.events.emit(ConnectionEvent.CONNECTED)

    async def disconnect(self) -> None:
        """Close normally (code 1000); no reconnection follows."""
        self._cancel_reconnect()
        self._stop_heartbeat()
        ws = self._ws
        self._ws = None
        reader = self._reader
        self._reader = None
        self._attempts = 0

        if ws is not None:
            self._state = ConnectionState.CLOSING
            try:
                await ws.close(code=NORMAL_CLOSE_CODE, message=b"Normal disconnect")
            except (aiohttp.ClientError, OSError):
                _logger.debug("WebSocket close failed", exc_info=True)
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        was_connected = ws is not None
        self._state = ConnectionState.DISCONNECTED
        if was_connected:
            self.events.emit(ConnectionEvent.DISCONNECTED, NORMAL_CLOSE_CODE)

    async def close(self) -> None:
        """Disconnect and drop every handler and listener."""
        await self.disconnect()
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._handlers.clear()
        self.events.clear()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, frame_type: str, data: dict[str, Any] | None = None) -> bool:
        """Send one frame; returns ``False`` when not connected or on failure."""
        try:
            await self.send_or_raise(frame_type, data)
        except ChannelError as exc:
            _logger.debug("WebSocket frame %s not sent: %s", frame_type, exc)
            return False
        return True

    async def send_or_raise(self, frame_type: str, data: dict[str, Any] | None = None) -> None:
        ws = self._ws
        if ws is None or ws.closed or self._state != ConnectionState.CONNECTED:
            raise ChannelError("WebSocket not connected")
        frame = {"type": frame_type, "data": data or {}, "timestamp": _now_ms()}
        try:
            await ws.send_str(json.dumps(frame, separators=(",", ":")))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise ChannelError(f"WebSocket send failed: {exc}") from exc

    async def join_ride(self, ride_id: str) -> bool:
        self._ride_id = ride_id
        return await self.send("join_ride", {"rideId": ride_id})

    async def leave_ride(self, ride_id: str) -> bool:
        sent = await self.send("leave_ride", {"rideId": ride_id})
        if self._ride_id == ride_id:
            self._ride_id = None
        return sent

    async def send_position(self, position: PositionSample) -> bool:
        return await self.send("position", position.to_frame_data())

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def on(self, frame_type: str, handler: MessageHandler) -> None:
        """Register the handler for one inbound frame type (replaces any previous)."""
        self._handlers[frame_type] = handler

    def off(self, frame_type: str) -> None:
        self._handlers.pop(frame_type, None)

    def _handle_message(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            _logger.debug("WebSocket frame is not JSON: %r", raw[:120])
            return
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            _logger.debug("WebSocket frame without type: %r", raw[:120])
            return

        frame_type: str = message["type"]
        data = message.get("data")
        _logger.debug("WebSocket received %s %s", frame_type, redact_for_log(data))

        handler = self._handlers.get(frame_type)
        if handler is not None:
            try:
                handler(data)
            except Exception:
                _logger.debug("Handler for %s failed", frame_type, exc_info=True)

        self.events.emit(ConnectionEvent.MESSAGE, {"type": frame_type, "data": data})
        special = _INBOUND_EVENTS.get(frame_type)
        if special is not None:
            self.events.emit(special, data)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        # Only a close frame from the server carries a real code; EOF and
        # transport errors count as abnormal closure.
        code = ABNORMAL_CLOSE_CODE
        try:
            while True:
                msg = await ws.receive()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.CLOSE:
                    if isinstance(msg.data, int):
                        code = msg.data
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    break
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    _logger.debug("WebSocket error frame: %s", msg.data)
                    self.events.emit(ConnectionEvent.ERROR, msg.data)
        finally:
            if self._ws is ws:
                self._on_closed(code)

    def _on_closed(self, code: int) -> None:
        _logger.debug("WebSocket closed (code: %s)", code)
        self._ws = None
        self._reader = None
        self._stop_heartbeat()
        self._state = ConnectionState.DISCONNECTED
        self.events.emit(ConnectionEvent.DISCONNECTED, code)
        self._handle_close(code)

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _handle_close(self, code: int) -> ReconnectPlan | None:
        plan = plan_reconnect(
            code,
            self._attempts,
            self._config.max_reconnect_attempts,
            self._config.reconnect_interval,
        )
        if plan is None:
            if code != NORMAL_CLOSE_CODE:
                _logger.debug("WebSocket reconnection abandoned after %d attempts", self._attempts)
                self.events.emit(ConnectionEvent.RECONNECT_ABANDONED, self._attempts)
            return None

        self._attempts = plan.attempt
        _logger.debug(
            "WebSocket reconnect in %.1fs (attempt %d/%d)",
            plan.delay,
            plan.attempt,
            self._config.max_reconnect_attempts,
        )
        self._cancel_reconnect()
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(plan.delay, self._spawn_reconnect)
        self.events.emit(ConnectionEvent.RECONNECT_SCHEDULED, plan)
        return plan

    def _cancel_reconnect(self) -> None:
        handle = self._reconnect_handle
        self._reconnect_handle = None
        if handle is not None:
            handle.cancel()

    def _spawn_reconnect(self) -> None:
        self._reconnect_handle = None
        if self.is_connected:
            return
        loop = asyncio.get_running_loop()
        self._reconnect_task = loop.create_task(self._reconnect(), name="tripsync-ws-reconnect")

    async def _reconnect(self) -> None:
        try:
            await self.connect()
        except ChannelError:
            # connect() already scheduled the next attempt (or gave up).
            _logger.debug("WebSocket reconnect attempt %d failed", self._attempts)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._stop_heartbeat()

        async def _beat() -> None:
            while self._ws is ws:
                await asyncio.sleep(self._config.heartbeat_interval)
                await self.send("ping")

        self._heartbeat = asyncio.get_running_loop().create_task(_beat(), name="tripsync-ws-heartbeat")

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat
        self._heartbeat = None
        if task is not None and not task.done():
            task.cancel()
