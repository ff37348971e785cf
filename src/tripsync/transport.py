"""Position and side-action delivery.

:class:`HttpTransport` is the request/response path (REST API).
:class:`ChannelTransport` pushes live positions over the WebSocket channel.
:class:`FallbackTransport` combines both; stored batches always use HTTP.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Protocol

import aiohttp

from tripsync._constants import (
    ACTION_BATCH_POSITIONS,
    ACTION_POSITION,
    ACTION_SEND_MESSAGE,
    CHAT_ENDPOINT,
    RIDES_ENDPOINT,
    USER_AGENT,
)
from tripsync._redact import redact_for_log
from tripsync.config import TrackingConfig
from tripsync.exceptions import ChannelError, DeliveryRejectedError, TransportError
from tripsync.models.position import PositionSample
from tripsync.models.queue import QueueItem, QueueItemType

if TYPE_CHECKING:
    from tripsync.channel import ConnectionSupervisor

_logger = logging.getLogger(__name__)


class PositionTransport(Protocol):
    """Structural interface used by the sync engine.

    ``send_positions`` either delivers the whole batch or raises
    :class:`TransportError`; partial success is not reported.
    """

    async def send_positions(self, positions: Sequence[PositionSample]) -> None:
        ...


class ActionTransport(Protocol):
    async def send_action(self, item: QueueItem) -> None:
        ...


class HttpTransport:
    """JSON REST transport against ``<api_base_url>/<endpoint>``."""

    def __init__(self, config: TrackingConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session

    def _headers(self) -> dict[str, str]:
        headers = {
            "accept": "application/json",
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        if self._config.auth_token:
            headers["authorization"] = f"Bearer {self._config.auth_token}"
        return headers

    async def request(self, method: str, endpoint: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Send *payload* as JSON and return the decoded ``success`` response.

        Raises :class:`TransportError` on network failure, non-2xx status or
        invalid JSON, and :class:`DeliveryRejectedError` on ``success: false``.
        """
        url = f"{self._config.api_base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        body = json.dumps(payload, separators=(",", ":"))
        timeout = aiohttp.ClientTimeout(total=self._config.request_timeout)

        _logger.debug("%s %s %s", method, url, redact_for_log(payload))

        try:
            async with self._http.request(method, url, data=body, headers=self._headers(), timeout=timeout) as resp:
                text = await resp.text()
                status = resp.status
        except aiohttp.ClientError as exc:
            raise TransportError(f"Request to {endpoint} failed: {exc}", endpoint=endpoint) from exc
        except TimeoutError as exc:
            raise TransportError(f"Request to {endpoint} timed out", endpoint=endpoint) from exc
        except UnicodeDecodeError as exc:
            raise TransportError(f"Undecodable response from {endpoint}: {exc}", endpoint=endpoint) from exc

        if not 200 <= status < 300:
            raise TransportError(
                f"HTTP {status} from {endpoint}: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            )

        try:
            result = json.loads(text)
        except json.JSONDecodeError as exc:
            raise TransportError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            ) from exc

        if not isinstance(result, dict):
            raise TransportError(f"Unexpected response shape from {endpoint}", status_code=status, endpoint=endpoint)

        if not result.get("success", False):
            message = result.get("message")
            raise DeliveryRejectedError(
                f"{endpoint} rejected the request: {message or 'no message'}",
                status_code=status,
                endpoint=endpoint,
                server_message=message if isinstance(message, str) else None,
            )
        return result

    async def post(self, endpoint: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        return await self.request("POST", endpoint, payload)

    async def put(self, endpoint: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        return await self.request("PUT", endpoint, payload)

    async def send_position(self, position: PositionSample) -> None:
        await self.post(RIDES_ENDPOINT, {"action": ACTION_POSITION, **position.to_wire()})

    async def send_positions(self, positions: Sequence[PositionSample]) -> None:
        if not positions:
            return
        await self.post(
            RIDES_ENDPOINT,
            {
                "action": ACTION_BATCH_POSITIONS,
                "positions": [p.to_wire() for p in positions],
            },
        )

    async def send_action(self, item: QueueItem) -> None:
        """Deliver one queued side action according to its type."""
        data = dict(item.payload)
        if item.type == QueueItemType.POSITION:
            await self.post(RIDES_ENDPOINT, {"action": ACTION_POSITION, **data})
        elif item.type == QueueItemType.MESSAGE:
            data.pop("local_id", None)
            await self.post(CHAT_ENDPOINT, {"action": ACTION_SEND_MESSAGE, **data})
        elif item.type == QueueItemType.STATUS:
            await self.put(RIDES_ENDPOINT, {"action": data.get("action"), "ride_id": data.get("ride_id")})
        else:  # pragma: no cover - QueueItemType is closed
            raise ValueError(f"Unknown queue item type {item.type!r}")


class ChannelTransport:
    """Live single positions as ``position`` frames on the persistent channel.

    Frames are not acknowledged and carry no capture time, so this path is
    only for the latest position. Stored backlogs go through
    :meth:`HttpTransport.send_positions`.
    """

    def __init__(self, supervisor: ConnectionSupervisor) -> None:
        self._supervisor = supervisor

    @property
    def available(self) -> bool:
        return self._supervisor.is_connected

    async def send_position(self, position: PositionSample) -> None:
        if not self._supervisor.is_connected:
            raise ChannelError("Persistent channel not connected")
        await self._supervisor.send_or_raise("position", position.to_frame_data())


class FallbackTransport:
    """Combined delivery used by the client.

    A live position goes over the channel when connected and over HTTP
    otherwise (or when the channel send fails). Batches and queued side
    actions always use HTTP, whose response confirms delivery.
    """

    def __init__(self, http: HttpTransport, channel: ChannelTransport | None = None) -> None:
        self._http = http
        self._channel = channel

    async def send_position(self, position: PositionSample) -> None:
        if self._channel is not None and self._channel.available:
            try:
                await self._channel.send_position(position)
                return
            except ChannelError:
                _logger.debug("Channel delivery failed, falling back to HTTP", exc_info=True)
        await self._http.send_position(position)

    async def send_positions(self, positions: Sequence[PositionSample]) -> None:
        await self._http.send_positions(positions)

    async def send_action(self, item: QueueItem) -> None:
        await self._http.send_action(item)
