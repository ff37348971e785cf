"""Typed event emitters owned by each component.

Every component (sampler, coordinator, supervisor, sync engine) owns one
:class:`EventEmitter` parameterised by its event enum. Subscriptions return
a :class:`Subscription` whose ``close()`` detaches the listener, so
observers control their own lifetime.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Generic, TypeVar

_logger = logging.getLogger(__name__)

E = TypeVar("E", bound=StrEnum)

Listener = Callable[[Any], None]


class GeoEvent(StrEnum):
    DETECTING = "geo:detecting"
    POSITION_FOUND = "geo:position:found"
    POSITION_UPDATE = "geo:position:update"
    ERROR = "geo:error"
    WATCH_START = "geo:watch:start"
    WATCH_STOP = "geo:watch:stop"
    PERMISSION_CHANGE = "geo:permission:change"


class TrackingEvent(StrEnum):
    STARTED = "tracking:started"
    STOPPED = "tracking:stopped"
    POSITION_UPDATE = "tracking:position:update"
    ERROR = "tracking:error"
    DEGRADED = "tracking:degraded"
    PUSHED = "tracking:pushed"


class SyncEvent(StrEnum):
    SYNCED = "offline:synced"
    SYNC_ERROR = "offline:sync_error"
    ITEM_DROPPED = "offline:item_dropped"
    ONLINE = "offline:online"
    OFFLINE = "offline:offline"


class ConnectionEvent(StrEnum):
    CONNECTED = "websocket:connected"
    DISCONNECTED = "websocket:disconnected"
    ERROR = "websocket:error"
    MESSAGE = "websocket:message"
    RECONNECT_SCHEDULED = "websocket:reconnect_scheduled"
    RECONNECT_ABANDONED = "websocket:reconnect_abandoned"
    POSITION = "websocket:position"
    RIDE_STATUS = "websocket:ride_status"
    DRIVER_ARRIVED = "websocket:driver_arrived"


class Subscription:
    """Handle returned by :meth:`EventEmitter.subscribe`."""

    def __init__(self, detach: Callable[[], None]) -> None:
        self._detach: Callable[[], None] | None = detach

    @property
    def active(self) -> bool:
        return self._detach is not None

    def close(self) -> None:
        detach = self._detach
        self._detach = None
        if detach is not None:
            detach()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class EventEmitter(Generic[E]):
    """Synchronous publish/subscribe for one component.

    Listeners run inline on the event loop thread. A listener that raises
    is logged and skipped; it never breaks the emitting component.
    """

    def __init__(self) -> None:
        self._listeners: dict[E, list[Listener]] = {}

    def subscribe(self, event: E, listener: Listener) -> Subscription:
        self._listeners.setdefault(event, []).append(listener)

        def _detach() -> None:
            listeners = self._listeners.get(event)
            if listeners is None:
                return
            try:
                listeners.remove(listener)
            except ValueError:
                return
            if not listeners:
                self._listeners.pop(event, None)

        return Subscription(_detach)

    def emit(self, event: E, payload: Any = None) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(payload)
            except Exception:
                _logger.debug("Listener for %s failed", event, exc_info=True)

    def listener_count(self, event: E | None = None) -> int:
        if event is None:
            return sum(len(v) for v in self._listeners.values())
        return len(self._listeners.get(event, ()))

    def clear(self) -> None:
        self._listeners.clear()
