"""High-level async client wiring the tracking and sync components."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import aiohttp

from tripsync._constants import DEFAULT_PURGE_AGE_SECONDS
from tripsync.channel import ConnectionSupervisor
from tripsync.config import TrackingConfig
from tripsync.exceptions import ChannelError, TripSyncError
from tripsync.models.position import PositionSample
from tripsync.models.queue import QueueItem
from tripsync.models.ride import ChatMessage, RideRecord
from tripsync.models.stats import EtaEstimate, FinalTripStats, TripStats
from tripsync.sensor import GeoSampler, LocationProvider
from tripsync.store import LocalStore
from tripsync.sync import FlushResult, SyncEngine
from tripsync.tracking import TrackingCoordinator
from tripsync.transport import ChannelTransport, FallbackTransport, HttpTransport

_logger = logging.getLogger(__name__)


class TrackingClient:
    """Async facade over sampler, store, channel, sync engine and coordinator.

    Usage::

        async with TrackingClient(config, provider) as client:
            await client.start_tracking(42, "driver")
            ...
            stats = await client.stop_tracking()

    Components are exposed as attributes (``sampler``, ``store``,
    ``supervisor``, ``sync``, ``tracker``) for event subscriptions.
    """

    def __init__(
        self,
        config: TrackingConfig,
        provider: LocationProvider | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._external_session = session is not None
        self._http_session = session
        self.sampler = GeoSampler(provider)
        self.store: LocalStore | None = None
        self.supervisor: ConnectionSupervisor | None = None
        self.sync: SyncEngine | None = None
        self.tracker: TrackingCoordinator | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> TrackingClient:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()

        self.store = LocalStore(self._config.db_path)
        await self.store.open()

        http = HttpTransport(self._config, self._http_session)
        channel: ChannelTransport | None = None
        if self._config.ws_url:
            self.supervisor = ConnectionSupervisor(self._config, self._http_session)
            channel = ChannelTransport(self.supervisor)
        transport = FallbackTransport(http, channel)

        self.sync = SyncEngine(self._config, self.store, transport, transport)
        if self.supervisor is not None:
            self.sync.attach(self.supervisor)

        self.tracker = TrackingCoordinator(
            self._config,
            self.sampler,
            self.store,
            self.sync,
            self.supervisor,
        )

        if self.supervisor is not None and self._config.realtime_enabled:
            try:
                await self.supervisor.connect(user_id=self._config.user_id)
            except ChannelError as exc:
                # Reconnection is already scheduled; REST delivery works meanwhile.
                _logger.debug("Persistent channel unavailable at startup: %s", exc)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self.tracker is not None:
            await self.tracker.stop()
        if self.sync is not None:
            await self.sync.close()
        if self.supervisor is not None:
            await self.supervisor.close()
        if self.store is not None:
            await self.store.close()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self.tracker = None
        self.sync = None
        self.supervisor = None
        self.store = None

    def _require_tracker(self) -> TrackingCoordinator:
        if self.tracker is None:
            raise TripSyncError("Client not initialized. Use 'async with TrackingClient(...) as client:'")
        return self.tracker

    def _require_sync(self) -> SyncEngine:
        if self.sync is None:
            raise TripSyncError("Client not initialized. Use 'async with TrackingClient(...) as client:'")
        return self.sync

    def _require_store(self) -> LocalStore:
        if self.store is None:
            raise TripSyncError("Client not initialized. Use 'async with TrackingClient(...) as client:'")
        return self.store

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    async def start_tracking(self, ride_id: str | int, user_type: str = "passenger") -> None:
        await self._require_tracker().start(ride_id, user_type)

    async def stop_tracking(self) -> FinalTripStats | None:
        return await self._require_tracker().stop()

    @property
    def is_tracking(self) -> bool:
        return self.tracker is not None and self.tracker.is_active

    @property
    def trip_stats(self) -> TripStats | None:
        return self._require_tracker().trip_stats

    @property
    def last_position(self) -> PositionSample | None:
        return self._require_tracker().last_position

    def calculate_eta(self, lat: float, lng: float) -> EtaEstimate | None:
        return self._require_tracker().calculate_eta(lat, lng)

    # ------------------------------------------------------------------
    # Sync and side actions
    # ------------------------------------------------------------------

    async def flush(self) -> FlushResult:
        return await self._require_sync().flush()

    def set_online(self, online: bool) -> None:
        self._require_sync().set_online(online)

    async def queue_message(self, ride_id: str | int, body: str) -> ChatMessage:
        return await self._require_sync().queue_message(str(ride_id), body)

    async def update_ride_status(self, ride_id: str | int, action: str) -> QueueItem:
        return await self._require_sync().queue_status_change(str(ride_id), action)

    async def cleanup(self, max_age: timedelta | float = DEFAULT_PURGE_AGE_SECONDS) -> int:
        return await self._require_sync().cleanup(max_age)

    # ------------------------------------------------------------------
    # Ride cache
    # ------------------------------------------------------------------

    async def save_ride(self, ride: RideRecord | dict[str, Any]) -> RideRecord:
        return await self._require_store().save_ride(ride)

    async def get_ride(self, ride_id: str | int) -> RideRecord | None:
        return await self._require_store().get_ride(ride_id)
