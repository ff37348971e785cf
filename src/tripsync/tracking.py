"""Tracking session lifecycle: filter, stats, persistence hand-off.

A session is bound to one ride. Each fix from the sampler goes through
:func:`should_accept`; accepted samples update the in-memory history and
:class:`TripStats`, and are written to the local store. Network delivery is
the sync engine's job; the coordinator only pushes the latest position over
the persistent channel on a fixed timer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta

from tripsync._constants import DEFAULT_URBAN_SPEED_KMH, MIN_ETA_SPEED_KMH, MS_TO_KMH
from tripsync._geo import format_duration, haversine_meters
from tripsync.channel import ConnectionSupervisor
from tripsync.config import TrackingConfig
from tripsync.events import EventEmitter, TrackingEvent
from tripsync.exceptions import GeoError, StoreError
from tripsync.models._base import utcnow
from tripsync.models.position import GeoFix, PositionSample
from tripsync.models.stats import EtaEstimate, FinalTripStats, TripStats
from tripsync.sensor import GeoSampler, WatchHandle
from tripsync.store import LocalStore
from tripsync.sync import SyncEngine

_logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Pure helpers
# ----------------------------------------------------------------------


def should_accept(
    previous: PositionSample | None,
    sample: PositionSample,
    min_distance_m: float,
    min_interval: float,
) -> bool:
    """Distance/time filter applied to every incoming sample.

    The first sample of a session is always accepted. A sample captured
    before *previous* is rejected. Otherwise the sample is accepted when it
    moved at least *min_distance_m* meters or at least *min_interval*
    seconds passed since *previous* was captured.
    """
    if previous is None:
        return True
    elapsed = (sample.captured_at - previous.captured_at).total_seconds()
    if elapsed < 0:
        return False
    distance = haversine_meters(previous.lat, previous.lng, sample.lat, sample.lng)
    return distance >= min_distance_m or elapsed >= min_interval


def advance_stats(stats: TripStats, sample: PositionSample, now: datetime) -> TripStats:
    """Return *stats* updated with one accepted sample."""
    total = stats.total_distance_m
    last = stats.last_position
    if last is not None:
        total += haversine_meters(last.lat, last.lng, sample.lat, sample.lng)

    max_speed = stats.max_speed_kmh
    if sample.speed is not None and sample.speed > 0:
        max_speed = max(max_speed, sample.speed * MS_TO_KMH)

    average = stats.average_speed_kmh
    elapsed_hours = (now - stats.start_time).total_seconds() / 3600
    if elapsed_hours > 0:
        average = (total / 1000) / elapsed_hours

    return stats.model_copy(
        update={
            "total_distance_m": total,
            "max_speed_kmh": max_speed,
            "average_speed_kmh": average,
            "last_position": sample,
        }
    )


def estimate_eta(last: PositionSample | None, lat: float, lng: float, now: datetime) -> EtaEstimate | None:
    """Advisory travel estimate from *last* to ``(lat, lng)``.

    Uses the last reported speed unless it is below 5 km/h (or unknown),
    in which case an urban default of 30 km/h applies.
    """
    if last is None:
        return None

    distance = haversine_meters(last.lat, last.lng, lat, lng)
    speed_kmh = last.speed * MS_TO_KMH if last.speed else DEFAULT_URBAN_SPEED_KMH
    if speed_kmh < MIN_ETA_SPEED_KMH:
        speed_kmh = DEFAULT_URBAN_SPEED_KMH

    minutes = math.ceil((distance / 1000) / speed_kmh * 60)
    return EtaEstimate(
        distance_m=round(distance),
        distance_km=round(distance / 1000, 2),
        duration_minutes=minutes,
        duration_formatted=format_duration(minutes),
        eta=now + timedelta(minutes=minutes),
    )


# ----------------------------------------------------------------------
# Coordinator
# ----------------------------------------------------------------------


class TrackingCoordinator:
    """Owns one tracking session at a time.

    Parameters
    ----------
    config : TrackingConfig
        Filter thresholds, history length, GPS profile and timeouts.
    sampler : GeoSampler
        Source of fixes.
    store : LocalStore
        Durable destination of accepted samples.
    sync_engine : SyncEngine
        Drains the store; started and stopped with the session.
    supervisor : ConnectionSupervisor or None
        Persistent channel used for the live position push and ride rooms.
    clock : callable
        Returns the current UTC time.
    """

    def __init__(
        self,
        config: TrackingConfig,
        sampler: GeoSampler,
        store: LocalStore,
        sync_engine: SyncEngine,
        supervisor: ConnectionSupervisor | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._sampler = sampler
        self._store = store
        self._sync = sync_engine
        self._supervisor = supervisor
        self._clock = clock

        self._active = False
        self._ride_id: str | None = None
        self._user_type: str | None = None
        self._stats: TripStats | None = None
        self._history: deque[PositionSample] = deque(maxlen=config.history_length)
        self._last_accepted: PositionSample | None = None
        self._watch: WatchHandle | None = None
        self._push_task: asyncio.Task[None] | None = None
        self._pending_writes: set[asyncio.Task[None]] = set()
        self._degraded = False
        self.events: EventEmitter[TrackingEvent] = EventEmitter()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def current_ride_id(self) -> str | None:
        return self._ride_id

    @property
    def user_type(self) -> str | None:
        return self._user_type

    @property
    def degraded(self) -> bool:
        return self._degraded or self._store.degraded

    @property
    def trip_stats(self) -> TripStats | None:
        return self._stats

    @property
    def position_history(self) -> list[PositionSample]:
        return list(self._history)

    @property
    def last_position(self) -> PositionSample | None:
        return self._history[-1] if self._history else None

    def calculate_eta(self, lat: float, lng: float) -> EtaEstimate | None:
        return estimate_eta(self.last_position, lat, lng, self._clock())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, ride_id: str | int, user_type: str = "passenger") -> None:
        """Start tracking *ride_id*; a running session is stopped first.

        Raises :class:`GeoError` (permission denied, unsupported sensor)
        before anything changes.
        """
        await self._sampler.ensure_permission()

        if self._active:
            await self.stop()

        ride = str(ride_id)
        self._ride_id = ride
        self._user_type = user_type
        self._stats = TripStats(start_time=self._clock())
        self._history.clear()
        self._last_accepted = None
        self._degraded = False
        self._active = True

        if self._store.degraded:
            self.events.emit(TrackingEvent.DEGRADED, StoreError("Local store running in memory only"))

        self._watch = self._sampler.start_watching(self._on_fix, self._config.gps_profile, self._on_geo_error)
        self._push_task = asyncio.get_running_loop().create_task(self._push_loop(), name="tripsync-push")
        self._sync.start_periodic()
        if self._supervisor is not None:
            await self._supervisor.join_ride(ride)

        _logger.debug("Tracking started for ride %s (%s)", ride, user_type)
        self.events.emit(TrackingEvent.STARTED, {"ride_id": ride, "user_type": user_type})

    async def stop(self) -> FinalTripStats | None:
        """Stop the session; idempotent.

        Pending store writes and one final flush get at most
        ``final_flush_timeout`` seconds. Returns the final statistics, or
        ``None`` when no session was active.
        """
        if not self._active:
            return None
        self._active = False
        ride = self._ride_id

        self._sampler.stop_watching(self._watch)
        self._watch = None
        await self._cancel_push()
        await self._sync.stop_periodic()

        try:
            await asyncio.wait_for(self._final_flush(), self._config.final_flush_timeout)
        except TimeoutError:
            _logger.debug("Final flush for ride %s timed out after %.1fs", ride, self._config.final_flush_timeout)
        except StoreError as exc:
            _logger.debug("Final flush for ride %s failed: %s", ride, exc)

        now = self._clock()
        stats = self._stats or TripStats(start_time=now)
        final = FinalTripStats(**dict(stats), end_time=now, duration=now - stats.start_time)

        if self._supervisor is not None and ride is not None:
            await self._supervisor.leave_ride(ride)

        self._ride_id = None
        self._user_type = None
        self._stats = None
        self._history.clear()
        self._last_accepted = None

        _logger.debug("Tracking stopped for ride %s", ride)
        self.events.emit(TrackingEvent.STOPPED, {"ride_id": ride, "stats": final})
        return final

    async def _final_flush(self) -> None:
        if self._pending_writes:
            await asyncio.wait(set(self._pending_writes))
        await self._sync.flush()

    # ------------------------------------------------------------------
    # Samples
    # ------------------------------------------------------------------

    def ingest(self, fix: GeoFix) -> PositionSample | None:
        """Feed one fix to the session; returns the sample when accepted."""
        if not self._active or self._ride_id is None or self._stats is None:
            return None

        sample = PositionSample.from_fix(self._ride_id, fix)
        if not should_accept(
            self._last_accepted,
            sample,
            self._config.distance_filter_m,
            self._config.min_server_update_interval,
        ):
            _logger.debug("Sample at %s filtered out", sample.captured_at)
            return None

        self._last_accepted = sample
        self._history.append(sample)
        self._stats = advance_stats(self._stats, sample, self._clock())
        self.events.emit(
            TrackingEvent.POSITION_UPDATE,
            {"ride_id": self._ride_id, "position": sample, "stats": self._stats},
        )

        if self._degraded:
            self._sync.hold(sample)
        else:
            task = asyncio.get_running_loop().create_task(self._persist(sample))
            self._pending_writes.add(task)
            task.add_done_callback(self._pending_writes.discard)
        return sample

    def _on_fix(self, fix: GeoFix) -> None:
        self.ingest(fix)

    def _on_geo_error(self, error: GeoError) -> None:
        self.events.emit(TrackingEvent.ERROR, error)

    async def _persist(self, sample: PositionSample) -> None:
        try:
            await self._store.save_position(sample)
        except StoreError as exc:
            self._enter_degraded(exc)
            self._sync.hold(sample)

    def _enter_degraded(self, exc: StoreError) -> None:
        if self._degraded:
            return
        self._degraded = True
        _logger.warning("Local store unavailable, unsent samples are kept in memory: %s", exc)
        self.events.emit(TrackingEvent.DEGRADED, exc)

    # ------------------------------------------------------------------
    # Live push
    # ------------------------------------------------------------------

    async def push_latest(self) -> bool:
        """Send the latest accepted position over the persistent channel."""
        latest = self.last_position
        if latest is None or self._supervisor is None or not self._supervisor.is_connected:
            return False
        sent = await self._supervisor.send_position(latest)
        if sent:
            self.events.emit(TrackingEvent.PUSHED, latest)
        return sent

    async def _push_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.min_server_update_interval)
            await self.push_latest()

    async def _cancel_push(self) -> None:
        task = self._push_task
        self._push_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
