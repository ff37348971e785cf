"""Offline synchronisation: drains pending positions and the side-action queue.

Positions are sent in batches of ``batch_size`` ordered by capture time. A
batch is marked synced only after the transport confirms it; a failed batch
stays pending and is sent again by a later flush (at-least-once). Queued
side actions are retried up to ``max_queue_attempts`` times, then dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections import deque
from collections.abc import Sequence
from datetime import timedelta
from typing import TYPE_CHECKING, TypeVar

from tripsync._constants import DEFAULT_PURGE_AGE_SECONDS, MEMORY_BUFFER_LIMIT
from tripsync.config import TrackingConfig
from tripsync.events import ConnectionEvent, EventEmitter, Subscription, SyncEvent
from tripsync.exceptions import StoreError, TransportError
from tripsync.models.position import PositionSample
from tripsync.models.queue import QueueAction, QueueItem, QueueItemType, next_queue_state
from tripsync.models.ride import ChatMessage
from tripsync.store import LocalStore
from tripsync.transport import ActionTransport, PositionTransport

if TYPE_CHECKING:
    from tripsync.channel import ConnectionSupervisor

_logger = logging.getLogger(__name__)


@dataclasses.dataclass
class FlushResult:
    """Counters of one :meth:`SyncEngine.flush` call."""

    skipped: bool = False
    batches_sent: int = 0
    batches_failed: int = 0
    positions_synced: int = 0
    positions_pending: int = 0
    queue_sent: int = 0
    queue_requeued: int = 0
    queue_dropped: int = 0

    @property
    def ok(self) -> bool:
        return not self.skipped and self.batches_failed == 0 and self.queue_requeued == 0 and self.queue_dropped == 0


P = TypeVar("P", bound=PositionSample)


def _batches(positions: Sequence[P], size: int) -> list[Sequence[P]]:
    return [positions[start : start + size] for start in range(0, len(positions), size)]


class SyncEngine:
    """Moves locally stored data to the server when connectivity allows.

    Parameters
    ----------
    config : TrackingConfig
        Batch size, intervals and retry limits.
    store : LocalStore
        Source of pending positions and queued side actions.
    transport : PositionTransport
        Delivers position batches.
    actions : ActionTransport or None
        Delivers queued side actions. ``None`` leaves the queue untouched.
    """

    def __init__(
        self,
        config: TrackingConfig,
        store: LocalStore,
        transport: PositionTransport,
        actions: ActionTransport | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._transport = transport
        self._actions = actions
        self._lock = asyncio.Lock()
        self._online = True
        self._periodic: asyncio.Task[None] | None = None
        self._resync_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[FlushResult]] = set()
        self._subscription: Subscription | None = None
        self._held: deque[PositionSample] = deque()
        self.events: EventEmitter[SyncEvent] = EventEmitter()

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_flushing(self) -> bool:
        return self._lock.locked()

    @property
    def held_count(self) -> int:
        return len(self._held)

    def hold(self, sample: PositionSample) -> None:
        """Keep *sample* in memory for the next flush when it could not be stored.

        Held samples are sent after the stored backlog. Past
        ``MEMORY_BUFFER_LIMIT`` the oldest held sample is discarded.
        """
        if len(self._held) >= MEMORY_BUFFER_LIMIT:
            dropped = self._held.popleft()
            _logger.warning("In-memory position buffer full, dropping sample from %s", dropped.captured_at)
        self._held.append(sample)

    @property
    def periodic_running(self) -> bool:
        return self._periodic is not None and not self._periodic.done()

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush(self) -> FlushResult:
        """Send every pending position, then process the side-action queue.

        Concurrent calls are serialised. While offline the flush is skipped.
        Delivery failures are reported through :class:`SyncEvent` and the
        returned counters; :class:`StoreError` propagates.
        """
        if not self._online:
            _logger.debug("Offline, flush skipped")
            return FlushResult(skipped=True)

        async with self._lock:
            result = FlushResult()
            await self._flush_positions(result)
            if self._actions is not None:
                await self._flush_queue(self._actions, result)

        _logger.debug("Flush finished: %s", result)
        if result.positions_synced or result.queue_sent:
            self.events.emit(SyncEvent.SYNCED, result)
        return result

    async def _flush_positions(self, result: FlushResult) -> None:
        try:
            pending = await self._store.list_unsynced()
        except StoreError as exc:
            if not self._held:
                raise
            _logger.debug("Stored positions unavailable, sending held samples only: %s", exc)
            self.events.emit(SyncEvent.SYNC_ERROR, exc)
            await self._flush_held(result)
            return
        batches = _batches(pending, self._config.batch_size)
        for index, batch in enumerate(batches):
            try:
                await self._transport.send_positions(batch)
            except TransportError as exc:
                # Later batches wait for the next flush so delivery stays in capture order.
                result.batches_failed += 1
                result.positions_pending = sum(len(b) for b in batches[index:]) + len(self._held)
                _logger.debug("Position batch of %d failed: %s", len(batch), exc)
                self.events.emit(SyncEvent.SYNC_ERROR, exc)
                return
            result.batches_sent += 1
            result.positions_synced += await self._store.mark_synced(p.local_id for p in batch)
        await self._flush_held(result)

    async def _flush_held(self, result: FlushResult) -> None:
        while self._held:
            batch = list(self._held)[: self._config.batch_size]
            try:
                await self._transport.send_positions(batch)
            except TransportError as exc:
                result.batches_failed += 1
                result.positions_pending = len(self._held)
                _logger.debug("Held batch of %d failed: %s", len(batch), exc)
                self.events.emit(SyncEvent.SYNC_ERROR, exc)
                return
            # hold() may have appended, or evicted from the left, during the send.
            for sample in batch:
                if self._held and self._held[0] is sample:
                    self._held.popleft()
            result.batches_sent += 1
            result.positions_synced += len(batch)

    async def _flush_queue(self, actions: ActionTransport, result: FlushResult) -> None:
        for item in await self._store.list_queue():
            try:
                await actions.send_action(item)
            except TransportError as exc:
                _logger.debug("Queue item %s (%s) failed: %s", item.id, item.type, exc)
                self.events.emit(SyncEvent.SYNC_ERROR, exc)
                await self._apply_failure(item, result)
                continue

            await self._store.remove_queue_item(item.id)
            result.queue_sent += 1
            local_id = item.payload.get("local_id")
            if item.type == QueueItemType.MESSAGE and isinstance(local_id, int):
                await self._store.mark_message_synced(local_id)

    async def _apply_failure(self, item: QueueItem, result: FlushResult) -> None:
        decision = next_queue_state(item, self._config.max_queue_attempts)
        if decision.action == QueueAction.DROP:
            await self._store.remove_queue_item(item.id)
            result.queue_dropped += 1
            _logger.warning(
                "Dropping queued %s action %s after %d failed attempts",
                item.type,
                item.id,
                decision.item.attempts,
            )
            self.events.emit(SyncEvent.ITEM_DROPPED, decision.item)
        else:
            await self._store.requeue(decision.item)
            result.queue_requeued += 1

    def schedule_flush(self, delay: float = 0.0) -> None:
        """Run :meth:`flush` in the background after *delay* seconds."""
        loop = asyncio.get_running_loop()
        if delay <= 0:
            self._spawn_flush()
            return
        if self._resync_handle is not None:
            self._resync_handle.cancel()
        self._resync_handle = loop.call_later(delay, self._spawn_flush)

    def _spawn_flush(self) -> None:
        self._resync_handle = None
        task = asyncio.get_running_loop().create_task(self._guarded_flush(), name="tripsync-flush")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded_flush(self) -> FlushResult:
        try:
            return await self.flush()
        except StoreError as exc:
            _logger.debug("Background flush failed: %s", exc)
            self.events.emit(SyncEvent.SYNC_ERROR, exc)
            return FlushResult(skipped=True)
        except Exception as exc:
            _logger.warning("Background flush failed unexpectedly", exc_info=True)
            self.events.emit(SyncEvent.SYNC_ERROR, exc)
            return FlushResult(skipped=True)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def start_periodic(self) -> None:
        if self.periodic_running:
            return

        async def _loop() -> None:
            while True:
                await asyncio.sleep(self._config.sync_interval)
                await self._guarded_flush()

        self._periodic = asyncio.get_running_loop().create_task(_loop(), name="tripsync-periodic-sync")

    async def stop_periodic(self) -> None:
        task = self._periodic
        self._periodic = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def set_online(self, online: bool) -> None:
        """Record a connectivity change; coming back online schedules a flush."""
        if online == self._online:
            return
        self._online = online
        if online:
            _logger.debug("Connectivity restored")
            self.events.emit(SyncEvent.ONLINE)
            self.schedule_flush(self._config.online_resync_delay)
        else:
            _logger.debug("Connectivity lost")
            if self._resync_handle is not None:
                self._resync_handle.cancel()
                self._resync_handle = None
            self.events.emit(SyncEvent.OFFLINE)

    def attach(self, supervisor: ConnectionSupervisor) -> None:
        """Flush whenever *supervisor* (re)connects."""
        self.detach()
        self._subscription = supervisor.events.subscribe(
            ConnectionEvent.CONNECTED,
            lambda _payload: self.schedule_flush(),
        )

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    async def close(self) -> None:
        """Stop timers and wait for background flushes to finish."""
        self.detach()
        await self.stop_periodic()
        if self._resync_handle is not None:
            self._resync_handle.cancel()
            self._resync_handle = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Side actions
    # ------------------------------------------------------------------

    async def queue_message(self, ride_id: str, body: str) -> ChatMessage:
        """Persist an outbound chat message and queue its delivery."""
        message = await self._store.save_message(ride_id, body)
        await self._store.enqueue(
            QueueItemType.MESSAGE,
            {"ride_id": ride_id, "message": body, "local_id": message.local_id},
        )
        return message

    async def queue_status_change(self, ride_id: str, action: str) -> QueueItem:
        return await self._store.enqueue(QueueItemType.STATUS, {"action": action, "ride_id": ride_id})

    async def cleanup(self, max_age: timedelta | float = DEFAULT_PURGE_AGE_SECONDS) -> int:
        """Purge synced data older than *max_age* (default 24 h)."""
        return await self._store.purge_older_than(max_age)
