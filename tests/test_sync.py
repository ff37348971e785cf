from __future__ import annotations

import asyncio
import random
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from tripsync.config import TrackingConfig
from tripsync.events import SyncEvent
from tripsync.exceptions import TransportError
from tripsync.models import PositionSample, QueueItem, QueueItemType, SyncState
from tripsync.store import LocalStore
from tripsync.sync import SyncEngine


def _dt() -> datetime:
    return datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


def _sample(seconds: float) -> PositionSample:
    return PositionSample(ride_id="42", lat=33.57, lng=-7.59, captured_at=_dt() + timedelta(seconds=seconds))


@dataclass
class _RecordingTransport:
    batches: list[list[int | None]] = field(default_factory=list)
    captured: list[list[datetime]] = field(default_factory=list)
    fail_calls: set[int] = field(default_factory=set)
    crash_calls: set[int] = field(default_factory=set)
    actions: list[QueueItem] = field(default_factory=list)
    fail_actions: bool = False
    calls: int = 0

    async def send_positions(self, positions: Sequence[Any]) -> None:
        call = self.calls
        self.calls += 1
        if call in self.crash_calls:
            raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        if call in self.fail_calls:
            raise TransportError("network down", endpoint="rides")
        self.batches.append([getattr(p, "local_id", None) for p in positions])
        self.captured.append([p.captured_at for p in positions])

    async def send_action(self, item: QueueItem) -> None:
        self.actions.append(item)
        if self.fail_actions:
            raise TransportError("HTTP 503", status_code=503, endpoint="rides")


async def _engine(tmp_path: Path, transport: _RecordingTransport, **overrides: Any) -> tuple[SyncEngine, LocalStore]:
    config = TrackingConfig(ws_url=None, db_path=tmp_path / "t.db", **overrides)
    store = LocalStore(config.db_path)
    await store.open()
    return SyncEngine(config, store, transport, transport), store


@pytest.mark.asyncio
async def test_flush_sends_120_positions_as_50_50_20(tmp_path: Path) -> None:
    transport = _RecordingTransport()
    engine, store = await _engine(tmp_path, transport)
    try:
        for i in range(120):
            await store.save_position(_sample(i))

        result = await engine.flush()

        assert [len(b) for b in transport.batches] == [50, 50, 20]
        assert result.batches_sent == 3
        assert result.positions_synced == 120
        assert await store.count_unsynced() == 0
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_batches_follow_capture_time_not_insertion_order(tmp_path: Path) -> None:
    transport = _RecordingTransport()
    engine, store = await _engine(tmp_path, transport, batch_size=4)
    try:
        offsets = list(range(10))
        random.Random(3).shuffle(offsets)
        for offset in offsets:
            await store.save_position(_sample(offset))

        await engine.flush()

        flattened = [ts for batch in transport.captured for ts in batch]
        assert flattened == sorted(flattened)
        assert [len(b) for b in transport.batches] == [4, 4, 2]
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_failed_batch_stays_pending_and_is_resent_unchanged(tmp_path: Path) -> None:
    transport = _RecordingTransport(fail_calls={0})
    engine, store = await _engine(tmp_path, transport)
    errors: list[Any] = []
    engine.events.subscribe(SyncEvent.SYNC_ERROR, errors.append)
    try:
        ids = [await store.save_position(_sample(i)) for i in range(10)]

        first = await engine.flush()
        assert first.batches_failed == 1
        assert first.positions_pending == 10
        assert len(errors) == 1
        pending = await store.list_unsynced()
        assert [p.local_id for p in pending] == ids
        assert all(p.sync_state == SyncState.PENDING for p in pending)

        second = await engine.flush()
        assert second.positions_synced == 10
        assert transport.batches == [ids]
        assert await store.count_unsynced() == 0
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_batch_failure_keeps_later_batches_for_next_flush(tmp_path: Path) -> None:
    transport = _RecordingTransport(fail_calls={1})
    engine, store = await _engine(tmp_path, transport)
    try:
        for i in range(120):
            await store.save_position(_sample(i))

        result = await engine.flush()

        assert result.batches_sent == 1
        assert result.batches_failed == 1
        assert result.positions_pending == 70
        assert await store.count_unsynced() == 70

        await engine.flush()
        assert [len(b) for b in transport.batches] == [50, 50, 20]
        assert await store.count_unsynced() == 0
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_queue_item_dropped_after_exactly_three_failures(tmp_path: Path) -> None:
    transport = _RecordingTransport(fail_actions=True)
    engine, store = await _engine(tmp_path, transport)
    dropped: list[QueueItem] = []
    engine.events.subscribe(SyncEvent.ITEM_DROPPED, dropped.append)
    try:
        item = await engine.queue_status_change("42", "cancel")

        await engine.flush()
        assert [q.attempts for q in await store.list_queue()] == [1]
        await engine.flush()
        assert [q.attempts for q in await store.list_queue()] == [2]
        assert dropped == []

        result = await engine.flush()
        assert result.queue_dropped == 1
        assert await store.list_queue() == []
        assert [d.id for d in dropped] == [item.id]
        assert dropped[0].attempts == 3

        await engine.flush()
        assert len(transport.actions) == 3
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_delivered_message_is_marked_synced(tmp_path: Path) -> None:
    transport = _RecordingTransport()
    engine, store = await _engine(tmp_path, transport)
    try:
        message = await engine.queue_message("42", "I'm at the gate")

        result = await engine.flush()

        assert result.queue_sent == 1
        sent = transport.actions[0]
        assert sent.type == QueueItemType.MESSAGE
        assert sent.payload == {"ride_id": "42", "message": "I'm at the gate", "local_id": message.local_id}
        (stored,) = await store.list_messages("42")
        assert stored.sync_state == SyncState.SYNCED
        assert await store.list_queue() == []
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_flush_skipped_while_offline_and_resumes_when_online(tmp_path: Path) -> None:
    transport = _RecordingTransport()
    engine, store = await _engine(tmp_path, transport, online_resync_delay=0.01)
    events: list[str] = []
    synced = asyncio.Event()
    engine.events.subscribe(SyncEvent.OFFLINE, lambda _p: events.append("offline"))
    engine.events.subscribe(SyncEvent.ONLINE, lambda _p: events.append("online"))
    engine.events.subscribe(SyncEvent.SYNCED, lambda _p: synced.set())
    try:
        await store.save_position(_sample(0))
        engine.set_online(False)

        result = await engine.flush()
        assert result.skipped is True
        assert transport.calls == 0

        engine.set_online(True)
        await asyncio.wait_for(synced.wait(), timeout=2.0)

        assert events == ["offline", "online"]
        assert transport.calls == 1
        assert await store.count_unsynced() == 0
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_periodic_flush_runs_until_stopped(tmp_path: Path) -> None:
    transport = _RecordingTransport()
    engine, store = await _engine(tmp_path, transport, sync_interval=0.01)
    synced = asyncio.Event()
    engine.events.subscribe(SyncEvent.SYNCED, lambda _p: synced.set())
    try:
        await store.save_position(_sample(0))
        engine.start_periodic()
        assert engine.periodic_running

        await asyncio.wait_for(synced.wait(), timeout=2.0)

        await engine.stop_periodic()
        assert not engine.periodic_running
        assert await store.count_unsynced() == 0
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_cleanup_purges_old_synced_positions(tmp_path: Path) -> None:
    transport = _RecordingTransport()
    engine, store = await _engine(tmp_path, transport)
    try:
        await store.save_position(_sample(0))
        await engine.flush()

        assert await engine.cleanup(timedelta(0)) == 1
        assert await store.get_positions("42") == []
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_periodic_flush_survives_unexpected_error(tmp_path: Path) -> None:
    transport = _RecordingTransport(crash_calls={0})
    engine, store = await _engine(tmp_path, transport, sync_interval=0.01)
    errors: list[Any] = []
    synced = asyncio.Event()
    engine.events.subscribe(SyncEvent.SYNC_ERROR, errors.append)
    engine.events.subscribe(SyncEvent.SYNCED, lambda _p: synced.set())
    try:
        await store.save_position(_sample(0))
        engine.start_periodic()

        await asyncio.wait_for(synced.wait(), timeout=2.0)

        assert engine.periodic_running
        assert isinstance(errors[0], UnicodeDecodeError)
        assert await store.count_unsynced() == 0
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_held_samples_follow_the_stored_backlog(tmp_path: Path) -> None:
    transport = _RecordingTransport()
    engine, store = await _engine(tmp_path, transport)
    try:
        for i in range(3):
            await store.save_position(_sample(i))
        engine.hold(_sample(10))
        engine.hold(_sample(11))

        result = await engine.flush()

        assert [len(b) for b in transport.batches] == [3, 2]
        assert transport.batches[1] == [None, None]
        assert transport.captured[1] == [_dt() + timedelta(seconds=10), _dt() + timedelta(seconds=11)]
        assert result.positions_synced == 5
        assert engine.held_count == 0
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_held_samples_survive_a_failed_delivery(tmp_path: Path) -> None:
    transport = _RecordingTransport(fail_calls={0})
    engine, store = await _engine(tmp_path, transport)
    try:
        engine.hold(_sample(0))
        engine.hold(_sample(1))

        first = await engine.flush()
        assert first.positions_pending == 2
        assert engine.held_count == 2

        second = await engine.flush()
        assert second.positions_synced == 2
        assert engine.held_count == 0
    finally:
        await engine.close()
        await store.close()


@pytest.mark.asyncio
async def test_held_samples_sent_while_store_unavailable(tmp_path: Path) -> None:
    transport = _RecordingTransport()
    config = TrackingConfig(ws_url=None, db_path=tmp_path / "t.db")
    engine = SyncEngine(config, LocalStore(config.db_path), transport)
    engine.hold(_sample(0))

    result = await engine.flush()

    assert result.positions_synced == 1
    assert transport.captured == [[_dt()]]
    assert engine.held_count == 0
