"""Durable local store for positions, rides, chat messages and the sync queue.

Backed by SQLite. Every statement runs on one dedicated worker thread, so
writes from the tracking session and updates from the sync engine are
serialised, and a read always observes the writes that completed before it
was issued.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

from tripsync.exceptions import StoreError
from tripsync.models._base import parse_timestamp, to_epoch_ms, utcnow
from tripsync.models.position import PositionSample, StoredPosition, SyncState
from tripsync.models.queue import QueueItem, QueueItemType
from tripsync.models.ride import ChatMessage, RideRecord

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite caps the number of host parameters per statement.
_MAX_PARAMS = 500

SCHEMA = """
-- GPS positions captured during tracking sessions
CREATE TABLE IF NOT EXISTS positions (
    local_id INTEGER PRIMARY KEY AUTOINCREMENT,
    ride_id TEXT NOT NULL,
    lat REAL NOT NULL,
    lng REAL NOT NULL,
    accuracy REAL,
    heading REAL,
    speed REAL,
    captured_at INTEGER NOT NULL,
    sync_state TEXT NOT NULL DEFAULT 'pending'
);

-- Last known ride snapshots
CREATE TABLE IF NOT EXISTS rides (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    data TEXT NOT NULL DEFAULT '{}'
);

-- Outbound chat messages
CREATE TABLE IF NOT EXISTS messages (
    local_id INTEGER PRIMARY KEY AUTOINCREMENT,
    ride_id TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    sync_state TEXT NOT NULL DEFAULT 'pending'
);

-- Non-critical side actions awaiting delivery
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    created_at INTEGER NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_positions_ride ON positions(ride_id);
CREATE INDEX IF NOT EXISTS idx_positions_captured ON positions(captured_at);
CREATE INDEX IF NOT EXISTS idx_positions_sync ON positions(sync_state);
CREATE INDEX IF NOT EXISTS idx_rides_status ON rides(status);
CREATE INDEX IF NOT EXISTS idx_rides_updated ON rides(updated_at);
CREATE INDEX IF NOT EXISTS idx_messages_ride ON messages(ride_id);
CREATE INDEX IF NOT EXISTS idx_messages_sync ON messages(sync_state);
CREATE INDEX IF NOT EXISTS idx_queue_type ON sync_queue(type);
CREATE INDEX IF NOT EXISTS idx_queue_created ON sync_queue(created_at);
"""

_POSITION_COLUMNS = "local_id, ride_id, lat, lng, accuracy, heading, speed, captured_at, sync_state"

_QUEUE_TYPES = frozenset(t.value for t in QueueItemType)


def _chunks(values: Sequence[int], size: int) -> Iterable[Sequence[int]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _row_to_position(row: sqlite3.Row) -> StoredPosition:
    return StoredPosition(
        local_id=row["local_id"],
        ride_id=row["ride_id"],
        lat=row["lat"],
        lng=row["lng"],
        accuracy=row["accuracy"],
        heading=row["heading"],
        speed=row["speed"],
        captured_at=row["captured_at"],
        sync_state=SyncState(row["sync_state"]),
    )


def _row_to_queue_item(row: sqlite3.Row) -> QueueItem:
    return QueueItem(
        id=row["id"],
        type=QueueItemType(row["type"]),
        payload=json.loads(row["payload"]),
        created_at=row["created_at"],
        attempts=row["attempts"],
    )


def _row_to_message(row: sqlite3.Row) -> ChatMessage:
    return ChatMessage(
        local_id=row["local_id"],
        ride_id=row["ride_id"],
        body=row["body"],
        created_at=row["created_at"],
        sync_state=SyncState(row["sync_state"]),
    )


class LocalStore:
    """SQLite-backed local store.

    Usage::

        store = LocalStore(path)
        await store.open()
        local_id = await store.save_position(sample)
        ...
        await store.close()

    If the database file cannot be opened the store falls back to an
    in-memory database and :attr:`degraded` is set: tracking continues but
    data does not survive a restart.
    """

    def __init__(
        self,
        db_path: Path | str | None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db_path = db_path
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._degraded = False

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def degraded(self) -> bool:
        return self._degraded

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        if self._executor is not None:
            return
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tripsync-store")
        loop = asyncio.get_running_loop()
        self._conn, self._degraded = await loop.run_in_executor(self._executor, self._connect)

    def _connect(self) -> tuple[sqlite3.Connection, bool]:
        if self._db_path is None or str(self._db_path) == ":memory:":
            return self._init_connection(":memory:"), False
        path = Path(self._db_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return self._init_connection(str(path)), False
        except (OSError, sqlite3.Error) as exc:
            _logger.warning("Local store %s unavailable (%s); continuing in memory only", path, exc)
            return self._init_connection(":memory:"), True

    @staticmethod
    def _init_connection(target: str) -> sqlite3.Connection:
        conn = sqlite3.connect(target, isolation_level=None)
        conn.row_factory = sqlite3.Row
        if target != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA)
        return conn

    async def close(self) -> None:
        executor = self._executor
        conn = self._conn
        self._conn = None
        self._executor = None
        if executor is None:
            return
        if conn is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(executor, conn.close)
        executor.shutdown(wait=False)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        if self._executor is None or self._conn is None:
            raise StoreError("Local store is not open")
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn, self._conn, *args)
        except sqlite3.Error as exc:
            raise StoreError(f"Local store operation failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def save_position(self, sample: PositionSample) -> int:
        """Persist *sample* as pending and return its local id."""

        def _insert(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                INSERT INTO positions (ride_id, lat, lng, accuracy, heading, speed, captured_at, sync_state)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    sample.ride_id,
                    sample.lat,
                    sample.lng,
                    sample.accuracy,
                    sample.heading,
                    sample.speed,
                    to_epoch_ms(sample.captured_at),
                    SyncState.PENDING.value,
                ),
            )
            return int(cursor.lastrowid or 0)

        return await self._run(_insert)

    async def list_unsynced(self, ride_id: str | None = None, limit: int | None = None) -> list[StoredPosition]:
        """Pending positions, oldest capture first."""

        def _select(conn: sqlite3.Connection) -> list[StoredPosition]:
            sql = f"SELECT {_POSITION_COLUMNS} FROM positions WHERE sync_state = ?"
            params: list[Any] = [SyncState.PENDING.value]
            if ride_id is not None:
                sql += " AND ride_id = ?"
                params.append(ride_id)
            sql += " ORDER BY captured_at, local_id"
            if limit is not None:
                sql += " LIMIT ?"
                params.append(limit)
            return [_row_to_position(row) for row in conn.execute(sql, params)]

        return await self._run(_select)

    async def count_unsynced(self) -> int:
        def _count(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT COUNT(*) FROM positions WHERE sync_state = ?",
                (SyncState.PENDING.value,),
            ).fetchone()
            return int(row[0])

        return await self._run(_count)

    async def get_positions(self, ride_id: str) -> list[StoredPosition]:
        def _select(conn: sqlite3.Connection) -> list[StoredPosition]:
            rows = conn.execute(
                f"SELECT {_POSITION_COLUMNS} FROM positions WHERE ride_id = ? ORDER BY captured_at, local_id",
                (ride_id,),
            )
            return [_row_to_position(row) for row in rows]

        return await self._run(_select)

    async def mark_synced(self, ids: Iterable[int]) -> int:
        """Flag positions as synced; already-synced ids are left untouched.

        Returns the number of rows that transitioned.
        """
        id_list = sorted(set(ids))
        if not id_list:
            return 0

        def _update(conn: sqlite3.Connection) -> int:
            changed = 0
            with conn:
                for chunk in _chunks(id_list, _MAX_PARAMS):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = conn.execute(
                        f"UPDATE positions SET sync_state = ? WHERE sync_state = ? AND local_id IN ({placeholders})",
                        (SyncState.SYNCED.value, SyncState.PENDING.value, *chunk),
                    )
                    changed += cursor.rowcount
            return changed

        return await self._run(_update)

    async def purge_older_than(self, max_age: timedelta | float) -> int:
        """Delete synced positions and messages older than *max_age*.

        Pending rows are never deleted, whatever their age.
        """
        age = max_age if isinstance(max_age, timedelta) else timedelta(seconds=max_age)
        cutoff = to_epoch_ms(self._clock() - age)

        def _delete(conn: sqlite3.Connection) -> int:
            with conn:
                positions = conn.execute(
                    "DELETE FROM positions WHERE sync_state = ? AND captured_at <= ?",
                    (SyncState.SYNCED.value, cutoff),
                ).rowcount
                messages = conn.execute(
                    "DELETE FROM messages WHERE sync_state = ? AND created_at <= ?",
                    (SyncState.SYNCED.value, cutoff),
                ).rowcount
            return positions + messages

        deleted = await self._run(_delete)
        _logger.debug("Purged %d synced rows older than %s", deleted, age)
        return deleted

    # ------------------------------------------------------------------
    # Rides
    # ------------------------------------------------------------------

    async def save_ride(self, ride: RideRecord | dict[str, Any]) -> RideRecord:
        """Insert or replace a ride snapshot, stamping ``updated_at``."""
        record = ride if isinstance(ride, RideRecord) else RideRecord.model_validate(ride)
        record = record.model_copy(update={"updated_at": self._clock()})

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR REPLACE INTO rides (id, status, updated_at, data) VALUES (?, ?, ?, ?)",
                (record.id, record.status, to_epoch_ms(record.updated_at), json.dumps(record.data)),
            )

        await self._run(_upsert)
        return record

    async def get_ride(self, ride_id: str | int) -> RideRecord | None:
        def _select(conn: sqlite3.Connection) -> RideRecord | None:
            row = conn.execute(
                "SELECT id, status, updated_at, data FROM rides WHERE id = ?",
                (str(ride_id),),
            ).fetchone()
            if row is None:
                return None
            return RideRecord(
                id=row["id"],
                status=row["status"],
                updated_at=parse_timestamp(row["updated_at"]),
                data=json.loads(row["data"]),
            )

        return await self._run(_select)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def save_message(self, ride_id: str, body: str) -> ChatMessage:
        created_at = self._clock()

        def _insert(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                "INSERT INTO messages (ride_id, body, created_at, sync_state) VALUES (?, ?, ?, ?)",
                (ride_id, body, to_epoch_ms(created_at), SyncState.PENDING.value),
            )
            return int(cursor.lastrowid or 0)

        local_id = await self._run(_insert)
        return ChatMessage(local_id=local_id, ride_id=ride_id, body=body, created_at=created_at)

    async def list_messages(self, ride_id: str) -> list[ChatMessage]:
        def _select(conn: sqlite3.Connection) -> list[ChatMessage]:
            rows = conn.execute(
                "SELECT local_id, ride_id, body, created_at, sync_state FROM messages"
                " WHERE ride_id = ? ORDER BY created_at, local_id",
                (ride_id,),
            )
            return [_row_to_message(row) for row in rows]

        return await self._run(_select)

    async def mark_message_synced(self, local_id: int) -> bool:
        def _update(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "UPDATE messages SET sync_state = ? WHERE local_id = ? AND sync_state = ?",
                (SyncState.SYNCED.value, local_id, SyncState.PENDING.value),
            )
            return cursor.rowcount > 0

        return await self._run(_update)

    # ------------------------------------------------------------------
    # Sync queue
    # ------------------------------------------------------------------

    async def enqueue(self, item_type: QueueItemType, payload: dict[str, Any]) -> QueueItem:
        created_at = self._clock()

        def _insert(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                "INSERT INTO sync_queue (type, payload, created_at, attempts) VALUES (?, ?, ?, 0)",
                (item_type.value, json.dumps(payload), to_epoch_ms(created_at)),
            )
            return int(cursor.lastrowid or 0)

        item_id = await self._run(_insert)
        return QueueItem(id=item_id, type=item_type, payload=payload, created_at=created_at)

    async def list_queue(self) -> list[QueueItem]:
        """Queued side actions, oldest first.

        Rows with an unknown type cannot be delivered; they are logged and
        removed.
        """

        def _select(conn: sqlite3.Connection) -> list[QueueItem]:
            rows = conn.execute(
                "SELECT id, type, payload, created_at, attempts FROM sync_queue ORDER BY created_at, id"
            ).fetchall()
            items: list[QueueItem] = []
            for row in rows:
                if row["type"] not in _QUEUE_TYPES:
                    _logger.warning("Removing queue item %s with unknown type %r", row["id"], row["type"])
                    conn.execute("DELETE FROM sync_queue WHERE id = ?", (row["id"],))
                    continue
                items.append(_row_to_queue_item(row))
            return items

        return await self._run(_select)

    async def requeue(self, item: QueueItem) -> None:
        """Persist the attempt counter of *item* (never lowering it)."""

        def _update(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE sync_queue SET attempts = MAX(attempts, ?) WHERE id = ?",
                (item.attempts, item.id),
            )

        await self._run(_update)

    async def remove_queue_item(self, item_id: int) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))

        await self._run(_delete)
