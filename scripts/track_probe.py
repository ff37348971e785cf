#!/usr/bin/env python3
"""Run one tracking session and print what the pipeline does.

Positions come from a gpsd daemon or a recorded CSV track (``--replay``).
Accepted samples are stored locally and synced to the API configured via
``TRIPSYNC_*`` environment variables or the command line flags.

Use this to check filtering, batching and reconnection against a real or
staging backend.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from tripsync import (  # noqa: E402
    ConnectionEvent,
    GeoError,
    GpsdLocationProvider,
    ReplayLocationProvider,
    SyncEvent,
    TrackingClient,
    TrackingConfig,
    TrackingEvent,
    TripSyncError,
)
from tripsync.sensor import LocationProvider  # noqa: E402

_LOG = logging.getLogger("track_probe")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a tracking session from gpsd or a recorded track.",
    )
    parser.add_argument("--ride", required=True, help="Ride id to track.")
    parser.add_argument(
        "--user-type",
        default="passenger",
        choices=("passenger", "driver"),
        help="Role of this device in the ride.",
    )
    parser.add_argument(
        "--replay",
        type=Path,
        default=None,
        help="CSV track to replay instead of reading gpsd (columns: lat,lng[,timestamp,speed,heading,accuracy]).",
    )
    parser.add_argument(
        "--replay-interval",
        type=float,
        default=1.0,
        help="Seconds between replayed fixes.",
    )
    parser.add_argument("--gpsd-host", default="localhost", help="gpsd host.")
    parser.add_argument("--gpsd-port", type=int, default=2947, help="gpsd port.")
    parser.add_argument("--api", default=None, help="REST API base URL (overrides TRIPSYNC_API_BASE_URL).")
    parser.add_argument("--ws", default=None, help="WebSocket URL, empty string disables the channel.")
    parser.add_argument("--db", type=Path, default=None, help="Local database file.")
    parser.add_argument(
        "--duration",
        type=float,
        default=0,
        help="Maximum runtime in seconds (0 = until the track ends or Ctrl+C).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _build_config(args: argparse.Namespace) -> TrackingConfig:
    overrides: dict[str, Any] = {}
    if args.api is not None:
        overrides["api_base_url"] = args.api
    if args.ws is not None:
        overrides["ws_url"] = args.ws or None
    if args.db is not None:
        overrides["db_path"] = args.db
    return TrackingConfig.from_env(**overrides)


def _build_provider(args: argparse.Namespace) -> LocationProvider:
    if args.replay is not None:
        return ReplayLocationProvider.from_csv(args.replay, interval=args.replay_interval, restamp=True)
    return GpsdLocationProvider(args.gpsd_host, args.gpsd_port)


def _print_event(name: str) -> Any:
    def _handler(payload: Any) -> None:
        print(f"[probe] {name}: {payload}")

    return _handler


async def _run(args: argparse.Namespace) -> int:
    config = _build_config(args)
    provider = _build_provider(args)

    async with TrackingClient(config, provider) as client:
        assert client.tracker is not None and client.sync is not None
        client.tracker.events.subscribe(TrackingEvent.DEGRADED, _print_event("degraded"))
        client.tracker.events.subscribe(TrackingEvent.ERROR, _print_event("sensor error"))
        client.sync.events.subscribe(SyncEvent.SYNCED, _print_event("synced"))
        client.sync.events.subscribe(SyncEvent.SYNC_ERROR, _print_event("sync error"))
        client.sync.events.subscribe(SyncEvent.ITEM_DROPPED, _print_event("queue item dropped"))
        if client.supervisor is not None:
            client.supervisor.events.subscribe(ConnectionEvent.CONNECTED, _print_event("channel connected"))
            client.supervisor.events.subscribe(ConnectionEvent.DISCONNECTED, _print_event("channel closed"))
            client.supervisor.events.subscribe(
                ConnectionEvent.RECONNECT_ABANDONED,
                _print_event("reconnect abandoned"),
            )

        def _on_update(payload: dict[str, Any]) -> None:
            stats = payload["stats"]
            print(
                f"[probe] accepted #{len(client.tracker.position_history) if client.tracker else 0}"
                f" distance={stats.total_distance_m:.0f}m avg={stats.average_speed_kmh:.1f}km/h"
            )

        client.tracker.events.subscribe(TrackingEvent.POSITION_UPDATE, _on_update)

        try:
            await client.start_tracking(args.ride, args.user_type)
        except GeoError as exc:
            print(f"[probe] Cannot start tracking: {exc} ({exc.code})", file=sys.stderr)
            return 2

        print(f"[probe] Tracking ride {args.ride}. Ctrl+C to stop.")
        try:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + args.duration if args.duration > 0 else None
            while deadline is None or loop.time() < deadline:
                await asyncio.sleep(1.0)
                if isinstance(provider, ReplayLocationProvider) and provider.remaining == 0:
                    break
        finally:
            final = await client.stop_tracking()

        if final is not None:
            print("[probe] Summary")
            print(f"[probe]   duration       : {final.duration}")
            print(f"[probe]   distance       : {final.total_distance_m:.0f} m")
            print(f"[probe]   average speed  : {final.average_speed_kmh:.1f} km/h")
            print(f"[probe]   max speed      : {final.max_speed_kmh:.1f} km/h")
        if client.store is not None:
            print(f"[probe]   still pending  : {await client.store.count_unsynced()}")
    return 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130
    except TripSyncError as exc:
        _LOG.error("Probe failed: %s", exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(_main())
