"""Location sampling.

A :class:`LocationProvider` is the platform sensor. Two implementations
are selected at construction time:

* :class:`GpsdLocationProvider` reads TPV reports from a gpsd daemon.
* :class:`ReplayLocationProvider` replays a recorded track (simulation,
  demos and tests).

:class:`GeoSampler` sits on top of a provider and adds profiles
(timeout / cache age), single-shot requests, continuous watching and
lifecycle events. Failures are reported to the caller and never retried
here.
"""

from __future__ import annotations

import asyncio
import contextlib
import csv
import itertools
import json
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from tripsync._geo import bearing_degrees
from tripsync.config import CONTINUOUS_WATCH, HIGH_ACCURACY, QUICK, GeoProfile
from tripsync.events import EventEmitter, GeoEvent
from tripsync.exceptions import (
    GeoError,
    GeoPermissionDeniedError,
    GeoTimeoutError,
    GeoUnavailableError,
    GeoUnsupportedError,
)
from tripsync.models._base import utcnow
from tripsync.models.position import GeoFix

_logger = logging.getLogger(__name__)


class PermissionState(StrEnum):
    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"
    UNSUPPORTED = "unsupported"


class LocationProvider(Protocol):
    """Structural sensor interface used by :class:`GeoSampler`."""

    async def check_permission(self) -> PermissionState:
        ...

    def fixes(self, profile: GeoProfile) -> AsyncIterator[GeoFix]:
        """Yield fixes as they arrive; raise :class:`GeoError` on failure."""
        ...


# ----------------------------------------------------------------------
# Providers
# ----------------------------------------------------------------------


class ReplayLocationProvider:
    """Replay a fixed sequence of fixes.

    The cursor is shared between calls, so a single-shot request followed
    by a watch continues where the previous one stopped. With
    ``restamp=True`` each fix gets the current time when emitted.
    """

    def __init__(
        self,
        fixes: Iterable[GeoFix],
        *,
        interval: float = 0.0,
        permission: PermissionState = PermissionState.GRANTED,
        restamp: bool = False,
        loop_track: bool = False,
    ) -> None:
        self._fixes = list(fixes)
        self._interval = interval
        self._restamp = restamp
        self._loop_track = loop_track
        self._cursor = 0
        self.permission = permission

    @classmethod
    def from_csv(cls, path: Path, **kwargs: Any) -> ReplayLocationProvider:
        """Load a track from CSV with a header row.

        Required columns: ``lat``, ``lng``. Optional: ``timestamp``
        (epoch seconds or ms), ``speed`` (m/s), ``heading``, ``accuracy``.
        Missing headings are derived from the neighbouring points.
        """
        fixes: list[GeoFix] = []
        with path.open(newline="", encoding="utf-8") as handle:
            for row in csv.DictReader(handle):
                values = {k: v for k, v in row.items() if v not in (None, "")}
                fixes.append(GeoFix.model_validate(values))
        return cls(_fill_headings(fixes), **kwargs)

    @property
    def remaining(self) -> int:
        return max(0, len(self._fixes) - self._cursor)

    async def check_permission(self) -> PermissionState:
        return self.permission

    async def fixes(self, profile: GeoProfile) -> AsyncIterator[GeoFix]:
        if self.permission == PermissionState.DENIED:
            raise GeoPermissionDeniedError()
        while True:
            if self._cursor >= len(self._fixes):
                if not self._loop_track or not self._fixes:
                    return
                self._cursor = 0
            if self._interval > 0:
                await asyncio.sleep(self._interval)
            fix = self._fixes[self._cursor]
            self._cursor += 1
            if self._restamp:
                fix = fix.model_copy(update={"timestamp": utcnow()})
            yield fix


def _fill_headings(fixes: list[GeoFix]) -> list[GeoFix]:
    """Course towards the next point (from the previous one for the last point)."""
    if len(fixes) < 2:
        return fixes
    filled: list[GeoFix] = []
    for index, fix in enumerate(fixes):
        if fix.heading is not None:
            filled.append(fix)
            continue
        a, b = (fixes[index], fixes[index + 1]) if index + 1 < len(fixes) else (fixes[index - 1], fixes[index])
        heading = bearing_degrees(a.lat, a.lng, b.lat, b.lng)
        filled.append(fix.model_copy(update={"heading": heading}))
    return filled


def parse_tpv(report: dict[str, Any]) -> GeoFix | None:
    """Convert a gpsd TPV report into a fix; ``None`` without a 2D/3D fix."""
    if report.get("class") != "TPV":
        return None
    mode = report.get("mode", 0)
    lat = report.get("lat")
    lon = report.get("lon")
    if not isinstance(mode, int) or mode < 2 or lat is None or lon is None:
        return None

    errors = [report[k] for k in ("epx", "epy") if isinstance(report.get(k), (int, float))]
    timestamp: datetime | None = None
    raw_time = report.get("time")
    if isinstance(raw_time, str):
        with contextlib.suppress(ValueError):
            timestamp = datetime.fromisoformat(raw_time)

    return GeoFix(
        lat=lat,
        lng=lon,
        accuracy=max(errors) if errors else None,
        heading=report.get("track"),
        speed=report.get("speed"),
        altitude=report.get("altMSL", report.get("alt")),
        timestamp=timestamp or utcnow(),
    )


class GpsdLocationProvider:
    """Location provider backed by a gpsd daemon (JSON watch protocol)."""

    _WATCH_COMMAND = b'?WATCH={"enable":true,"json":true}\n'

    def __init__(self, host: str = "localhost", port: int = 2947, *, connect_timeout: float = 3.0) -> None:
        self._host = host
        self._port = port
        self._connect_timeout = connect_timeout

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                self._connect_timeout,
            )
        except (OSError, TimeoutError) as exc:
            raise GeoUnavailableError(f"gpsd not reachable at {self._host}:{self._port}: {exc}") from exc

    async def check_permission(self) -> PermissionState:
        try:
            _reader, writer = await self._open()
        except GeoUnavailableError:
            _logger.debug("gpsd permission check failed", exc_info=True)
            return PermissionState.UNSUPPORTED
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return PermissionState.GRANTED

    async def fixes(self, profile: GeoProfile) -> AsyncIterator[GeoFix]:
        reader, writer = await self._open()
        try:
            try:
                writer.write(self._WATCH_COMMAND)
                await writer.drain()
            except OSError as exc:
                raise GeoUnavailableError(f"gpsd watch request failed: {exc}") from exc
            while True:
                try:
                    line = await reader.readline()
                except (OSError, ValueError) as exc:
                    # ValueError: a line longer than the stream limit.
                    raise GeoUnavailableError(f"gpsd stream failed: {exc}") from exc
                if not line:
                    raise GeoUnavailableError("gpsd closed the connection")
                try:
                    report = json.loads(line)
                except json.JSONDecodeError:
                    _logger.debug("Ignoring non-JSON gpsd line: %r", line[:80])
                    continue
                if not isinstance(report, dict):
                    continue
                fix = parse_tpv(report)
                if fix is not None:
                    yield fix
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()


# ----------------------------------------------------------------------
# Sampler
# ----------------------------------------------------------------------

FixCallback = Callable[[GeoFix], None]
ErrorCallback = Callable[[GeoError], None]

_watch_ids = itertools.count(1)
_END = object()


class WatchHandle:
    """A running continuous watch; pass it back to ``stop_watching``."""

    def __init__(self, task: asyncio.Task[None], profile: GeoProfile) -> None:
        self.id = next(_watch_ids)
        self.profile = profile
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()


class GeoSampler:
    """Single-shot and continuous position requests on top of a provider."""

    def __init__(self, provider: LocationProvider | None) -> None:
        self._provider = provider
        self._last_position: GeoFix | None = None
        self._permission: PermissionState | None = None
        self._watch: WatchHandle | None = None
        self.events: EventEmitter[GeoEvent] = EventEmitter()

    @property
    def is_supported(self) -> bool:
        return self._provider is not None

    @property
    def last_position(self) -> GeoFix | None:
        return self._last_position

    @property
    def is_watching(self) -> bool:
        return self._watch is not None and self._watch.active

    def _require_provider(self) -> LocationProvider:
        if self._provider is None:
            error = GeoUnsupportedError("No location provider configured")
            self.events.emit(GeoEvent.ERROR, error)
            raise error
        return self._provider

    async def check_permission(self) -> PermissionState:
        """Query the provider permission state, emitting changes."""
        if self._provider is None:
            return PermissionState.UNSUPPORTED
        try:
            state = await self._provider.check_permission()
        except GeoError:
            _logger.debug("Permission query failed", exc_info=True)
            state = PermissionState.PROMPT
        if self._permission is not None and state != self._permission:
            self.events.emit(GeoEvent.PERMISSION_CHANGE, state)
        self._permission = state
        return state

    async def ensure_permission(self) -> None:
        """Raise unless the provider may be used."""
        self._require_provider()
        state = await self.check_permission()
        if state == PermissionState.DENIED:
            error = GeoPermissionDeniedError("Location permission denied")
            self.events.emit(GeoEvent.ERROR, error)
            raise error
        if state == PermissionState.UNSUPPORTED:
            error = GeoUnsupportedError("Location provider unsupported")
            self.events.emit(GeoEvent.ERROR, error)
            raise error

    def _cached(self, profile: GeoProfile) -> GeoFix | None:
        last = self._last_position
        if last is None or profile.maximum_age <= 0:
            return None
        age = (utcnow() - last.timestamp).total_seconds()
        return last if age <= profile.maximum_age else None

    async def get_current_position(self, profile: GeoProfile = HIGH_ACCURACY) -> GeoFix:
        """Return one fix, honouring the profile cache age and timeout."""
        provider = self._require_provider()

        cached = self._cached(profile)
        if cached is not None:
            self.events.emit(GeoEvent.POSITION_FOUND, cached)
            return cached

        await self.ensure_permission()
        self.events.emit(GeoEvent.DETECTING)

        fixes = provider.fixes(profile)
        try:
            async with asyncio.timeout(profile.timeout):
                fix = await anext(fixes, None)
        except TimeoutError:
            error: GeoError = GeoTimeoutError(f"No position within {profile.timeout:.0f}s")
            self.events.emit(GeoEvent.ERROR, error)
            raise error from None
        except GeoError as exc:
            self.events.emit(GeoEvent.ERROR, exc)
            raise
        finally:
            await _aclose(fixes)

        if fix is None:
            error = GeoUnavailableError("Provider returned no position")
            self.events.emit(GeoEvent.ERROR, error)
            raise error

        self._last_position = fix
        self.events.emit(GeoEvent.POSITION_FOUND, fix)
        return fix

    async def get_quick_position(self) -> GeoFix:
        return await self.get_current_position(QUICK)

    async def get_high_accuracy_position(self) -> GeoFix:
        return await self.get_current_position(HIGH_ACCURACY)

    def start_watching(
        self,
        on_fix: FixCallback,
        profile: GeoProfile = CONTINUOUS_WATCH,
        on_error: ErrorCallback | None = None,
    ) -> WatchHandle:
        """Start continuous watching; any previous watch is stopped first."""
        provider = self._require_provider()
        self.stop_watching()

        task = asyncio.get_running_loop().create_task(
            self._run_watch(provider, profile, on_fix, on_error),
            name="tripsync-geo-watch",
        )
        handle = WatchHandle(task, profile)
        self._watch = handle
        self.events.emit(GeoEvent.WATCH_START, profile)
        _logger.debug("Watch %s started profile=%s", handle.id, profile.name)
        return handle

    def stop_watching(self, handle: WatchHandle | None = None) -> None:
        """Stop the current watch (synchronous, idempotent)."""
        current = self._watch
        if current is None or (handle is not None and handle is not current):
            if handle is not None:
                handle.cancel()
            return
        self._watch = None
        current.cancel()
        self.events.emit(GeoEvent.WATCH_STOP)
        _logger.debug("Watch %s stopped", current.id)

    async def _run_watch(
        self,
        provider: LocationProvider,
        profile: GeoProfile,
        on_fix: FixCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        # The pump decouples the provider iterator from the per-fix timeout,
        # so a timeout never tears down the underlying stream.
        queue: asyncio.Queue[Any] = asyncio.Queue()

        async def _pump() -> None:
            try:
                async for fix in provider.fixes(profile):
                    queue.put_nowait(fix)
            except GeoError as exc:
                queue.put_nowait(exc)
            except Exception as exc:
                _logger.debug("Location provider failed", exc_info=True)
                queue.put_nowait(GeoUnavailableError(f"Location provider failed: {exc}"))
            finally:
                queue.put_nowait(_END)

        pump = asyncio.get_running_loop().create_task(_pump(), name="tripsync-geo-pump")
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), profile.timeout)
                except TimeoutError:
                    self._report(GeoTimeoutError(f"No position within {profile.timeout:.0f}s"), on_error)
                    continue
                if item is _END:
                    _logger.debug("Location stream ended")
                    return
                if isinstance(item, GeoError):
                    self._report(item, on_error)
                    return
                self._last_position = item
                self.events.emit(GeoEvent.POSITION_UPDATE, item)
                try:
                    on_fix(item)
                except Exception:
                    _logger.debug("on_fix callback failed", exc_info=True)
        finally:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump

    def _report(self, error: GeoError, on_error: ErrorCallback | None) -> None:
        _logger.debug("Geolocation error: %s", error)
        self.events.emit(GeoEvent.ERROR, error)
        if on_error is None:
            return
        try:
            on_error(error)
        except Exception:
            _logger.debug("on_error callback failed", exc_info=True)


async def _aclose(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()
