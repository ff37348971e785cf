"""Trip statistics and ETA estimates (derived, never persisted)."""

from __future__ import annotations

from datetime import datetime, timedelta

from tripsync.models._base import TripBaseModel, UtcTimestamp
from tripsync.models.position import PositionSample


class TripStats(TripBaseModel):
    """Running statistics for one tracking session.

    Parameters
    ----------
    start_time : datetime
        Session start (UTC).
    total_distance_m : float
        Sum of haversine deltas between consecutive accepted samples.
    average_speed_kmh : float
        ``total_distance / elapsed`` since ``start_time``.
    max_speed_kmh : float
        Highest reported sensor speed.
    last_position : PositionSample or None
        Latest accepted sample.
    """

    start_time: UtcTimestamp
    total_distance_m: float = 0.0
    average_speed_kmh: float = 0.0
    max_speed_kmh: float = 0.0
    last_position: PositionSample | None = None


class FinalTripStats(TripStats):
    end_time: UtcTimestamp
    duration: timedelta


class EtaEstimate(TripBaseModel):
    distance_m: int
    distance_km: float
    duration_minutes: int
    duration_formatted: str
    eta: datetime
