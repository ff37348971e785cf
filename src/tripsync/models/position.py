"""Position models: raw provider fixes, session samples and stored rows."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator

from tripsync.models._base import TripBaseModel, UtcTimestamp, to_epoch_ms, utcnow


class SyncState(StrEnum):
    PENDING = "pending"
    SYNCED = "synced"


class GeoFix(TripBaseModel):
    """One reading from a location provider.

    Parameters
    ----------
    lat, lng : float
        WGS84 coordinates in degrees.
    accuracy : float or None
        Horizontal accuracy radius in meters.
    heading : float or None
        Course over ground in degrees.
    speed : float or None
        Ground speed in m/s.
    altitude : float or None
        Altitude in meters.
    timestamp : datetime
        When the provider produced the fix (UTC).
    """

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    accuracy: float | None = None
    heading: float | None = None
    speed: float | None = None
    altitude: float | None = None
    timestamp: UtcTimestamp = Field(default_factory=utcnow)

    @field_validator("speed", "heading", "accuracy")
    @classmethod
    def _drop_negative(cls, value: float | None) -> float | None:
        # Providers report "unknown" as negative values.
        if value is not None and value < 0:
            return None
        return value


class PositionSample(TripBaseModel):
    """A fix attributed to a ride, as accepted by the tracking session."""

    ride_id: str
    lat: float
    lng: float
    accuracy: float | None = None
    heading: float | None = None
    speed: float | None = None
    captured_at: UtcTimestamp

    @field_validator("ride_id", mode="before")
    @classmethod
    def _coerce_ride_id(cls, value: Any) -> str:
        text = str(value).strip()
        if not text:
            raise ValueError("ride_id must be non-empty")
        return text

    @classmethod
    def from_fix(cls, ride_id: str, fix: GeoFix) -> PositionSample:
        return cls(
            ride_id=ride_id,
            lat=fix.lat,
            lng=fix.lng,
            accuracy=fix.accuracy,
            heading=fix.heading,
            speed=fix.speed,
            captured_at=fix.timestamp,
        )

    def to_wire(self) -> dict[str, Any]:
        """REST body fields for one position (``ride_id``, epoch-ms ``timestamp``)."""
        return {
            "ride_id": self.ride_id,
            "lat": self.lat,
            "lng": self.lng,
            "accuracy": self.accuracy,
            "heading": self.heading,
            "speed": self.speed,
            "timestamp": to_epoch_ms(self.captured_at),
        }

    def to_frame_data(self) -> dict[str, Any]:
        """Data of a ``position`` WebSocket frame."""
        return {
            "rideId": self.ride_id,
            "lat": self.lat,
            "lng": self.lng,
            "heading": self.heading,
            "speed": self.speed,
        }


class StoredPosition(PositionSample):
    """A sample persisted in the local store."""

    local_id: int
    sync_state: SyncState = SyncState.PENDING

    @property
    def is_pending(self) -> bool:
        return self.sync_state == SyncState.PENDING
