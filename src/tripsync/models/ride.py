"""Locally cached ride snapshots and outbound chat messages."""

from __future__ import annotations

from typing import Any

from pydantic import Field, field_validator, model_validator

from tripsync.models._base import TripBaseModel, UtcTimestamp, utcnow
from tripsync.models.position import SyncState


class RideRecord(TripBaseModel):
    """Ride snapshot as last seen by this device.

    Keys the server sends beyond ``id``/``status`` are kept in ``data``.
    """

    id: str
    status: str = "unknown"
    updated_at: UtcTimestamp = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_extra(cls, values: Any) -> Any:
        if not isinstance(values, dict) or "data" in values:
            return values
        known = {"id", "status", "updated_at", "updatedAt"}
        merged = {k: v for k, v in values.items() if k in known}
        merged["data"] = {k: v for k, v in values.items() if k not in known}
        return merged

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)


class ChatMessage(TripBaseModel):
    local_id: int
    ride_id: str
    body: str
    created_at: UtcTimestamp = Field(default_factory=utcnow)
    sync_state: SyncState = SyncState.PENDING
