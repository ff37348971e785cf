"""Base model and timestamp helpers for tripsync records.

Every record model inherits from :class:`TripBaseModel` which provides:

* ``alias_generator=to_camel`` so camelCase wire/JS keys (``rideId``,
  ``capturedAt``) map automatically to snake_case fields.
* frozen instances: records are values, updates go through
  ``model_copy(update=...)``.

Timestamps are always timezone-aware UTC datetimes in memory and epoch
milliseconds on the wire and on disk.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Convert an epoch timestamp (seconds **or** milliseconds) to a UTC datetime.

    Naive datetimes are assumed to be UTC. Returns ``None`` for ``None``.
    """
    if value is None:
        return value
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    ts = float(value)
    if ts >= _MS_THRESHOLD:
        ts /= 1000.0
    return datetime.fromtimestamp(ts, tz=UTC)


def to_epoch_ms(value: datetime) -> int:
    """UTC datetime to integer epoch milliseconds."""
    return int(round(value.timestamp() * 1000))


UtcTimestamp = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces epoch ints (seconds or ms) to UTC datetimes."""


class TripBaseModel(BaseModel):
    """Base for tripsync record models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )
