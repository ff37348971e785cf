"""Outbound side-action queue records and the requeue/drop policy."""

from __future__ import annotations

import dataclasses
from enum import StrEnum
from typing import Any

from pydantic import Field

from tripsync.models._base import TripBaseModel, UtcTimestamp, utcnow


class QueueItemType(StrEnum):
    POSITION = "position"
    MESSAGE = "message"
    STATUS = "status"


class QueueItem(TripBaseModel):
    """A non-critical outbound action waiting for delivery.

    ``payload`` is a copy of the data to send; items never reference local
    rows by ownership, so each one can be retried on its own.
    """

    id: int
    type: QueueItemType
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: UtcTimestamp = Field(default_factory=utcnow)
    attempts: int = Field(default=0, ge=0)


class QueueAction(StrEnum):
    REQUEUE = "requeue"
    DROP = "drop"


@dataclasses.dataclass(frozen=True)
class QueueDecision:
    action: QueueAction
    item: QueueItem


def next_queue_state(item: QueueItem, max_attempts: int) -> QueueDecision:
    """Decide what happens to *item* after one failed delivery.

    The returned item carries ``attempts + 1``. Once that reaches
    *max_attempts* the item is dropped.
    """
    updated = item.model_copy(update={"attempts": item.attempts + 1})
    if updated.attempts >= max_attempts:
        return QueueDecision(QueueAction.DROP, updated)
    return QueueDecision(QueueAction.REQUEUE, updated)
