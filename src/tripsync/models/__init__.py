"""Data models for tripsync records."""

from tripsync.models._base import TripBaseModel, UtcTimestamp, parse_timestamp, to_epoch_ms
from tripsync.models.position import GeoFix, PositionSample, StoredPosition, SyncState
from tripsync.models.queue import QueueAction, QueueDecision, QueueItem, QueueItemType, next_queue_state
from tripsync.models.ride import ChatMessage, RideRecord
from tripsync.models.stats import EtaEstimate, FinalTripStats, TripStats

__all__ = [
    "ChatMessage",
    "EtaEstimate",
    "FinalTripStats",
    "GeoFix",
    "PositionSample",
    "QueueAction",
    "QueueDecision",
    "QueueItem",
    "QueueItemType",
    "RideRecord",
    "StoredPosition",
    "SyncState",
    "TripBaseModel",
    "TripStats",
    "UtcTimestamp",
    "next_queue_state",
    "parse_timestamp",
    "to_epoch_ms",
]
