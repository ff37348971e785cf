"""tripsync - Async ride position tracking with offline sync."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tripsync")
except PackageNotFoundError:
    __version__ = "0+local"
from tripsync.channel import ConnectionState, ConnectionSupervisor, ReconnectPlan, plan_reconnect
from tripsync.client import TrackingClient
from tripsync.config import CONTINUOUS_WATCH, HIGH_ACCURACY, QUICK, GeoProfile, TrackingConfig
from tripsync.events import ConnectionEvent, EventEmitter, GeoEvent, Subscription, SyncEvent, TrackingEvent
from tripsync.exceptions import (
    ChannelError,
    ConfigError,
    DeliveryRejectedError,
    GeoError,
    GeoPermissionDeniedError,
    GeoTimeoutError,
    GeoUnavailableError,
    GeoUnsupportedError,
    StoreError,
    TrackingStateError,
    TransportError,
    TripSyncError,
)
from tripsync.models import (
    ChatMessage,
    EtaEstimate,
    FinalTripStats,
    GeoFix,
    PositionSample,
    QueueItem,
    QueueItemType,
    RideRecord,
    StoredPosition,
    SyncState,
    TripStats,
)
from tripsync.sensor import GeoSampler, GpsdLocationProvider, PermissionState, ReplayLocationProvider
from tripsync.store import LocalStore
from tripsync.sync import FlushResult, SyncEngine
from tripsync.tracking import TrackingCoordinator, should_accept
from tripsync.transport import ChannelTransport, FallbackTransport, HttpTransport

__all__ = [
    "__version__",
    "CONTINUOUS_WATCH",
    "ChannelError",
    "ChannelTransport",
    "ChatMessage",
    "ConfigError",
    "ConnectionEvent",
    "ConnectionState",
    "ConnectionSupervisor",
    "DeliveryRejectedError",
    "EtaEstimate",
    "EventEmitter",
    "FallbackTransport",
    "FinalTripStats",
    "FlushResult",
    "GeoError",
    "GeoEvent",
    "GeoFix",
    "GeoPermissionDeniedError",
    "GeoProfile",
    "GeoSampler",
    "GeoTimeoutError",
    "GeoUnavailableError",
    "GeoUnsupportedError",
    "GpsdLocationProvider",
    "HIGH_ACCURACY",
    "HttpTransport",
    "LocalStore",
    "PermissionState",
    "PositionSample",
    "QUICK",
    "QueueItem",
    "QueueItemType",
    "ReconnectPlan",
    "ReplayLocationProvider",
    "RideRecord",
    "StoreError",
    "StoredPosition",
    "Subscription",
    "SyncEngine",
    "SyncEvent",
    "SyncState",
    "TrackingClient",
    "TrackingConfig",
    "TrackingCoordinator",
    "TrackingEvent",
    "TrackingStateError",
    "TransportError",
    "TripStats",
    "TripSyncError",
    "plan_reconnect",
    "should_accept",
]
