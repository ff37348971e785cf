"""Client configuration for tripsync."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any

from tripsync.exceptions import ConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def default_db_path() -> Path:
    """Location of the local SQLite database (XDG data dir)."""
    return Path.home() / ".local" / "share" / "tripsync" / "tripsync.db"


@dataclasses.dataclass(frozen=True)
class GeoProfile:
    """Accuracy/timeout profile for one location request.

    Parameters
    ----------
    name : str
        Profile identifier.
    enable_high_accuracy : bool
        Ask the provider for its most precise fix.
    timeout : float
        Seconds to wait for a fix before failing with a timeout.
    maximum_age : float
        Seconds a cached fix stays acceptable. ``0`` disables the cache.
    """

    name: str
    enable_high_accuracy: bool
    timeout: float
    maximum_age: float


HIGH_ACCURACY = GeoProfile("high-accuracy", enable_high_accuracy=True, timeout=30.0, maximum_age=0.0)
CONTINUOUS_WATCH = GeoProfile("continuous-watch", enable_high_accuracy=True, timeout=30.0, maximum_age=5.0)
QUICK = GeoProfile("quick", enable_high_accuracy=False, timeout=5.0, maximum_age=60.0)

GEO_PROFILES: dict[str, GeoProfile] = {p.name: p for p in (HIGH_ACCURACY, CONTINUOUS_WATCH, QUICK)}


@dataclasses.dataclass(frozen=True)
class TrackingConfig:
    """Client configuration.

    Parameters
    ----------
    api_base_url : str
        Base URL of the REST API (``<api>/rides``, ``<api>/chat``).
    ws_url : str or None
        WebSocket endpoint. ``None`` disables the persistent channel.
    user_id : str or None
        Identity sent with ``auth`` on every channel (re)connection.
    auth_token : str or None
        Bearer token attached to REST requests.
    distance_filter_m : float
        Minimum movement in meters before a new sample is accepted.
    min_server_update_interval : float
        Seconds after which a sample is accepted regardless of distance,
        and the period of the live position push.
    history_length : int
        Number of accepted samples kept in memory for stats/ETA.
    gps_profile : GeoProfile
        Profile used while watching during a session.
    reconnect_interval : float
        Base reconnection delay in seconds.
    max_reconnect_attempts : int
        Reconnection is abandoned after this many attempts.
    heartbeat_interval : float
        Seconds between ``ping`` frames.
    batch_size : int
        Maximum number of positions per network call.
    sync_interval : float
        Seconds between periodic flushes while a session is active.
    final_flush_timeout : float
        Upper bound for the flush performed when a session stops.
    max_queue_attempts : int
        Failed attempts after which a queued side action is dropped.
    online_resync_delay : float
        Delay before flushing once connectivity comes back.
    request_timeout : float
        Total timeout for one REST request.
    db_path : Path
        Local SQLite database file.
    realtime_enabled : bool
        Connect the persistent channel when the client starts.
    """

    api_base_url: str = "http://localhost:8080/api"
    ws_url: str | None = "ws://localhost:8080/ws"
    user_id: str | None = None
    auth_token: str | None = None
    distance_filter_m: float = 10.0
    min_server_update_interval: float = 5.0
    history_length: int = 50
    gps_profile: GeoProfile = CONTINUOUS_WATCH
    reconnect_interval: float = 3.0
    max_reconnect_attempts: int = 10
    heartbeat_interval: float = 30.0
    batch_size: int = 50
    sync_interval: float = 10.0
    final_flush_timeout: float = 5.0
    max_queue_attempts: int = 3
    online_resync_delay: float = 1.0
    request_timeout: float = 15.0
    db_path: Path = dataclasses.field(default_factory=default_db_path)
    realtime_enabled: bool = True

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ConfigError(f"batch_size must be positive, got {self.batch_size}")
        if self.history_length <= 0:
            raise ConfigError(f"history_length must be positive, got {self.history_length}")
        if self.max_queue_attempts <= 0:
            raise ConfigError(f"max_queue_attempts must be positive, got {self.max_queue_attempts}")
        if self.distance_filter_m < 0:
            raise ConfigError("distance_filter_m must not be negative")

    @classmethod
    def from_env(cls, **overrides: Any) -> TrackingConfig:
        """Create configuration from ``TRIPSYNC_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "TRIPSYNC_API_BASE_URL": "api_base_url",
            "TRIPSYNC_WS_URL": "ws_url",
            "TRIPSYNC_USER_ID": "user_id",
            "TRIPSYNC_AUTH_TOKEN": "auth_token",
        }
        _ENV_FLOAT_MAP = {
            "TRIPSYNC_DISTANCE_FILTER_M": "distance_filter_m",
            "TRIPSYNC_MIN_SERVER_UPDATE_INTERVAL": "min_server_update_interval",
            "TRIPSYNC_RECONNECT_INTERVAL": "reconnect_interval",
            "TRIPSYNC_HEARTBEAT_INTERVAL": "heartbeat_interval",
            "TRIPSYNC_SYNC_INTERVAL": "sync_interval",
            "TRIPSYNC_FINAL_FLUSH_TIMEOUT": "final_flush_timeout",
            "TRIPSYNC_REQUEST_TIMEOUT": "request_timeout",
        }
        _ENV_INT_MAP = {
            "TRIPSYNC_HISTORY_LENGTH": "history_length",
            "TRIPSYNC_MAX_RECONNECT_ATTEMPTS": "max_reconnect_attempts",
            "TRIPSYNC_BATCH_SIZE": "batch_size",
            "TRIPSYNC_MAX_QUEUE_ATTEMPTS": "max_queue_attempts",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val
        try:
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = float(val)
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = int(val)
        except ValueError as exc:
            raise ConfigError(f"Invalid numeric TRIPSYNC_* value: {exc}") from exc

        profile_env = env.get("TRIPSYNC_GPS_PROFILE")
        if profile_env is not None:
            profile = GEO_PROFILES.get(profile_env.strip().lower())
            if profile is None:
                raise ConfigError(f"Unknown GPS profile {profile_env!r}")
            config_kwargs["gps_profile"] = profile

        db_env = env.get("TRIPSYNC_DB_PATH")
        if db_env is not None:
            config_kwargs["db_path"] = Path(db_env).expanduser()

        if "realtime_enabled" not in overrides:
            config_kwargs["realtime_enabled"] = _env_bool(env.get("TRIPSYNC_REALTIME_ENABLED"), True)

        # An empty WS URL means "no persistent channel"
        if config_kwargs.get("ws_url") == "":
            config_kwargs["ws_url"] = None

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
