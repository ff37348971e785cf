"""Custom exception hierarchy for tripsync."""

from __future__ import annotations


class TripSyncError(Exception):
    """Base exception for all tripsync errors."""


class ConfigError(TripSyncError):
    """Invalid or missing configuration."""


class TrackingStateError(TripSyncError):
    """Operation not valid in the current tracking state."""


class GeoError(TripSyncError):
    """Location sensor failure.

    ``code`` mirrors the platform error names (``UNSUPPORTED``,
    ``PERMISSION_DENIED``, ``POSITION_UNAVAILABLE``, ``TIMEOUT``).
    """

    code: str = "UNKNOWN"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code.replace("_", " ").lower())


class GeoUnsupportedError(GeoError):
    """No location provider is available on this platform."""

    code = "UNSUPPORTED"


class GeoPermissionDeniedError(GeoError):
    """The user refused location access."""

    code = "PERMISSION_DENIED"


class GeoUnavailableError(GeoError):
    """The provider could not determine a position."""

    code = "POSITION_UNAVAILABLE"


class GeoTimeoutError(GeoError):
    """No fix arrived within the profile timeout."""

    code = "TIMEOUT"


class StoreError(TripSyncError):
    """Local durable store unavailable or a statement failed."""


class TransportError(TripSyncError):
    """Delivery failure (network, non-2xx, invalid JSON, closed channel)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class DeliveryRejectedError(TransportError):
    """Server answered ``{"success": false}``."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
        server_message: str | None = None,
    ) -> None:
        self.server_message = server_message
        super().__init__(message, status_code=status_code, endpoint=endpoint)


class ChannelError(TransportError):
    """Persistent channel not connected or send failed."""
