"""Internal constants shared across the library."""

USER_AGENT = "tripsync/0.3"

#: Mean Earth radius used for raw GPS deltas, in meters.
EARTH_RADIUS_M = 6_371_000.0

MS_TO_KMH = 3.6

# ------------------------------------------------------------------
# ETA heuristics
# ------------------------------------------------------------------

DEFAULT_URBAN_SPEED_KMH = 30.0
MIN_ETA_SPEED_KMH = 5.0

# ------------------------------------------------------------------
# WebSocket
# ------------------------------------------------------------------

NORMAL_CLOSE_CODE = 1000
ABNORMAL_CLOSE_CODE = 1006
RECONNECT_BACKOFF_FACTOR = 1.5

# ------------------------------------------------------------------
# REST endpoints and actions
# ------------------------------------------------------------------

RIDES_ENDPOINT = "rides"
CHAT_ENDPOINT = "chat"
ACTION_POSITION = "position"
ACTION_BATCH_POSITIONS = "batch-positions"
ACTION_SEND_MESSAGE = "send"

#: Default age after which synced local data is purged.
DEFAULT_PURGE_AGE_SECONDS = 24 * 3600

#: Samples kept in memory for delivery while the local store is unavailable.
MEMORY_BUFFER_LIMIT = 5000
