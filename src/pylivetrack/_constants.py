"""Internal constants shared across the library."""

EARTH_RADIUS_KM = 6371.0

# ------------------------------------------------------------------
# Polyline encoding
# ------------------------------------------------------------------

POLYLINE_PRECISION = 5
POLYLINE_CHAR_OFFSET = 63
POLYLINE_CHUNK_BITS = 5
POLYLINE_CHUNK_MASK = 0x1F
POLYLINE_CONTINUATION_BIT = 0x20

# ------------------------------------------------------------------
# Tracking defaults
# ------------------------------------------------------------------

DEFAULT_OFF_ROUTE_THRESHOLD_M = 100.0
DEFAULT_REROUTE_COOLDOWN_S = 60.0
DEFAULT_ROUTE_LOG_CAPACITY = 10
DEFAULT_PROVIDER_TIMEOUT_S = 10.0
DEFAULT_ARRIVAL_ETA_MINUTES = 1
DEFAULT_ARRIVAL_RADIUS_KM = 0.05
DEFAULT_SIMULATION_INTERVAL_S = 3.0

# ------------------------------------------------------------------
# Cache keys and broadcast names
# ------------------------------------------------------------------

DETAILS_KEY_PREFIX = "details_"
LOCATION_KEY_PREFIX = "currentLoc_"
ROOM_PREFIX = "tracking_"

EVENT_LOCATION_UPDATE = "location_update"
EVENT_JOINED_TRACKING = "joined_tracking"

GOOGLE_DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"


def normalize_job_id(job_id: str) -> str:
    """Strip surrounding whitespace; job ids are compared and keyed in this form."""
    normalized = job_id.strip()
    if not normalized:
        raise ValueError("job_id must be non-empty")
    return normalized


def details_key(job_id: str) -> str:
    return f"{DETAILS_KEY_PREFIX}{job_id}"


def location_key(job_id: str) -> str:
    return f"{LOCATION_KEY_PREFIX}{job_id}"


def room_name(job_id: str) -> str:
    return f"{ROOM_PREFIX}{job_id}"
