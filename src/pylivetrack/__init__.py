"""pylivetrack - Async live delivery tracking and reroute engine."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pylivetrack")
except PackageNotFoundError:
    __version__ = "0+local"
from pylivetrack._cache import InMemoryCache, KeyValueCache, RedisCache
from pylivetrack.broadcast import Broadcaster, Connection, QueueConnection, TrackingBroadcaster
from pylivetrack.config import MqttSettings, TrackerConfig
from pylivetrack.exceptions import (
    CacheError,
    ConfigError,
    EmptyRouteError,
    GeometryError,
    InvalidTransitionError,
    JobSessionNotFoundError,
    LiveTrackError,
    MalformedPolylineError,
    RouteProviderError,
)
from pylivetrack.geo import GeoPoint, decode, encode, haversine_km, nearest_point_on_route
from pylivetrack.models import (
    LiveState,
    PushResult,
    Route,
    RouteChangeLogEntry,
    RouteChangeReason,
    SessionRecord,
    TrackingUpdate,
)
from pylivetrack.routing import GoogleDirectionsProvider, RouteArchive, RouteProvider, RouteResult
from pylivetrack.simulation import (
    DEMO_DISTANCE_KM,
    DEMO_ESTIMATED_MINUTES,
    DEMO_POLYLINE,
    DEMO_ROUTE,
    SimulationRegistry,
    Waypoint,
    build_off_route_waypoints,
)
from pylivetrack.state.machine import SessionState
from pylivetrack.tracker import LiveTracker, RerouteStats
from pylivetrack.tracking import RerouteOutcome, RerouteThrottle, check_off_route, estimate_progress

__all__ = [
    "__version__",
    "Broadcaster",
    "CacheError",
    "ConfigError",
    "Connection",
    "DEMO_DISTANCE_KM",
    "DEMO_ESTIMATED_MINUTES",
    "DEMO_POLYLINE",
    "DEMO_ROUTE",
    "EmptyRouteError",
    "GeoPoint",
    "GeometryError",
    "GoogleDirectionsProvider",
    "InMemoryCache",
    "InvalidTransitionError",
    "JobSessionNotFoundError",
    "KeyValueCache",
    "LiveState",
    "LiveTrackError",
    "LiveTracker",
    "MalformedPolylineError",
    "MqttSettings",
    "PushResult",
    "QueueConnection",
    "RedisCache",
    "RerouteOutcome",
    "RerouteStats",
    "RerouteThrottle",
    "Route",
    "RouteArchive",
    "RouteChangeLogEntry",
    "RouteChangeReason",
    "RouteProvider",
    "RouteProviderError",
    "RouteResult",
    "SessionRecord",
    "SessionState",
    "SimulationRegistry",
    "TrackerConfig",
    "TrackingBroadcaster",
    "TrackingUpdate",
    "Waypoint",
    "build_off_route_waypoints",
    "check_off_route",
    "decode",
    "encode",
    "estimate_progress",
    "haversine_km",
    "nearest_point_on_route",
]
