"""Tracking algorithms: progress estimation, off-route detection, reroute throttling."""

from pylivetrack.tracking.off_route import OffRouteCheck, check_off_route
from pylivetrack.tracking.progress import (
    ProgressEstimate,
    estimate_eta_minutes,
    estimate_progress,
    remaining_distance_km,
    speed_per_minute,
)
from pylivetrack.tracking.throttle import RerouteOutcome, RerouteThrottle

__all__ = [
    "OffRouteCheck",
    "ProgressEstimate",
    "RerouteOutcome",
    "RerouteThrottle",
    "check_off_route",
    "estimate_eta_minutes",
    "estimate_progress",
    "remaining_distance_km",
    "speed_per_minute",
]
