"""Remaining distance and ETA estimation against a route."""

from __future__ import annotations

import math
from dataclasses import dataclass

from pylivetrack._constants import DEFAULT_ARRIVAL_ETA_MINUTES, DEFAULT_ARRIVAL_RADIUS_KM
from pylivetrack.exceptions import EmptyRouteError
from pylivetrack.geo.geometry import GeoPoint, haversine_km, nearest_point_on_route, route_length_km
from pylivetrack.models.route import Route


@dataclass(frozen=True, slots=True)
class ProgressEstimate:
    """Remaining distance/ETA for one position.

    ``remaining_distance_km`` and ``eta_minutes`` are ``None`` when the
    route has no points and nothing can be estimated.
    """

    remaining_distance_km: float | None
    eta_minutes: int | None
    arrived: bool = False
    segment_index: int | None = None
    distance_from_route_km: float | None = None

    @property
    def is_known(self) -> bool:
        return self.remaining_distance_km is not None


UNKNOWN_PROGRESS = ProgressEstimate(remaining_distance_km=None, eta_minutes=None)


def speed_per_minute(total_distance_km: float, total_estimated_minutes: float) -> float:
    """Average speed in km/minute, ``0`` for a zero duration."""
    if total_estimated_minutes == 0:
        return 0.0
    return total_distance_km / total_estimated_minutes


def estimate_eta_minutes(remaining_distance_km: float, speed: float) -> int:
    """Minutes to cover *remaining_distance_km*, rounded up; ``0`` at zero speed."""
    if speed == 0:
        return 0
    return math.ceil(remaining_distance_km / speed)


def remaining_distance_km(position: GeoPoint, points: tuple[GeoPoint, ...] | list[GeoPoint]) -> tuple[float, int, float]:
    """Distance left along *points* from the projection of *position*.

    Returns ``(remaining_km, segment_index, distance_from_route_km)``.
    Remaining distance is the off-route leg to the projected point, plus
    the rest of that segment, plus every later segment.
    """
    nearest = nearest_point_on_route(position, points)
    if len(points) == 1:
        return nearest.distance_km, 0, nearest.distance_km

    segment_end = GeoPoint(*points[nearest.index + 1])
    remaining = nearest.distance_km
    remaining += haversine_km(nearest.projection, segment_end)
    remaining += route_length_km(points, start=nearest.index + 1)
    return remaining, nearest.index, nearest.distance_km


def estimate_progress(
    position: GeoPoint,
    route: Route,
    *,
    arrival_eta_minutes: int = DEFAULT_ARRIVAL_ETA_MINUTES,
    arrival_radius_km: float = DEFAULT_ARRIVAL_RADIUS_KM,
) -> ProgressEstimate:
    """Estimate remaining distance and ETA for *position* on *route*.

    An ETA at or below *arrival_eta_minutes* means the agent has arrived;
    remaining distance and ETA are then forced to ``0``.  When the trip has
    no usable speed the ETA is always ``0``, so arrival is decided by
    *arrival_radius_km* instead.
    """
    try:
        remaining, index, off_route_km = remaining_distance_km(position, route.points)
    except EmptyRouteError:
        return UNKNOWN_PROGRESS

    speed = speed_per_minute(route.total_distance_km, route.total_estimated_minutes)
    eta = estimate_eta_minutes(remaining, speed)

    arrived = eta <= arrival_eta_minutes if speed > 0 else remaining <= arrival_radius_km
    if arrived:
        return ProgressEstimate(0.0, 0, True, index, off_route_km)

    return ProgressEstimate(round(remaining, 2), eta, False, index, off_route_km)
