"""Off-route classification."""

from __future__ import annotations

from collections.abc import Sequence
from typing import NamedTuple

from pylivetrack._constants import DEFAULT_OFF_ROUTE_THRESHOLD_M
from pylivetrack.geo.geometry import GeoPoint, nearest_point_on_route


class OffRouteCheck(NamedTuple):
    is_off_route: bool
    distance_m: float
    segment_index: int


def check_off_route(
    position: GeoPoint,
    points: Sequence[GeoPoint],
    threshold_m: float = DEFAULT_OFF_ROUTE_THRESHOLD_M,
) -> OffRouteCheck:
    """Classify *position* against the route.

    Off-route iff the distance to the nearest segment exceeds
    *threshold_m*.  Raises ``EmptyRouteError`` for a route without points.
    """
    nearest = nearest_point_on_route(position, points)
    distance_m = nearest.distance_km * 1000.0
    return OffRouteCheck(distance_m > threshold_m, distance_m, nearest.index)
