"""Spherical distance and segment projection helpers.

Projection is done with a linear parametrization in degree space and the
resulting distance is measured with the haversine formula.  This is a
planar approximation that is accurate enough at sub-kilometer segment
lengths, which is what routing polylines contain in practice.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import NamedTuple

from pylivetrack._constants import EARTH_RADIUS_KM
from pylivetrack.exceptions import EmptyRouteError


class GeoPoint(NamedTuple):
    """A WGS84 coordinate in decimal degrees."""

    lat: float
    lng: float


class SegmentProjection(NamedTuple):
    """Closest point on a segment and its distance from the query point."""

    point: GeoPoint
    t: float
    distance_km: float


class NearestSegment(NamedTuple):
    """Result of a nearest-segment search over a route."""

    index: int
    distance_km: float
    projection: GeoPoint
    t: float


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points in kilometers."""
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def project_onto_segment(p: GeoPoint, a: GeoPoint, b: GeoPoint) -> SegmentProjection:
    """Project *p* onto the segment ``[a, b]``.

    ``t = clamp(dot(p - a, b - a) / |b - a|^2, 0, 1)``.  A degenerate
    segment (``a == b``) projects onto ``a``.
    """
    d_lat = b.lat - a.lat
    d_lng = b.lng - a.lng
    length_sq = d_lat * d_lat + d_lng * d_lng
    if length_sq == 0:
        return SegmentProjection(a, 0.0, haversine_km(p, a))

    t = ((p.lat - a.lat) * d_lat + (p.lng - a.lng) * d_lng) / length_sq
    t = max(0.0, min(1.0, t))
    projected = GeoPoint(a.lat + t * d_lat, a.lng + t * d_lng)
    return SegmentProjection(projected, t, haversine_km(p, projected))


def nearest_point_on_route(p: GeoPoint, points: Sequence[GeoPoint]) -> NearestSegment:
    """Find the route segment closest to *p*.

    Scans every consecutive pair and keeps the first global minimum.  A
    single-point route has no segments; the distance to that point is
    returned with index ``0``.

    Raises
    ------
    EmptyRouteError
        If *points* is empty.
    """
    if not points:
        raise EmptyRouteError("Route has no points")
    if len(points) == 1:
        only = GeoPoint(*points[0])
        return NearestSegment(0, haversine_km(p, only), only, 0.0)

    best: NearestSegment | None = None
    for index in range(len(points) - 1):
        projection = project_onto_segment(p, GeoPoint(*points[index]), GeoPoint(*points[index + 1]))
        if best is None or projection.distance_km < best.distance_km:
            best = NearestSegment(index, projection.distance_km, projection.point, projection.t)
    assert best is not None  # noqa: S101
    return best


def route_length_km(points: Sequence[GeoPoint], start: int = 0) -> float:
    """Sum of segment lengths from ``points[start]`` to the last point."""
    total = 0.0
    for index in range(max(start, 0), len(points) - 1):
        total += haversine_km(GeoPoint(*points[index]), GeoPoint(*points[index + 1]))
    return total


def interpolate(a: GeoPoint, b: GeoPoint, fraction: float) -> GeoPoint:
    """Linear interpolation between two points in degree space."""
    return GeoPoint(a.lat + (b.lat - a.lat) * fraction, a.lng + (b.lng - a.lng) * fraction)


def bearing_deg(a: GeoPoint, b: GeoPoint) -> float:
    """Initial great-circle bearing from *a* to *b* in degrees (0-360)."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lng = math.radians(b.lng - a.lng)
    y = math.sin(d_lng) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(d_lng)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def offset_point(p: GeoPoint, bearing: float, meters: float) -> GeoPoint:
    """Point reached by travelling *meters* from *p* along *bearing* (degrees)."""
    angular = (meters / 1000.0) / EARTH_RADIUS_KM
    theta = math.radians(bearing)
    lat1 = math.radians(p.lat)
    lng1 = math.radians(p.lng)
    lat2 = math.asin(math.sin(lat1) * math.cos(angular) + math.cos(lat1) * math.sin(angular) * math.cos(theta))
    lng2 = lng1 + math.atan2(
        math.sin(theta) * math.sin(angular) * math.cos(lat1),
        math.cos(angular) - math.sin(lat1) * math.sin(lat2),
    )
    return GeoPoint(math.degrees(lat2), (math.degrees(lng2) + 540.0) % 360.0 - 180.0)
