"""Geometry layer: polyline codec and spherical helpers."""

from pylivetrack.geo.geometry import (
    GeoPoint,
    NearestSegment,
    SegmentProjection,
    bearing_deg,
    haversine_km,
    interpolate,
    nearest_point_on_route,
    offset_point,
    project_onto_segment,
    route_length_km,
)
from pylivetrack.geo.polyline import decode, encode

__all__ = [
    "GeoPoint",
    "NearestSegment",
    "SegmentProjection",
    "bearing_deg",
    "decode",
    "encode",
    "haversine_km",
    "interpolate",
    "nearest_point_on_route",
    "offset_point",
    "project_onto_segment",
    "route_length_km",
]
