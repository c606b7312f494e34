"""Route geometry and route change history models."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from pydantic import Field

from pylivetrack.geo.geometry import GeoPoint, route_length_km
from pylivetrack.geo.polyline import decode, encode
from pylivetrack.models._base import TrackBaseModel, UtcDatetime, utcnow


@dataclass(frozen=True)
class Route:
    """Decoded route geometry plus trip-level totals.

    Immutable: a reroute installs a new ``Route`` instead of mutating the
    current one.
    """

    polyline: str
    points: tuple[GeoPoint, ...]
    total_distance_km: float
    total_estimated_minutes: float

    def __post_init__(self) -> None:
        if self.total_distance_km < 0:
            object.__setattr__(self, "total_distance_km", 0.0)
        if self.total_estimated_minutes < 0:
            object.__setattr__(self, "total_estimated_minutes", 0.0)

    @classmethod
    def from_polyline(
        cls,
        polyline: str,
        total_distance_km: float,
        total_estimated_minutes: float,
    ) -> Route:
        """Decode *polyline*; raises ``MalformedPolylineError`` on bad input."""
        return cls(polyline, tuple(decode(polyline)), total_distance_km, total_estimated_minutes)

    @classmethod
    def from_points(
        cls,
        points: Sequence[tuple[float, float]],
        total_distance_km: float | None = None,
        total_estimated_minutes: float = 0.0,
    ) -> Route:
        """Build a route from raw points.

        Points are normalized through the polyline codec so the stored
        geometry always matches what a decode of the polyline yields.
        When *total_distance_km* is omitted the geometric length is used.
        """
        polyline = encode(points)
        decoded = tuple(decode(polyline))
        distance = route_length_km(decoded) if total_distance_km is None else total_distance_km
        return cls(polyline, decoded, distance, total_estimated_minutes)

    @property
    def is_empty(self) -> bool:
        return not self.points

    @property
    def origin(self) -> GeoPoint | None:
        return self.points[0] if self.points else None

    @property
    def destination(self) -> GeoPoint | None:
        return self.points[-1] if self.points else None

    @property
    def speed_per_minute(self) -> float:
        """Average trip speed in km/minute; ``0`` when duration is zero."""
        if self.total_estimated_minutes == 0:
            return 0.0
        return self.total_distance_km / self.total_estimated_minutes


class RouteChangeReason(StrEnum):
    INITIAL = "initial"
    REROUTE = "reroute"
    OFF_ROUTE = "off_route"
    MANUAL_REROUTE = "manual_reroute"


class RouteChangeLogEntry(TrackBaseModel):
    """One entry of a job's bounded polyline history."""

    polyline: str
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    reason: RouteChangeReason
    distance_from_previous_route_meters: float | None = None
