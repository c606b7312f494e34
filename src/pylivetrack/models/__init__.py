"""Data models for tracking sessions and broadcast payloads."""

from pylivetrack.models._base import TrackBaseModel, UtcDatetime, utcnow
from pylivetrack.models.route import Route, RouteChangeLogEntry, RouteChangeReason
from pylivetrack.models.tracking import (
    LiveState,
    LocationPayload,
    PushResult,
    SessionRecord,
    TrackingUpdate,
)

__all__ = [
    "LiveState",
    "LocationPayload",
    "PushResult",
    "Route",
    "RouteChangeLogEntry",
    "RouteChangeReason",
    "SessionRecord",
    "TrackBaseModel",
    "TrackingUpdate",
    "UtcDatetime",
    "utcnow",
]
