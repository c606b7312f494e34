"""Live tracking models: cached session state and broadcast payloads."""

from __future__ import annotations

from pydantic import Field, field_validator

from pylivetrack._constants import normalize_job_id
from pylivetrack.models._base import TrackBaseModel, UtcDatetime, utcnow
from pylivetrack.models.route import RouteChangeLogEntry
from pylivetrack.state.machine import SessionState


class LiveState(TrackBaseModel):
    """Last accepted position of a job with the estimate derived from it.

    Stored as a single blob so readers never observe a partial write.
    ``remaining_distance_km`` and ``eta_minutes`` are ``None`` when the
    route could not be evaluated.
    """

    lat: float
    lng: float
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    remaining_distance_km: float | None = None
    eta_minutes: int | None = None
    is_off_route: bool = False
    last_reroute_at: UtcDatetime | None = None
    polyline: str | None = None


class SessionRecord(TrackBaseModel):
    """Authoritative per-job route session, cached under ``details_{jobId}``."""

    job_id: str
    state: SessionState = SessionState.ACTIVE
    polyline: str
    total_distance_km: float = Field(default=0.0, ge=0)
    total_estimated_minutes: float = Field(default=0.0, ge=0)
    route_log: list[RouteChangeLogEntry] = Field(default_factory=list)
    last_reroute_at: UtcDatetime | None = None
    started_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @field_validator("job_id")
    @classmethod
    def _normalize_job_id(cls, value: str) -> str:
        return normalize_job_id(value)


class PushResult(TrackBaseModel):
    """Outcome of a single position ping."""

    job_id: str
    remaining_distance_km: float | None
    eta_minutes: int | None
    is_off_route: bool
    rerouted: bool
    polyline: str
    state: SessionState
    arrived: bool = False
    distance_from_route_meters: float | None = None


class LocationPayload(TrackBaseModel):
    lat: float
    lng: float
    polyline: str | None
    remaining_distance_km: float | None
    eta_minutes: int | None
    timestamp: UtcDatetime


class TrackingUpdate(TrackBaseModel):
    """Broadcast message delivered to a job's subscribers."""

    job_id: str
    location: LocationPayload
    off_route: bool = False
    rerouted: bool = False

    @classmethod
    def from_live_state(cls, job_id: str, live: LiveState, *, rerouted: bool = False) -> TrackingUpdate:
        return cls(
            job_id=job_id,
            location=LocationPayload(
                lat=live.lat,
                lng=live.lng,
                polyline=live.polyline,
                remaining_distance_km=live.remaining_distance_km,
                eta_minutes=live.eta_minutes,
                timestamp=live.timestamp,
            ),
            off_route=live.is_off_route,
            rerouted=rerouted,
        )
