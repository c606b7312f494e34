"""Custom exception hierarchy for pylivetrack."""

from __future__ import annotations


class LiveTrackError(Exception):
    """Base exception for all pylivetrack errors."""


class ConfigError(LiveTrackError):
    """Invalid or missing configuration."""


class GeometryError(LiveTrackError):
    """Route geometry could not be decoded or evaluated."""


class MalformedPolylineError(GeometryError):
    """Encoded polyline is truncated or contains invalid characters.

    Fatal to the single decode call only.  Callers are expected to keep
    using the last known-good route.
    """

    def __init__(self, message: str, *, position: int | None = None) -> None:
        self.position = position
        super().__init__(message)


class EmptyRouteError(GeometryError):
    """Route has no points, so nothing can be projected or estimated."""


class RouteProviderError(LiveTrackError):
    """External routing provider failed (network, timeout, 4xx/5xx, no route).

    Non-fatal: the session stays on its current route and the reroute is
    retried on the next natural off-route trigger.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider: str = "",
    ) -> None:
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


class JobSessionNotFoundError(LiveTrackError):
    """No route session exists for the requested job."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"No tracking session for job {job_id!r}")


class InvalidTransitionError(LiveTrackError):
    """Session state machine rejected a transition."""


class CacheError(LiveTrackError):
    """Backing key-value store returned data that could not be used."""
