"""Time-windowed gate in front of the routing provider."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum

from pylivetrack._constants import DEFAULT_REROUTE_COOLDOWN_S
from pylivetrack.models._base import utcnow


class RerouteOutcome(StrEnum):
    NOT_NEEDED = "not_needed"
    REROUTED = "rerouted"
    THROTTLED = "throttled"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"


class RerouteThrottle:
    """Remembers the last successful reroute per job.

    A reroute is allowed when ``now - last_reroute_at >= cooldown``.  Being
    throttled is an expected outcome, not an error: the caller keeps using
    the current route until the window opens again.
    """

    def __init__(
        self,
        *,
        cooldown: timedelta = timedelta(seconds=DEFAULT_REROUTE_COOLDOWN_S),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cooldown = cooldown
        self._clock = clock
        self._last: dict[str, datetime] = {}

    @property
    def cooldown(self) -> timedelta:
        return self._cooldown

    def last_reroute_at(self, job_id: str) -> datetime | None:
        return self._last.get(job_id)

    def allows(self, job_id: str) -> bool:
        last = self._last.get(job_id)
        if last is None:
            return True
        return self._clock() - last >= self._cooldown

    def remaining(self, job_id: str) -> timedelta:
        """Time until the next reroute is permitted (zero if allowed now)."""
        last = self._last.get(job_id)
        if last is None:
            return timedelta(0)
        return max(timedelta(0), self._cooldown - (self._clock() - last))

    def record(self, job_id: str, at: datetime | None = None) -> datetime:
        stamp = at if at is not None else self._clock()
        self._last[job_id] = stamp
        return stamp

    def seed(self, job_id: str, at: datetime | None) -> None:
        """Restore state from a cached session without overriding newer data."""
        if at is None:
            return
        current = self._last.get(job_id)
        if current is None or at > current:
            self._last[job_id] = at

    def forget(self, job_id: str) -> None:
        self._last.pop(job_id, None)
