"""Route session store backed by a key-value cache.

This is the only component that reads or writes a job's cached route and
live state.  Writers serialize on :meth:`RouteSessionStore.locked`.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from pylivetrack._cache import KeyValueCache
from pylivetrack._constants import DEFAULT_ROUTE_LOG_CAPACITY, details_key, location_key
from pylivetrack.exceptions import CacheError, JobSessionNotFoundError
from pylivetrack.models.route import Route, RouteChangeLogEntry
from pylivetrack.models.tracking import LiveState, SessionRecord
from pylivetrack.state.history import RouteChangeLog

_logger = logging.getLogger(__name__)


def _parse(model: type[SessionRecord] | type[LiveState], key: str, raw: dict[str, Any]) -> Any:
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise CacheError(f"Cached value for {key} does not match {model.__name__}: {exc}") from exc


class RouteSessionStore:
    """Per-job route session persistence and write serialization."""

    def __init__(
        self,
        cache: KeyValueCache,
        *,
        ttl: int | None = None,
        log_capacity: int = DEFAULT_ROUTE_LOG_CAPACITY,
    ) -> None:
        self._cache = cache
        self._ttl = ttl
        self._log_capacity = log_capacity
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def log_capacity(self) -> int:
        return self._log_capacity

    def locked(self, job_id: str) -> asyncio.Lock:
        """Return the writer lock for *job_id*.

        Locks are created on demand and dropped once nobody references them,
        so idle jobs do not accumulate lock objects.
        """
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Session record
    # ------------------------------------------------------------------

    async def load(self, job_id: str) -> SessionRecord | None:
        key = details_key(job_id)
        raw = await self._cache.get_json(key)
        if raw is None:
            return None
        record: SessionRecord = _parse(SessionRecord, key, raw)
        return record

    async def require(self, job_id: str) -> SessionRecord:
        record = await self.load(job_id)
        if record is None:
            raise JobSessionNotFoundError(job_id)
        return record

    async def save(self, record: SessionRecord) -> None:
        await self._cache.set_json(details_key(record.job_id), record.to_wire(), self._ttl)

    async def create(self, record: SessionRecord) -> SessionRecord:
        """Install a fresh session, discarding any previous live state."""
        await self._cache.delete(location_key(record.job_id))
        await self.save(record)
        _logger.debug("Route session created job=%s polyline_chars=%d", record.job_id, len(record.polyline))
        return record

    async def delete(self, job_id: str) -> bool:
        removed = await self._cache.delete(details_key(job_id), location_key(job_id))
        return removed > 0

    def route_of(self, record: SessionRecord) -> Route:
        """Decode the record's current route (``MalformedPolylineError`` on bad data)."""
        return Route.from_polyline(record.polyline, record.total_distance_km, record.total_estimated_minutes)

    def with_route_changes(
        self,
        record: SessionRecord,
        entries: Iterable[RouteChangeLogEntry],
        **updates: Any,
    ) -> SessionRecord:
        """Copy of *record* with *entries* appended to its bounded route log."""
        log = RouteChangeLog(record.route_log, capacity=self._log_capacity)
        log.extend(entries)
        return record.model_copy(update={"route_log": log.to_list(), **updates})

    # ------------------------------------------------------------------
    # Live state
    # ------------------------------------------------------------------

    async def get_live_state(self, job_id: str) -> LiveState | None:
        key = location_key(job_id)
        raw = await self._cache.get_json(key)
        if raw is None:
            return None
        live: LiveState = _parse(LiveState, key, raw)
        return live

    async def save_live_state(self, job_id: str, live: LiveState) -> None:
        await self._cache.set_json(location_key(job_id), live.to_wire(), self._ttl)
