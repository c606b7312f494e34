"""High-level async tracker for live delivery jobs.

Usage::

    async with LiveTracker(TrackerConfig.from_env()) as tracker:
        await tracker.start_session("job-1", polyline, 5.2, 15)
        result = await tracker.push_position("job-1", 1.1258, 104.0515)
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

import aiohttp

from pylivetrack._cache import InMemoryCache, KeyValueCache, RedisCache
from pylivetrack._constants import normalize_job_id
from pylivetrack._mqtt import MqttPing, MqttRuntime, MqttTopicConnection
from pylivetrack.broadcast import Broadcaster, Connection, TrackingBroadcaster
from pylivetrack.config import TrackerConfig
from pylivetrack.exceptions import (
    EmptyRouteError,
    GeometryError,
    JobSessionNotFoundError,
    LiveTrackError,
    RouteProviderError,
)
from pylivetrack.geo.geometry import GeoPoint, route_length_km
from pylivetrack.geo.polyline import decode
from pylivetrack.models._base import utcnow
from pylivetrack.models.route import Route, RouteChangeLogEntry, RouteChangeReason
from pylivetrack.models.tracking import LiveState, PushResult, SessionRecord, TrackingUpdate
from pylivetrack.routing import GoogleDirectionsProvider, RouteArchive, RouteProvider
from pylivetrack.simulation import DEMO_ESTIMATED_MINUTES, DEMO_ROUTE, SimulationHandle, SimulationRegistry, Waypoint
from pylivetrack.state.machine import SessionState, transition
from pylivetrack.state.store import RouteSessionStore
from pylivetrack.tracking.off_route import OffRouteCheck, check_off_route
from pylivetrack.tracking.progress import UNKNOWN_PROGRESS, estimate_progress
from pylivetrack.tracking.throttle import RerouteOutcome, RerouteThrottle

_logger = logging.getLogger(__name__)


@dataclasses.dataclass
class RerouteStats:
    """Counters for reroute attempts since the tracker was created."""

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    throttled: int = 0

    def as_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class _PingContext:
    """Mutable working state for one ping while the job lock is held."""

    record: SessionRecord
    route: Route | None
    state: SessionState
    entries: list[RouteChangeLogEntry] = dataclasses.field(default_factory=list)
    last_reroute_at: datetime | None = None


class LiveTracker:
    """Tracks delivery jobs against their routes and fans out live updates.

    Parameters
    ----------
    config : TrackerConfig, optional
        Tracker settings.  Defaults to :meth:`TrackerConfig.from_env`.
    cache : KeyValueCache, optional
        Backing store.  Defaults to Redis when ``config.redis_url`` is set,
        otherwise an in-process cache.
    provider : RouteProvider, optional
        Routing provider.  Defaults to Google Directions when an API key is
        configured; without one, rerouting is unavailable.
    broadcaster : Broadcaster, optional
        Room registry used for fan-out.  Defaults to an in-process
        :class:`TrackingBroadcaster`.
    archive : RouteArchive, optional
        Durable route copy written after each successful reroute.
    clock : callable, optional
        Returns the current UTC time.
    http_session : aiohttp.ClientSession, optional
        Shared HTTP session for the default provider.
    """

    def __init__(
        self,
        config: TrackerConfig | None = None,
        *,
        cache: KeyValueCache | None = None,
        provider: RouteProvider | None = None,
        broadcaster: Broadcaster | None = None,
        archive: RouteArchive | None = None,
        clock: Callable[[], datetime] = utcnow,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config or TrackerConfig.from_env()
        self._owned_cache: RedisCache | None = None
        if cache is None:
            if self._config.redis_url:
                self._owned_cache = RedisCache.from_url(self._config.redis_url)
                cache = self._owned_cache
            else:
                cache = InMemoryCache()
        self._cache = cache
        self._store = RouteSessionStore(
            cache,
            ttl=self._config.cache_ttl_s,
            log_capacity=self._config.route_log_capacity,
        )
        self._clock = clock
        self._throttle = RerouteThrottle(
            cooldown=timedelta(seconds=self._config.reroute_cooldown_s),
            clock=clock,
        )
        self._provider = provider
        self._archive = archive
        self._broadcaster: Broadcaster = broadcaster or TrackingBroadcaster()
        self._simulations = SimulationRegistry(self._simulated_push, self._finish_session)
        self._external_session = http_session is not None
        self._http_session = http_session
        self._mqtt_runtime: MqttRuntime | None = None
        self._mqtt_connection: MqttTopicConnection | None = None
        self._ping_tasks: set[asyncio.Task[None]] = set()
        self.stats = RerouteStats()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> LiveTracker:
        if self._provider is None and self._config.google_maps_api_key:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._provider = GoogleDirectionsProvider(
                self._config.google_maps_api_key,
                self._http_session,
                url=self._config.directions_url,
                timeout=self._config.provider_timeout_s,
            )
        if self._provider is None:
            _logger.warning("No routing provider configured; off-route jobs will not be rerouted")
        if self._config.mqtt_enabled:
            self._start_mqtt()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self._simulations.stop_all()
        for task in list(self._ping_tasks):
            task.cancel()
        if self._ping_tasks:
            await asyncio.gather(*self._ping_tasks, return_exceptions=True)
        self._stop_mqtt()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        if self._owned_cache is not None:
            await self._owned_cache.close()

    @property
    def config(self) -> TrackerConfig:
        return self._config

    @property
    def store(self) -> RouteSessionStore:
        return self._store

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    @property
    def simulations(self) -> SimulationRegistry:
        return self._simulations

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(
        self,
        job_id: str,
        route: str | Sequence[tuple[float, float]],
        total_distance_km: float | None = None,
        total_estimated_minutes: float = 0.0,
    ) -> SessionRecord:
        """Cache *route* for *job_id* and begin tracking.

        *route* is an encoded polyline or a sequence of ``(lat, lng)``
        points.  Without *total_distance_km* the route's geometric length is
        used.  Starting a job again replaces its previous session.

        Raises
        ------
        MalformedPolylineError
            If *route* is a polyline that cannot be decoded.
        EmptyRouteError
            If the route has no points.
        """
        job_id = normalize_job_id(job_id)
        if isinstance(route, str):
            points = decode(route)
            distance = route_length_km(points) if total_distance_km is None else total_distance_km
            parsed = Route(route, tuple(points), distance, total_estimated_minutes)
        else:
            parsed = Route.from_points(route, total_distance_km, total_estimated_minutes)
        if parsed.is_empty:
            raise EmptyRouteError(f"Route for job {job_id!r} has no points")

        now = self._clock()
        record = SessionRecord(
            job_id=job_id,
            state=transition(SessionState.NOT_STARTED, SessionState.ACTIVE),
            polyline=parsed.polyline,
            total_distance_km=parsed.total_distance_km,
            total_estimated_minutes=parsed.total_estimated_minutes,
            route_log=[RouteChangeLogEntry(polyline=parsed.polyline, timestamp=now, reason=RouteChangeReason.INITIAL)],
            started_at=now,
            updated_at=now,
        )
        async with self._store.locked(record.job_id):
            await self._store.create(record)
            self._throttle.forget(record.job_id)

        if self._mqtt_connection is not None:
            await self._broadcaster.join(record.job_id, self._mqtt_connection)
        _logger.info(
            "Tracking started job=%s points=%d distance=%.2fkm duration=%.0fmin",
            record.job_id,
            len(parsed.points),
            parsed.total_distance_km,
            parsed.total_estimated_minutes,
        )
        return record

    async def stop_session(self, job_id: str) -> SessionRecord | None:
        """Stop tracking *job_id*.

        Any simulation for the job is cancelled first, then both cached keys
        are evicted.  Returns the final record in state ``finished``, or
        ``None`` when no session existed.
        """
        job_id = normalize_job_id(job_id)
        await self._simulations.stop(job_id)
        return await self._finish_session(job_id)

    async def _finish_session(self, job_id: str) -> SessionRecord | None:
        async with self._store.locked(job_id):
            record = await self._store.load(job_id)
            await self._store.delete(job_id)
            self._throttle.forget(job_id)
        self._broadcaster.close_room(job_id)
        if record is None:
            return None
        final = record.model_copy(
            update={
                "state": transition(record.state, SessionState.FINISHED),
                "updated_at": self._clock(),
            }
        )
        _logger.info("Tracking finished job=%s", job_id)
        return final

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_current_location(self, job_id: str) -> LiveState | None:
        """Last accepted position of *job_id*, ``None`` if nothing was pushed."""
        return await self._store.get_live_state(normalize_job_id(job_id))

    async def get_session(self, job_id: str) -> SessionRecord | None:
        return await self._store.load(normalize_job_id(job_id))

    async def get_state(self, job_id: str) -> SessionState:
        record = await self._store.load(normalize_job_id(job_id))
        return record.state if record is not None else SessionState.NOT_STARTED

    async def get_route_log(self, job_id: str) -> list[RouteChangeLogEntry]:
        record = await self._store.require(normalize_job_id(job_id))
        return list(record.route_log)

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    async def subscribe(self, job_id: str, connection: Connection) -> None:
        await self._broadcaster.join(normalize_job_id(job_id), connection)

    def unsubscribe(self, job_id: str, connection: Connection) -> bool:
        return self._broadcaster.leave(normalize_job_id(job_id), connection)

    # ------------------------------------------------------------------
    # Position pipeline
    # ------------------------------------------------------------------

    async def push_position(
        self,
        job_id: str,
        lat: float,
        lng: float,
        *,
        polyline: str | None = None,
        off_route_hint: bool | None = None,
    ) -> PushResult:
        """Accept a position ping for *job_id*.

        The ping is checked against the cached route, rerouted through the
        provider when off-route and the throttle allows, estimated, stored
        and broadcast.  The whole pipeline runs under the job's lock.

        Parameters
        ----------
        polyline : str, optional
            Route chosen by the client.  Installed as a manual reroute; no
            provider reroute happens on the same ping.
        off_route_hint : bool, optional
            Client's own off-route verdict.  It can only escalate a ping to
            off-route, never clear a server-side detection.

        Raises
        ------
        JobSessionNotFoundError
            If no session exists for *job_id*.
        """
        job_id = normalize_job_id(job_id)
        position = GeoPoint(float(lat), float(lng))
        async with self._store.locked(job_id):
            record = await self._store.require(job_id)
            if record.state is SessionState.FINISHED:
                raise JobSessionNotFoundError(job_id)
            self._throttle.seed(job_id, record.last_reroute_at)

            ctx = _PingContext(
                record=record,
                route=self._current_route(record),
                state=record.state,
                last_reroute_at=record.last_reroute_at,
            )
            now = self._clock()

            if ctx.state is SessionState.ARRIVED:
                return await self._commit(job_id, position, ctx, now, arrived_ping=True)

            manual = polyline is not None and self._apply_manual_route(job_id, ctx, polyline, now)

            check = self._check(position, ctx.route)
            is_off_route = (check is not None and check.is_off_route) or bool(off_route_hint)
            rerouted = False

            if is_off_route:
                ctx.state = transition(ctx.state, SessionState.OFF_ROUTE)
                if not manual:
                    outcome = await self._maybe_reroute(job_id, position, ctx, check, now)
                    rerouted = outcome is RerouteOutcome.REROUTED
                    if rerouted:
                        check = self._check(position, ctx.route)
                        is_off_route = check is not None and check.is_off_route
                        ctx.state = transition(
                            ctx.state,
                            SessionState.OFF_ROUTE if is_off_route else SessionState.ACTIVE,
                        )
            elif ctx.state is not SessionState.ACTIVE:
                ctx.state = transition(ctx.state, SessionState.ACTIVE)

            return await self._commit(
                job_id,
                position,
                ctx,
                now,
                is_off_route=is_off_route,
                rerouted=rerouted,
                check=check,
            )

    def _current_route(self, record: SessionRecord) -> Route | None:
        try:
            return self._store.route_of(record)
        except GeometryError:
            _logger.warning("Cached polyline for job=%s cannot be decoded", record.job_id, exc_info=True)
            return None

    def _check(self, position: GeoPoint, route: Route | None) -> OffRouteCheck | None:
        if route is None or route.is_empty:
            return None
        return check_off_route(position, route.points, self._config.off_route_threshold_m)

    def _apply_manual_route(self, job_id: str, ctx: _PingContext, polyline: str, now: datetime) -> bool:
        try:
            points = decode(polyline)
        except GeometryError:
            _logger.warning("Ignoring malformed polyline pushed for job=%s", job_id, exc_info=True)
            return False
        if not points:
            _logger.warning("Ignoring empty polyline pushed for job=%s", job_id)
            return False
        if polyline != ctx.record.polyline:
            ctx.entries.append(
                RouteChangeLogEntry(polyline=polyline, timestamp=now, reason=RouteChangeReason.MANUAL_REROUTE)
            )
            ctx.route = Route(
                polyline,
                tuple(points),
                ctx.record.total_distance_km,
                ctx.record.total_estimated_minutes,
            )
            _logger.info("Manual route installed job=%s", job_id)
        return True

    async def _maybe_reroute(
        self,
        job_id: str,
        position: GeoPoint,
        ctx: _PingContext,
        check: OffRouteCheck | None,
        now: datetime,
    ) -> RerouteOutcome:
        if self._provider is None or ctx.route is None or ctx.route.destination is None:
            return RerouteOutcome.UNAVAILABLE
        if not self._throttle.allows(job_id):
            self.stats.throttled += 1
            _logger.debug(
                "Reroute throttled job=%s retry_in=%.0fs",
                job_id,
                self._throttle.remaining(job_id).total_seconds(),
            )
            return RerouteOutcome.THROTTLED

        ctx.state = transition(ctx.state, SessionState.REROUTING)
        self.stats.attempts += 1
        try:
            result = await asyncio.wait_for(
                self._provider.get_route(position, ctx.route.destination),
                timeout=self._config.provider_timeout_s,
            )
            new_route = Route.from_polyline(result.polyline, result.distance_km, result.duration_minutes)
            if new_route.is_empty:
                raise EmptyRouteError("Provider returned an empty route")
        except (RouteProviderError, GeometryError, asyncio.TimeoutError) as exc:
            self.stats.failures += 1
            ctx.state = transition(ctx.state, SessionState.OFF_ROUTE)
            _logger.warning("Reroute failed job=%s, keeping current route: %s", job_id, exc)
            return RerouteOutcome.FAILED
        except Exception:
            self.stats.failures += 1
            ctx.state = transition(ctx.state, SessionState.OFF_ROUTE)
            _logger.warning("Route provider raised unexpectedly job=%s, keeping current route", job_id, exc_info=True)
            return RerouteOutcome.FAILED

        ctx.entries.append(
            RouteChangeLogEntry(
                polyline=ctx.route.polyline,
                timestamp=now,
                reason=RouteChangeReason.OFF_ROUTE,
                distance_from_previous_route_meters=check.distance_m if check is not None else None,
            )
        )
        ctx.entries.append(
            RouteChangeLogEntry(polyline=new_route.polyline, timestamp=now, reason=RouteChangeReason.REROUTE)
        )
        ctx.route = new_route
        ctx.last_reroute_at = self._throttle.record(job_id, now)
        self.stats.successes += 1
        _logger.info(
            "Rerouted job=%s distance=%.2fkm duration=%.0fmin",
            job_id,
            new_route.total_distance_km,
            new_route.total_estimated_minutes,
        )

        if self._archive is not None:
            try:
                await self._archive.save_route(job_id, result)
            except Exception:
                _logger.warning("Route archive write failed job=%s", job_id, exc_info=True)
        return RerouteOutcome.REROUTED

    async def _commit(
        self,
        job_id: str,
        position: GeoPoint,
        ctx: _PingContext,
        now: datetime,
        *,
        is_off_route: bool = False,
        rerouted: bool = False,
        check: OffRouteCheck | None = None,
        arrived_ping: bool = False,
    ) -> PushResult:
        record = ctx.record
        if arrived_ping:
            progress = estimate_progress(position, ctx.route) if ctx.route is not None else UNKNOWN_PROGRESS
            remaining: float | None = 0.0
            eta: int | None = 0
            arrived = True
            distance_m = progress.distance_from_route_km * 1000.0 if progress.distance_from_route_km is not None else None
        else:
            progress = (
                estimate_progress(
                    position,
                    ctx.route,
                    arrival_eta_minutes=self._config.arrival_eta_minutes,
                    arrival_radius_km=self._config.arrival_radius_km,
                )
                if ctx.route is not None
                else UNKNOWN_PROGRESS
            )
            remaining, eta, arrived = progress.remaining_distance_km, progress.eta_minutes, progress.arrived
            distance_m = check.distance_m if check is not None else None
            if arrived:
                ctx.state = transition(ctx.state, SessionState.ARRIVED)
                is_off_route = False
                _logger.info("Job arrived job=%s", job_id)

        route = ctx.route
        updates: dict[str, Any] = {
            "state": ctx.state,
            "last_reroute_at": ctx.last_reroute_at,
            "updated_at": now,
        }
        if route is not None:
            updates.update(
                polyline=route.polyline,
                total_distance_km=route.total_distance_km,
                total_estimated_minutes=route.total_estimated_minutes,
            )
        record = self._store.with_route_changes(record, ctx.entries, **updates)
        await self._store.save(record)

        live = LiveState(
            lat=position.lat,
            lng=position.lng,
            timestamp=now,
            remaining_distance_km=remaining,
            eta_minutes=eta,
            is_off_route=is_off_route,
            last_reroute_at=record.last_reroute_at,
            polyline=record.polyline,
        )
        await self._store.save_live_state(job_id, live)
        await self._publish(job_id, TrackingUpdate.from_live_state(job_id, live, rerouted=rerouted))

        return PushResult(
            job_id=job_id,
            remaining_distance_km=remaining,
            eta_minutes=eta,
            is_off_route=is_off_route,
            rerouted=rerouted,
            polyline=record.polyline,
            state=record.state,
            arrived=arrived,
            distance_from_route_meters=distance_m,
        )

    async def _publish(self, job_id: str, update: TrackingUpdate) -> None:
        try:
            await self._broadcaster.publish(job_id, update)
        except Exception:
            _logger.warning("Broadcast failed job=%s", job_id, exc_info=True)

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    async def start_simulation(
        self,
        job_id: str,
        waypoints: Sequence[tuple[float, float] | Waypoint] = DEMO_ROUTE,
        *,
        interval_seconds: float | None = None,
        finish_on_complete: bool = True,
        total_estimated_minutes: float = DEMO_ESTIMATED_MINUTES,
    ) -> SimulationHandle:
        """Replay *waypoints* as pings for *job_id*.

        When the job has no session yet, one is started along the waypoints.
        """
        job_id = normalize_job_id(job_id)
        if await self._store.load(job_id) is None:
            await self.start_session(
                job_id,
                [(float(p[0]), float(p[1])) for p in waypoints],
                total_estimated_minutes=total_estimated_minutes,
            )
        interval = self._config.simulation_interval_s if interval_seconds is None else interval_seconds
        return await self._simulations.start(job_id, waypoints, interval, finish_on_complete)

    async def stop_simulation(self, job_id: str) -> bool:
        return await self._simulations.stop(normalize_job_id(job_id))

    def active_simulations(self) -> list[str]:
        return self._simulations.active()

    async def _simulated_push(self, job_id: str, lat: float, lng: float) -> PushResult:
        return await self.push_position(job_id, lat, lng)

    # ------------------------------------------------------------------
    # MQTT bridge
    # ------------------------------------------------------------------

    def _start_mqtt(self) -> None:
        runtime = MqttRuntime(
            loop=asyncio.get_running_loop(),
            settings=self._config.mqtt,
            on_ping=self._on_mqtt_ping,
        )
        runtime.start()
        self._mqtt_runtime = runtime
        self._mqtt_connection = MqttTopicConnection(runtime.publish, runtime.topic_prefix)

    def _stop_mqtt(self) -> None:
        runtime = self._mqtt_runtime
        self._mqtt_runtime = None
        if self._mqtt_connection is not None:
            self._broadcaster.disconnect(self._mqtt_connection)
            self._mqtt_connection = None
        if runtime is not None:
            runtime.stop()

    def _on_mqtt_ping(self, ping: MqttPing) -> None:
        task = asyncio.create_task(self._handle_mqtt_ping(ping))
        self._ping_tasks.add(task)
        task.add_done_callback(self._ping_tasks.discard)

    async def _handle_mqtt_ping(self, ping: MqttPing) -> None:
        try:
            await self.push_position(
                ping.job_id,
                ping.lat,
                ping.lng,
                polyline=ping.polyline,
                off_route_hint=ping.off_route_hint,
            )
        except JobSessionNotFoundError:
            _logger.debug("MQTT ping for unknown job=%s", ping.job_id)
        except LiveTrackError:
            _logger.warning("MQTT ping failed job=%s", ping.job_id, exc_info=True)
