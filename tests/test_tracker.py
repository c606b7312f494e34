"""End-to-end tests for the LiveTracker position pipeline."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from pylivetrack._cache import InMemoryCache
from pylivetrack._constants import details_key
from pylivetrack.broadcast import QueueConnection
from pylivetrack.config import TrackerConfig
from pylivetrack.exceptions import EmptyRouteError, JobSessionNotFoundError, MalformedPolylineError, RouteProviderError
from pylivetrack.geo.geometry import GeoPoint, bearing_deg, interpolate, offset_point
from pylivetrack.geo.polyline import encode
from pylivetrack.models.route import RouteChangeReason
from pylivetrack.models.tracking import TrackingUpdate
from pylivetrack.routing import RouteResult
from pylivetrack.simulation import DEMO_DISTANCE_KM, DEMO_ESTIMATED_MINUTES, DEMO_POLYLINE
from pylivetrack.state.machine import SessionState
from pylivetrack.tracker import LiveTracker

_PICKUP = GeoPoint(1.1258, 104.0515)
_DROPOFF = GeoPoint(1.1009, 104.0371)
_ROUTE = [_PICKUP, _DROPOFF]


def _off_route_position(meters: float = 150.0) -> GeoPoint:
    midpoint = interpolate(_PICKUP, _DROPOFF, 0.5)
    return offset_point(midpoint, bearing_deg(_PICKUP, _DROPOFF) + 90.0, meters)


class _FakeProvider:
    """Returns a fixed route, or fails, and records every call."""

    def __init__(
        self,
        polyline: str | None = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.polyline = polyline
        self.error = error
        self.delay = delay
        self.calls: list[tuple[GeoPoint, GeoPoint]] = []

    async def get_route(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        self.calls.append((origin, destination))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        polyline = self.polyline or encode([origin, destination])
        return RouteResult(polyline=polyline, distance_km=3.1, duration_minutes=9)


class _FakeArchive:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.saved: list[tuple[str, RouteResult]] = []

    async def save_route(self, job_id: str, route: RouteResult) -> None:
        if self.fail:
            raise OSError("database unavailable")
        self.saved.append((job_id, route))


class _FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class _BrokenConnection:
    connection_id = "broken"

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        if event == "location_update":
            raise ConnectionResetError("gone")


def _config(**overrides: Any) -> TrackerConfig:
    return TrackerConfig(**overrides)


# ------------------------------------------------------------------
# Session lifecycle
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_session_records_initial_route() -> None:
    async with LiveTracker(_config(), provider=_FakeProvider()) as tracker:
        record = await tracker.start_session("job-1", _ROUTE, 5.2, 15)

        assert record.state is SessionState.ACTIVE
        assert record.total_distance_km == 5.2
        log = await tracker.get_route_log("job-1")
        assert [entry.reason for entry in log] == [RouteChangeReason.INITIAL]
        assert log[0].polyline == record.polyline
        assert await tracker.get_state("job-1") is SessionState.ACTIVE
        assert await tracker.get_current_location("job-1") is None


@pytest.mark.asyncio
async def test_start_session_accepts_polyline() -> None:
    async with LiveTracker(_config()) as tracker:
        record = await tracker.start_session("job-1", DEMO_POLYLINE, DEMO_DISTANCE_KM, DEMO_ESTIMATED_MINUTES)
        assert record.polyline == DEMO_POLYLINE
        assert record.total_distance_km == DEMO_DISTANCE_KM


@pytest.mark.asyncio
async def test_start_session_rejects_empty_and_malformed_routes() -> None:
    async with LiveTracker(_config()) as tracker:
        with pytest.raises(EmptyRouteError):
            await tracker.start_session("job-1", [], 0, 0)
        with pytest.raises(EmptyRouteError):
            await tracker.start_session("job-1", "", 0, 0)
        with pytest.raises(MalformedPolylineError):
            await tracker.start_session("job-1", "_p~iF~ps|U_ulLnnqC_mqNvxq`", 0, 0)
        assert await tracker.get_session("job-1") is None


@pytest.mark.asyncio
async def test_padded_job_ids_refer_to_the_same_session() -> None:
    async with LiveTracker(_config()) as tracker:
        record = await tracker.start_session(" job-1 ", _ROUTE, 5.2, 15)
        assert record.job_id == "job-1"

        result = await tracker.push_position(" job-1 ", *_PICKUP)

        assert result.job_id == "job-1"
        assert await tracker.get_current_location("job-1") is not None
        assert await tracker.get_current_location("job-1\n") is not None
        assert await tracker.get_state(" job-1") is SessionState.ACTIVE
        final = await tracker.stop_session("job-1 ")
        assert final is not None
        assert await tracker.get_session("job-1") is None


@pytest.mark.asyncio
async def test_blank_job_id_is_rejected() -> None:
    async with LiveTracker(_config()) as tracker:
        with pytest.raises(ValueError):
            await tracker.push_position("   ", *_PICKUP)


@pytest.mark.asyncio
async def test_push_without_session_raises() -> None:
    async with LiveTracker(_config()) as tracker:
        with pytest.raises(JobSessionNotFoundError):
            await tracker.push_position("unknown", 1.0, 104.0)


@pytest.mark.asyncio
async def test_stop_session_evicts_state() -> None:
    async with LiveTracker(_config()) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        await tracker.push_position("job-1", *_PICKUP)

        final = await tracker.stop_session("job-1")

        assert final is not None
        assert final.state is SessionState.FINISHED
        assert await tracker.get_session("job-1") is None
        assert await tracker.get_current_location("job-1") is None
        assert await tracker.get_state("job-1") is SessionState.NOT_STARTED
        assert await tracker.stop_session("job-1") is None
        with pytest.raises(JobSessionNotFoundError):
            await tracker.push_position("job-1", *_PICKUP)


# ------------------------------------------------------------------
# Progress and arrival
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_push_on_route_updates_live_state() -> None:
    async with LiveTracker(_config()) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)

        result = await tracker.push_position("job-1", *_PICKUP)

        assert not result.is_off_route
        assert not result.rerouted
        assert result.state is SessionState.ACTIVE
        assert result.eta_minutes is not None and result.eta_minutes > 1
        live = await tracker.get_current_location("job-1")
        assert live is not None
        assert (live.lat, live.lng) == tuple(_PICKUP)
        assert live.remaining_distance_km == result.remaining_distance_km
        assert live.eta_minutes == result.eta_minutes


@pytest.mark.asyncio
async def test_undecodable_cached_route_reports_unknown_estimates() -> None:
    cache = InMemoryCache()
    async with LiveTracker(_config(), cache=cache, provider=_FakeProvider()) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        viewer = QueueConnection("viewer")
        await tracker.subscribe("job-1", viewer)
        details = await cache.get_json(details_key("job-1"))
        assert details is not None
        details["polyline"] = "_p~iF"
        await cache.set_json(details_key("job-1"), details)

        result = await tracker.push_position("job-1", *_PICKUP)

        assert result.remaining_distance_km is None
        assert result.eta_minutes is None
        assert not result.arrived
        live = await tracker.get_current_location("job-1")
        assert live is not None
        assert live.remaining_distance_km is None
        assert live.eta_minutes is None
        events = viewer.drain()
        assert events[-1][0] == "location_update"
        assert events[-1][1]["location"]["remainingDistanceKm"] is None
        assert events[-1][1]["location"]["etaMinutes"] is None


@pytest.mark.asyncio
async def test_arrival_at_destination() -> None:
    async with LiveTracker(_config()) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)

        result = await tracker.push_position("job-1", 1.1009, 104.0371)

        assert result.remaining_distance_km == 0
        assert result.eta_minutes == 0
        assert result.arrived
        assert result.state is SessionState.ARRIVED
        assert await tracker.get_state("job-1") is SessionState.ARRIVED


@pytest.mark.asyncio
async def test_pings_after_arrival_stay_at_zero() -> None:
    provider = _FakeProvider()
    async with LiveTracker(_config(), provider=provider) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        await tracker.push_position("job-1", *_DROPOFF)

        far_away = _off_route_position(500.0)
        result = await tracker.push_position("job-1", *far_away)

        assert result.remaining_distance_km == 0
        assert result.eta_minutes == 0
        assert not result.is_off_route
        assert result.state is SessionState.ARRIVED
        assert provider.calls == []


# ------------------------------------------------------------------
# Off-route and rerouting
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_off_route_twice_reroutes_once() -> None:
    async with LiveTracker(_config(off_route_threshold_m=100.0)) as tracker:
        record = await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        provider = _FakeProvider(polyline=record.polyline)
        tracker._provider = provider  # type: ignore[attr-defined]
        position = _off_route_position(150.0)

        first = await tracker.push_position("job-1", *position)
        second = await tracker.push_position("job-1", *position)

        assert first.rerouted
        assert first.is_off_route
        assert not second.rerouted
        assert second.is_off_route
        assert len(provider.calls) == 1
        assert tracker.stats.as_dict() == {"attempts": 1, "successes": 1, "failures": 0, "throttled": 1}


@pytest.mark.asyncio
async def test_reroute_installs_new_route_and_logs_old_route_first() -> None:
    provider = _FakeProvider()
    archive = _FakeArchive()
    async with LiveTracker(_config(), provider=provider, archive=archive) as tracker:
        record = await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        position = _off_route_position(150.0)

        result = await tracker.push_position("job-1", *position)

        assert result.rerouted
        assert not result.is_off_route
        assert result.state is SessionState.ACTIVE
        assert result.polyline != record.polyline
        origin, destination = provider.calls[0]
        assert origin == position
        assert destination == pytest.approx(_DROPOFF, abs=1e-5)

        session = await tracker.get_session("job-1")
        assert session is not None
        assert session.polyline == result.polyline
        assert session.total_distance_km == 3.1
        assert session.total_estimated_minutes == 9
        assert session.last_reroute_at is not None

        log = session.route_log
        assert [entry.reason for entry in log] == [
            RouteChangeReason.INITIAL,
            RouteChangeReason.OFF_ROUTE,
            RouteChangeReason.REROUTE,
        ]
        assert log[1].polyline == record.polyline
        assert log[1].distance_from_previous_route_meters == pytest.approx(150.0, rel=0.05)
        assert log[2].polyline == result.polyline

        assert [job for job, _ in archive.saved] == ["job-1"]


@pytest.mark.asyncio
async def test_provider_failure_keeps_current_route() -> None:
    provider = _FakeProvider(error=RouteProviderError("HTTP 500", status_code=500))
    async with LiveTracker(_config(), provider=provider) as tracker:
        record = await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        position = _off_route_position(150.0)

        result = await tracker.push_position("job-1", *position)

        assert not result.rerouted
        assert result.is_off_route
        assert result.state is SessionState.OFF_ROUTE
        assert result.polyline == record.polyline
        assert result.remaining_distance_km is not None
        assert tracker.stats.failures == 1

        # Failures are not throttled: the next off-route ping retries.
        await tracker.push_position("job-1", *position)
        assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_unexpected_provider_exception_degrades_to_failure() -> None:
    provider = _FakeProvider(error=ConnectionResetError("peer reset"))
    async with LiveTracker(_config(), provider=provider) as tracker:
        record = await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        viewer = QueueConnection("viewer")
        await tracker.subscribe("job-1", viewer)
        position = _off_route_position(150.0)

        result = await tracker.push_position("job-1", *position)

        assert not result.rerouted
        assert result.state is SessionState.OFF_ROUTE
        assert result.polyline == record.polyline
        assert tracker.stats.failures == 1
        live = await tracker.get_current_location("job-1")
        assert live is not None
        assert (live.lat, live.lng) == (position.lat, position.lng)
        assert [event for event, _ in viewer.drain()] == ["joined_tracking", "location_update"]


@pytest.mark.asyncio
async def test_slow_provider_times_out() -> None:
    provider = _FakeProvider(delay=1.0)
    async with LiveTracker(_config(provider_timeout_s=0.05), provider=provider) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)

        result = await tracker.push_position("job-1", *_off_route_position(150.0))

        assert not result.rerouted
        assert result.state is SessionState.OFF_ROUTE
        assert tracker.stats.failures == 1


@pytest.mark.asyncio
async def test_concurrent_pings_trigger_single_provider_call() -> None:
    provider = _FakeProvider(delay=0.05)
    async with LiveTracker(_config(), provider=provider) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        position = _off_route_position(150.0)

        results = await asyncio.gather(
            tracker.push_position("job-1", *position),
            tracker.push_position("job-1", *position),
        )

        assert len(provider.calls) == 1
        assert sum(result.rerouted for result in results) == 1


@pytest.mark.asyncio
async def test_returning_to_route_clears_off_route() -> None:
    async with LiveTracker(_config()) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)

        off = await tracker.push_position("job-1", *_off_route_position(150.0))
        back = await tracker.push_position("job-1", *interpolate(_PICKUP, _DROPOFF, 0.5))

        assert off.state is SessionState.OFF_ROUTE
        assert not back.is_off_route
        assert back.state is SessionState.ACTIVE


@pytest.mark.asyncio
async def test_off_route_hint_only_escalates() -> None:
    provider = _FakeProvider()
    async with LiveTracker(_config(), provider=provider) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)

        hinted = await tracker.push_position("job-1", *_PICKUP, off_route_hint=True)
        assert hinted.rerouted
        assert len(provider.calls) == 1

    async with LiveTracker(_config(), provider=_FakeProvider(error=RouteProviderError("down"))) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        denied = await tracker.push_position("job-1", *_off_route_position(150.0), off_route_hint=False)
        assert denied.is_off_route


@pytest.mark.asyncio
async def test_explicit_polyline_is_manual_reroute() -> None:
    provider = _FakeProvider()
    async with LiveTracker(_config(), provider=provider) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        position = _off_route_position(150.0)
        manual = encode([position, _DROPOFF])

        result = await tracker.push_position("job-1", *position, polyline=manual)

        assert result.polyline == manual
        assert not result.rerouted
        assert not result.is_off_route
        assert provider.calls == []
        log = await tracker.get_route_log("job-1")
        assert log[-1].reason is RouteChangeReason.MANUAL_REROUTE
        assert log[-1].polyline == manual


@pytest.mark.asyncio
async def test_malformed_explicit_polyline_is_ignored() -> None:
    async with LiveTracker(_config()) as tracker:
        record = await tracker.start_session("job-1", _ROUTE, 5.2, 15)

        result = await tracker.push_position("job-1", *_PICKUP, polyline="_p~iF ps|U")

        assert result.polyline == record.polyline
        assert [e.reason for e in await tracker.get_route_log("job-1")] == [RouteChangeReason.INITIAL]


@pytest.mark.asyncio
async def test_no_provider_keeps_tracking_off_route() -> None:
    async with LiveTracker(_config()) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        result = await tracker.push_position("job-1", *_off_route_position(150.0))
        assert result.is_off_route
        assert not result.rerouted
        assert tracker.stats.attempts == 0


@pytest.mark.asyncio
async def test_route_log_is_bounded() -> None:
    clock = _FakeClock()
    provider = _FakeProvider()
    async with LiveTracker(_config(route_log_capacity=3), provider=provider, clock=clock) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)

        for meters in (150.0, 300.0, 450.0):
            await tracker.push_position("job-1", *_off_route_position(meters))
            clock.advance(61)

        assert len(provider.calls) == 3
        log = await tracker.get_route_log("job-1")
        assert len(log) == 3
        assert log[-1].reason is RouteChangeReason.REROUTE
        assert log[-2].reason is RouteChangeReason.OFF_ROUTE


@pytest.mark.asyncio
async def test_archive_failure_does_not_break_reroute() -> None:
    async with LiveTracker(_config(), provider=_FakeProvider(), archive=_FakeArchive(fail=True)) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        result = await tracker.push_position("job-1", *_off_route_position(150.0))
        assert result.rerouted


# ------------------------------------------------------------------
# Broadcasting
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_subscribers_receive_updates() -> None:
    async with LiveTracker(_config(), provider=_FakeProvider()) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        viewer = QueueConnection("viewer")
        await tracker.subscribe("job-1", viewer)
        await tracker.subscribe("job-1", _BrokenConnection())

        result = await tracker.push_position("job-1", *_off_route_position(150.0))

        events = viewer.drain()
        assert [event for event, _ in events] == ["joined_tracking", "location_update"]
        payload = events[-1][1]
        assert payload["jobId"] == "job-1"
        assert payload["rerouted"] is True
        assert payload["offRoute"] is False
        assert payload["location"]["polyline"] == result.polyline
        assert payload["location"]["etaMinutes"] == result.eta_minutes

        assert tracker.unsubscribe("job-1", viewer)
        await tracker.push_position("job-1", *_PICKUP)
        assert viewer.drain() == []


class _RecordingBroadcaster:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def join(self, job_id: str, connection: Any) -> None:
        self.calls.append(("join", job_id))

    def leave(self, job_id: str, connection: Any) -> bool:
        self.calls.append(("leave", job_id))
        return True

    def disconnect(self, connection: Any) -> None:
        self.calls.append(("disconnect", connection.connection_id))

    def close_room(self, job_id: str) -> int:
        self.calls.append(("close_room", job_id))
        return 0

    async def publish(self, job_id: str, update: TrackingUpdate) -> int:
        self.calls.append(("publish", update.job_id))
        return 1


@pytest.mark.asyncio
async def test_custom_broadcaster_receives_room_lifecycle() -> None:
    broadcaster = _RecordingBroadcaster()
    async with LiveTracker(_config(), broadcaster=broadcaster) as tracker:
        assert tracker.broadcaster is broadcaster
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        viewer = QueueConnection("viewer")
        await tracker.subscribe("job-1", viewer)
        await tracker.push_position("job-1", *_PICKUP)
        assert tracker.unsubscribe("job-1", viewer)
        await tracker.stop_session("job-1")

    assert broadcaster.calls == [
        ("join", "job-1"),
        ("publish", "job-1"),
        ("leave", "job-1"),
        ("close_room", "job-1"),
    ]


@pytest.mark.asyncio
async def test_other_jobs_are_unaffected() -> None:
    async with LiveTracker(_config()) as tracker:
        await tracker.start_session("job-1", _ROUTE, 5.2, 15)
        await tracker.start_session("job-2", _ROUTE, 5.2, 15)

        await tracker.push_position("job-1", *_DROPOFF)

        assert await tracker.get_state("job-1") is SessionState.ARRIVED
        assert await tracker.get_state("job-2") is SessionState.ACTIVE
        assert await tracker.get_current_location("job-2") is None
