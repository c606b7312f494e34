"""Simulated drivers that replay waypoints into the tracker.

A :class:`SimulationRegistry` owns one asyncio task per job.  Stopping a
simulation cancels the task and waits for it, so no ping is pushed after
:meth:`SimulationRegistry.stop` returns.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import NamedTuple

from pylivetrack._constants import DEFAULT_SIMULATION_INTERVAL_S
from pylivetrack.exceptions import JobSessionNotFoundError, LiveTrackError
from pylivetrack.geo.geometry import GeoPoint, bearing_deg, offset_point

_logger = logging.getLogger(__name__)

PushCallback = Callable[[str, float, float], Awaitable[object]]
FinishCallback = Callable[[str], Awaitable[object]]


class Waypoint(NamedTuple):
    lat: float
    lng: float
    name: str = ""


DEMO_ROUTE: tuple[Waypoint, ...] = (
    Waypoint(1.1258311, 104.0515445, "Graha Pena Batam Building"),
    Waypoint(1.1223017, 104.0534285, "Monumen Welcome To Batam"),
    Waypoint(1.129271, 104.0538747, "Dataran Engku Putri"),
    Waypoint(1.1264, 104.0452, "Simpang Jalan Ahmad Yani & Raja H. Fisabilillah"),
    Waypoint(1.1341466, 104.0434369, "Bundaran Tuah Madani"),
    Waypoint(1.1254003, 104.026376, "Dataran Madani Kota Batam"),
    Waypoint(1.1248, 104.0258, "Flyover Laluan Madani"),
    Waypoint(1.1209722, 104.0206642, "Taman Dang Anom"),
    Waypoint(1.105, 104.032, "Jalan Jenderal Sudirman"),
    Waypoint(1.1009878, 104.037103, "K Square Mall"),
)
"""Sample delivery in Batam, from pickup to drop-off."""

DEMO_POLYLINE = "m{zEcqazRfzCfyA"
DEMO_DISTANCE_KM = 5.2
DEMO_ESTIMATED_MINUTES = 15


def build_off_route_waypoints(
    waypoints: Sequence[tuple[float, float] | Waypoint],
    deviate_at: int,
    offset_m: float = 200.0,
) -> list[Waypoint]:
    """Copy of *waypoints* where the driver leaves the road at *deviate_at*.

    Every waypoint from *deviate_at* up to, but excluding, the destination
    is pushed *offset_m* meters to the right of its direction of travel.
    """
    if not 0 < deviate_at < len(waypoints) - 1:
        raise ValueError("deviate_at must point at an intermediate waypoint")

    points = [Waypoint(float(p[0]), float(p[1]), p[2] if isinstance(p, Waypoint) else "") for p in waypoints]
    result = list(points)
    for index in range(deviate_at, len(points) - 1):
        here = GeoPoint(points[index].lat, points[index].lng)
        previous = GeoPoint(points[index - 1].lat, points[index - 1].lng)
        shifted = offset_point(here, bearing_deg(previous, here) + 90.0, offset_m)
        result[index] = Waypoint(shifted.lat, shifted.lng, f"{points[index].name} (off route)".strip())
    return result


class SimulationHandle:
    """A running simulation for one job."""

    def __init__(self, job_id: str, waypoints: Sequence[Waypoint], interval_seconds: float) -> None:
        self.job_id = job_id
        self.waypoints = tuple(waypoints)
        self.interval_seconds = interval_seconds
        self.pushed = 0
        self.task: asyncio.Task[None] | None = None

    @property
    def total(self) -> int:
        return len(self.waypoints)

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()


class SimulationRegistry:
    """Registry of simulation tasks keyed by job id.

    Parameters
    ----------
    push : callable
        ``async push(job_id, lat, lng)`` invoked for every waypoint.
    finish : callable, optional
        ``async finish(job_id)`` invoked after the last waypoint when the
        simulation was started with ``finish_on_complete=True``.
    """

    def __init__(self, push: PushCallback, finish: FinishCallback | None = None) -> None:
        self._push = push
        self._finish = finish
        self._handles: dict[str, SimulationHandle] = {}

    def active(self) -> list[str]:
        return [job_id for job_id, handle in self._handles.items() if not handle.done]

    def get(self, job_id: str) -> SimulationHandle | None:
        return self._handles.get(job_id)

    async def start(
        self,
        job_id: str,
        waypoints: Sequence[tuple[float, float] | Waypoint],
        interval_seconds: float = DEFAULT_SIMULATION_INTERVAL_S,
        finish_on_complete: bool = True,
    ) -> SimulationHandle:
        """Start replaying *waypoints*; a running simulation for the job is replaced."""
        if not waypoints:
            raise ValueError("A simulation needs at least one waypoint")
        if interval_seconds < 0:
            raise ValueError("interval_seconds must not be negative")

        await self.stop(job_id)
        points = [Waypoint(float(p[0]), float(p[1]), p[2] if isinstance(p, Waypoint) else "") for p in waypoints]
        handle = SimulationHandle(job_id, points, interval_seconds)
        handle.task = asyncio.create_task(self._run(handle, finish_on_complete), name=f"simulation-{job_id}")
        self._handles[job_id] = handle
        _logger.info(
            "Simulation started job=%s waypoints=%d interval=%.1fs",
            job_id,
            handle.total,
            interval_seconds,
        )
        return handle

    async def stop(self, job_id: str) -> bool:
        """Cancel the job's simulation and wait until its task has exited."""
        handle = self._handles.pop(job_id, None)
        if handle is None or handle.task is None:
            return False
        task = handle.task
        if task is asyncio.current_task():
            return True
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        _logger.info("Simulation stopped job=%s pushed=%d/%d", job_id, handle.pushed, handle.total)
        return True

    async def stop_all(self) -> None:
        for job_id in list(self._handles):
            await self.stop(job_id)

    async def _run(self, handle: SimulationHandle, finish_on_complete: bool) -> None:
        job_id = handle.job_id
        for waypoint in handle.waypoints:
            try:
                await self._push(job_id, waypoint.lat, waypoint.lng)
            except JobSessionNotFoundError:
                _logger.warning("Simulation aborted job=%s: tracking session is gone", job_id)
                self._handles.pop(job_id, None)
                return
            except LiveTrackError:
                _logger.warning("Simulated ping failed job=%s", job_id, exc_info=True)
            handle.pushed += 1
            _logger.debug(
                "Simulated location %d/%d job=%s %s",
                handle.pushed,
                handle.total,
                job_id,
                waypoint.name,
            )
            await asyncio.sleep(handle.interval_seconds)

        if self._handles.get(job_id) is handle:
            self._handles.pop(job_id, None)
        if finish_on_complete and self._finish is not None:
            await self._finish(job_id)
        _logger.info("Simulation completed job=%s", job_id)
