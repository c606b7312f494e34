#!/usr/bin/env python3
"""Replay the Batam demo delivery through a local tracker.

Prints every ``location_update`` as it is broadcast, so the off-route
detection, throttled rerouting and arrival handling can be watched live.

Usage
-----
::

    python scripts/simulate_route.py
    python scripts/simulate_route.py --interval 0.5 --off-route-at 4 --offset 250

Options::

    --job JOB_ID        Job id to track (default: SIM-<timestamp>)
    --interval SECS     Seconds between pings (default: 1)
    --off-route-at N    Push the driver off the road from waypoint N on
    --offset METERS     Off-road distance for --off-route-at (default: 200)
    --verbose / -v      Enable debug logging

Set ``GOOGLE_MAPS_API_KEY`` to reroute through Google Directions and
``REDIS_URL`` to keep sessions in Redis.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pylivetrack import (  # noqa: E402
    DEMO_DISTANCE_KM,
    DEMO_ESTIMATED_MINUTES,
    DEMO_ROUTE,
    LiveTracker,
    QueueConnection,
    TrackerConfig,
    build_off_route_waypoints,
)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay the demo delivery route through pylivetrack")
    parser.add_argument("--job", default=f"SIM-{int(time.time() * 1000)}", help="Job id to track")
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between pings")
    parser.add_argument("--off-route-at", type=int, default=None, help="Leave the road from this waypoint on")
    parser.add_argument("--offset", type=float, default=200.0, help="Off-road distance in meters")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


async def _print_updates(connection: QueueConnection) -> None:
    while True:
        event, payload = await connection.queue.get()
        print(f"[{event}] {json.dumps(payload, indent=None)}")


async def _run(args: argparse.Namespace) -> int:
    config = TrackerConfig.from_env()
    route = [(p.lat, p.lng) for p in DEMO_ROUTE]
    waypoints = (
        build_off_route_waypoints(DEMO_ROUTE, args.off_route_at, args.offset)
        if args.off_route_at is not None
        else list(DEMO_ROUTE)
    )

    async with LiveTracker(config) as tracker:
        await tracker.start_session(args.job, route, DEMO_DISTANCE_KM, DEMO_ESTIMATED_MINUTES)
        viewer = QueueConnection("cli")
        await tracker.subscribe(args.job, viewer)
        printer = asyncio.create_task(_print_updates(viewer))

        handle = await tracker.start_simulation(args.job, waypoints, interval_seconds=args.interval)
        try:
            if handle.task is not None:
                await handle.task
        finally:
            await asyncio.sleep(0)
            printer.cancel()

        print(f"Reroute stats: {tracker.stats.as_dict()}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
