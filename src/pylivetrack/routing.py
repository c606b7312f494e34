"""Routing provider client and persistence collaborator interfaces."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import Any, Protocol

import aiohttp
from pydantic import Field

from pylivetrack._constants import GOOGLE_DIRECTIONS_URL
from pylivetrack._redact import redact_for_log
from pylivetrack.exceptions import ConfigError, RouteProviderError
from pylivetrack.geo.geometry import GeoPoint
from pylivetrack.models._base import TrackBaseModel

_logger = logging.getLogger(__name__)


class RouteResult(TrackBaseModel):
    """A freshly computed route between two coordinates."""

    polyline: str
    distance_km: float = Field(ge=0)
    duration_minutes: float = Field(ge=0)
    distance_text: str | None = None
    duration_text: str | None = None


class RouteProvider(Protocol):
    """External routing service."""

    async def get_route(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        ...


class RouteArchive(Protocol):
    """Durable copy of a job's route, written after successful reroutes."""

    async def save_route(self, job_id: str, route: RouteResult) -> None:
        ...


def parse_directions_response(data: Any) -> RouteResult:
    """Normalize a Google Directions JSON body into a :class:`RouteResult`."""
    if not isinstance(data, dict):
        raise RouteProviderError("Directions response is not an object", provider="google")

    status = data.get("status")
    if status != "OK":
        message = data.get("error_message") or ""
        raise RouteProviderError(f"Directions API error: {status} {message}".strip(), provider="google")

    routes = data.get("routes")
    if not isinstance(routes, list) or not routes:
        raise RouteProviderError("No route found between origin and destination", provider="google")

    route = routes[0]
    try:
        polyline = route["overview_polyline"]["points"]
        leg = route["legs"][0]
        distance_m = float(leg["distance"]["value"])
        duration_s = float(leg["duration"]["value"])
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise RouteProviderError(f"Malformed directions route: {exc}", provider="google") from exc

    if not isinstance(polyline, str) or not polyline:
        raise RouteProviderError("Directions route has no overview polyline", provider="google")

    return RouteResult(
        polyline=polyline,
        distance_km=distance_m / 1000.0,
        duration_minutes=math.ceil(duration_s / 60.0),
        distance_text=leg.get("distance", {}).get("text"),
        duration_text=leg.get("duration", {}).get("text"),
    )


class GoogleDirectionsProvider:
    """Google Directions API client.

    Every call is bounded by an explicit ``aiohttp.ClientTimeout``; network
    errors, timeouts, non-200 replies and non-``OK`` statuses all surface as
    :class:`RouteProviderError`.
    """

    def __init__(
        self,
        api_key: str,
        http_session: aiohttp.ClientSession,
        *,
        url: str = GOOGLE_DIRECTIONS_URL,
        timeout: float = 10.0,
    ) -> None:
        if not api_key:
            raise ConfigError("Google Maps API key is not set")
        self._api_key = api_key
        self._http = http_session
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def get_route(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        params = {
            "origin": f"{origin.lat},{origin.lng}",
            "destination": f"{destination.lat},{destination.lng}",
            "key": self._api_key,
        }
        _logger.debug("GET %s params=%s", self._url, redact_for_log(params))

        try:
            async with self._http.get(self._url, params=params, timeout=self._timeout) as resp:
                text = await resp.text(errors="replace")
                if resp.status != 200:
                    raise RouteProviderError(
                        f"HTTP {resp.status} from directions API: {text[:200]}",
                        status_code=resp.status,
                        provider="google",
                    )
        except RouteProviderError:
            raise
        except asyncio.TimeoutError as exc:
            raise RouteProviderError("Directions request timed out", provider="google") from exc
        except aiohttp.ClientError as exc:
            raise RouteProviderError(f"Directions request failed: {exc}", provider="google") from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise RouteProviderError(f"Invalid JSON from directions API: {text[:200]}", provider="google") from exc

        result = parse_directions_response(data)
        _logger.info(
            "Route obtained %.2f km / %d min from [%s,%s] to [%s,%s]",
            result.distance_km,
            result.duration_minutes,
            origin.lat,
            origin.lng,
            destination.lat,
            destination.lng,
        )
        return result
