"""OpenRouteService directions, used to draw a unit's route to a pickup."""
from __future__ import annotations

import os
from typing import Any, List, Optional, Sequence

import httpx

from dispatch_errors import TransientNetworkError
from dispatch_models import coerce_float


DEFAULT_ORS_DIRECTIONS_URL = "https://api.openrouteservice.org/v2/directions/driving-car"


def extract_route_latlngs(payload: Any) -> List[List[float]]:
    """Pull ``[[lat, lon], ...]`` out of an ORS directions response.

    Accepts both the ``routes[0].geometry`` shape and the GeoJSON
    ``features[0].geometry`` shape; multi-segment geometries are flattened.
    """
    if not isinstance(payload, dict):
        return []

    coordinates: Any = []
    routes = payload.get("routes")
    if isinstance(routes, list) and routes and isinstance(routes[0], dict):
        geometry = routes[0].get("geometry")
        if isinstance(geometry, dict):
            coordinates = geometry.get("coordinates") or []
        elif isinstance(geometry, list):
            coordinates = geometry

    if not coordinates:
        features = payload.get("features")
        if isinstance(features, list) and features and isinstance(features[0], dict):
            geometry = features[0].get("geometry")
            if isinstance(geometry, dict):
                coordinates = geometry.get("coordinates") or []

    if not isinstance(coordinates, list) or not coordinates:
        return []

    points: List[Any] = coordinates
    if isinstance(coordinates[0], (list, tuple)) and coordinates[0] and isinstance(coordinates[0][0], (list, tuple)):
        points = [point for segment in coordinates if isinstance(segment, (list, tuple)) for point in segment]

    latlngs: List[List[float]] = []
    for point in points:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            continue
        lon = coerce_float(point[0])
        lat = coerce_float(point[1])
        if lat is None or lon is None:
            continue
        latlngs.append([lat, lon])
    return latlngs


class RouteClient:
    def __init__(
        self,
        api_key: str,
        url: str = DEFAULT_ORS_DIRECTIONS_URL,
        *,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key
        self._url = url
        self._timeout_s = timeout_s
        self._transport = transport

    @classmethod
    def from_env(cls) -> "RouteClient":
        key = (os.getenv("ORS_KEY") or "").strip()
        if not key:
            raise RuntimeError("Missing required environment variables: ORS_KEY")
        return cls(
            key,
            os.getenv("ORS_DIRECTIONS_URL", DEFAULT_ORS_DIRECTIONS_URL),
            timeout_s=float(os.getenv("ORS_HTTP_TIMEOUT_S", "10")),
        )

    async def fetch_route(self, start: Sequence[float], end: Sequence[float]) -> List[List[float]]:
        """Driving route between two ``(lat, lon)`` points as ``[[lat, lon], ...]``."""
        start_lat, start_lon = start[0], start[1]
        end_lat, end_lon = end[0], end[1]
        params = {
            "start": f"{start_lon},{start_lat}",
            "end": f"{end_lon},{end_lat}",
            "geometry_format": "geojson",
        }
        kwargs = {"timeout": self._timeout_s}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        try:
            async with httpx.AsyncClient(**kwargs) as client:
                response = await client.get(self._url, params=params, headers={"Authorization": self._api_key})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise TransientNetworkError(
                f"route request returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TransientNetworkError(f"route request failed: {exc}") from exc
        route = extract_route_latlngs(data)
        print(f"[route] {len(route)} points from ({start_lat}, {start_lon}) to ({end_lat}, {end_lon})")
        return route


__all__ = ["DEFAULT_ORS_DIRECTIONS_URL", "RouteClient", "extract_route_latlngs"]
