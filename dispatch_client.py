"""Async client for the dispatch backend REST API."""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Sequence

import httpx

from dispatch_errors import StateConflictError, TransientNetworkError
from dispatch_models import (
    CrewMember,
    NewTransportRequest,
    RequestStatus,
    Status,
    StatusCatalog,
    TransportRequest,
    Unit,
    parse_crew_member,
    parse_transport_request,
    parse_transport_requests,
    parse_unit,
    parse_units,
)


# Position used by the backend when a unit is created without coordinates.
DEFAULT_UNIT_POSITION = (10.9639, -74.7964)

CONFLICT_STATUS_CODES = {400, 409, 422}


class DispatchClient:
    """Thin wrapper around the backend endpoints the console depends on.

    Every transport failure or non-2xx response is raised as
    ``TransientNetworkError``; a refused request transition is raised as
    ``StateConflictError``.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        catalog: Optional[StatusCatalog] = None,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token or None
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.catalog = catalog or StatusCatalog()

    @classmethod
    def from_env(cls, catalog: Optional[StatusCatalog] = None) -> "DispatchClient":
        """Build a ``DispatchClient`` from environment configuration.

        * ``DISPATCH_API_BASE`` - required, e.g. ``https://dispatch.example.org``
        * ``DISPATCH_API_TOKEN`` - optional bearer token.
        * ``DISPATCH_HTTP_TIMEOUT_S`` - optional request timeout (default 10).
        """

        base_url = (os.getenv("DISPATCH_API_BASE") or "").strip()
        if not base_url:
            raise RuntimeError("Missing required environment variables: DISPATCH_API_BASE")
        token = (os.getenv("DISPATCH_API_TOKEN") or "").strip()
        timeout_s = float(os.getenv("DISPATCH_HTTP_TIMEOUT_S", "10"))
        return cls(base_url, token or None, catalog=catalog, timeout_s=timeout_s)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            kwargs: Dict[str, Any] = {
                "base_url": self._base_url,
                "timeout": self._timeout_s,
                "headers": headers,
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"{method} {path} failed: {exc}") from exc
        return response

    @staticmethod
    def _check(response: httpx.Response, method: str, path: str) -> None:
        if response.status_code >= 400:
            raise TransientNetworkError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        self._check(response, method, path)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TransientNetworkError(f"{method} {path} returned invalid JSON") from exc

    # ---------------------------
    # Units & statuses
    # ---------------------------
    async def list_statuses(self) -> List[Status]:
        data = await self._json("GET", "/statuses")
        if not isinstance(data, list):
            return []
        return self.catalog.load(data)

    async def list_units(self) -> List[Unit]:
        return parse_units(await self._json("GET", "/units"), self.catalog)

    async def list_crew(self) -> List[CrewMember]:
        data = await self._json("GET", "/crew")
        if not isinstance(data, list):
            return []
        crew: List[CrewMember] = []
        for raw in data:
            if isinstance(raw, dict):
                member = parse_crew_member(raw)
                if member is not None:
                    crew.append(member)
        return crew

    async def update_unit_location(
        self, unit_id: str, lat: float, lon: float, location_label: str = ""
    ) -> Optional[Unit]:
        data = await self._json(
            "PATCH",
            f"/units/{unit_id}/location",
            json={"lat": lat, "lon": lon, "locationLabel": location_label},
        )
        if isinstance(data, dict):
            return parse_unit(data, self.catalog)
        return None

    async def nearest_unit(self, lat: float, lon: float) -> Optional[Unit]:
        """Backend-side nearest unit lookup; ``None`` on 404 or an empty body."""
        response = await self._request("GET", "/units/nearest", params={"lat": lat, "lon": lon})
        if response.status_code == 404:
            return None
        self._check(response, "GET", "/units/nearest")
        if not response.content:
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict) and data:
            return parse_unit(data, self.catalog)
        return None

    @staticmethod
    def _unit_payload(
        plate: str,
        crew_ids: Sequence[str],
        status_id: str,
        location_label: str,
        lat: Optional[float],
        lon: Optional[float],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "plate": plate,
            "crewIds": list(crew_ids),
            "statusId": status_id,
            "locationLabel": location_label,
        }
        if lat is not None and lon is not None:
            payload["lat"] = lat
            payload["lon"] = lon
        return payload

    async def create_unit(
        self,
        plate: str,
        crew_ids: Sequence[str],
        status_id: str,
        location_label: str = "",
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> Optional[Unit]:
        if lat is None or lon is None:
            lat, lon = DEFAULT_UNIT_POSITION
        payload = self._unit_payload(plate, crew_ids, status_id, location_label, lat, lon)
        data = await self._json("POST", "/units", json=payload)
        return parse_unit(data, self.catalog) if isinstance(data, dict) else None

    async def update_unit(
        self,
        unit_id: str,
        plate: str,
        crew_ids: Sequence[str],
        status_id: str,
        location_label: str = "",
    ) -> Optional[Unit]:
        payload = self._unit_payload(plate, crew_ids, status_id, location_label, None, None)
        data = await self._json("PATCH", f"/units/{unit_id}", json=payload)
        return parse_unit(data, self.catalog) if isinstance(data, dict) else None

    async def delete_unit(self, unit_id: str) -> None:
        response = await self._request("DELETE", f"/units/{unit_id}")
        self._check(response, "DELETE", f"/units/{unit_id}")

    # ---------------------------
    # Transport requests
    # ---------------------------
    async def list_requests(self) -> List[TransportRequest]:
        return parse_transport_requests(await self._json("GET", "/requests"))

    async def create_request(self, new_request: NewTransportRequest) -> Optional[TransportRequest]:
        new_request.validate()
        data = await self._json("POST", "/requests", json=new_request.to_payload())
        return parse_transport_request(data) if isinstance(data, dict) else None

    async def update_request_status(self, request_id: str, status: RequestStatus) -> Optional[TransportRequest]:
        path = f"/requests/{request_id}"
        response = await self._request("PATCH", path, json={"status": status.value})
        if response.status_code in CONFLICT_STATUS_CODES:
            raise StateConflictError(
                request_id,
                f"backend refused {status.value} for request {request_id} ({response.status_code})",
                status_code=response.status_code,
            )
        self._check(response, "PATCH", path)
        try:
            data = response.json() if response.content else None
        except ValueError:
            data = None
        return parse_transport_request(data) if isinstance(data, dict) else None


__all__ = ["DEFAULT_UNIT_POSITION", "DispatchClient"]
