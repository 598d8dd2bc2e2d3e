"""Reverse geocoding (coordinates -> neighbourhood label) via Nominatim."""
from __future__ import annotations

import os
from typing import Optional

import httpx

from dispatch_errors import TransientNetworkError


NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"


class ReverseGeocoder:
    def __init__(
        self,
        url: str = NOMINATIM_REVERSE_URL,
        user_agent: str = "ambulance-dispatch-console",
        *,
        timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._user_agent = user_agent
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "ReverseGeocoder":
        url = (os.getenv("NOMINATIM_URL") or NOMINATIM_REVERSE_URL).strip()
        user_agent = (os.getenv("GEOCODER_USER_AGENT") or "ambulance-dispatch-console").strip()
        return cls(url, user_agent)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            if self._transport is not None:
                self._client = httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)
            else:
                self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def neighbourhood(self, lat: float, lon: float) -> str:
        """Return "road neighbourhood county" for a point.

        Raises ``TransientNetworkError`` when the lookup fails or the response
        carries no address; callers treat the label as best-effort.
        """
        client = await self._ensure_client()
        params = {"format": "json", "lat": lat, "lon": lon}
        try:
            response = await client.get(
                self._url, params=params, headers={"User-Agent": self._user_agent}
            )
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"reverse geocode failed: {exc}") from exc
        if response.status_code != 200:
            raise TransientNetworkError(
                f"reverse geocode returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise TransientNetworkError("reverse geocode returned invalid JSON") from exc
        address = data.get("address") if isinstance(data, dict) else None
        if not isinstance(address, dict):
            raise TransientNetworkError("reverse geocode returned no address")
        parts = [address.get("road") or "", address.get("neighbourhood") or "", address.get("county") or ""]
        return " ".join(part for part in parts if part).strip()


__all__ = ["NOMINATIM_REVERSE_URL", "ReverseGeocoder"]
