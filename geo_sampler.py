"""Position sampling for a tracked unit.

``GeoSampler`` turns a ``PositionProvider`` (the unit's GPS source) into a
fixed-cadence stream of ``(lat, lon)`` samples. Every acquisition is timed
out; a failed acquisition is reported through ``on_error`` and the schedule
keeps running, so the next tick simply tries again.
"""
from __future__ import annotations

import asyncio
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Tuple

import httpx

from dispatch_errors import PositionError
from periodic import PeriodicTask


DEFAULT_GEO_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class GeoSample:
    lat: float
    lon: float
    taken_at: float  # epoch seconds

    @property
    def point(self) -> Tuple[float, float]:
        return (self.lat, self.lon)


class PositionProvider(ABC):
    """Source of the device's current position."""

    @abstractmethod
    async def current_position(self) -> Tuple[float, float]:
        """Return ``(lat, lon)`` or raise ``PositionError``."""


class HttpPositionProvider(PositionProvider):
    """Reads the current fix from a GPS gateway that serves ``{"lat": .., "lon": ..}``."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None):
        self._url = url
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_env(cls) -> "HttpPositionProvider":
        url = (os.getenv("POSITION_SOURCE_URL") or "").strip()
        if not url:
            raise RuntimeError("Missing required environment variables: POSITION_SOURCE_URL")
        return cls(url)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=DEFAULT_GEO_TIMEOUT_S)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def current_position(self) -> Tuple[float, float]:
        client = await self._ensure_client()
        try:
            response = await client.get(self._url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise PositionError(PositionError.POSITION_UNAVAILABLE, f"position source unreachable: {exc}") from exc
        if response.status_code in {401, 403}:
            raise PositionError(PositionError.PERMISSION_DENIED, "position source refused access")
        if response.status_code != 200:
            raise PositionError(
                PositionError.POSITION_UNAVAILABLE,
                f"position source returned {response.status_code}",
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise PositionError(PositionError.POSITION_UNAVAILABLE, "position source sent invalid JSON") from exc
        if not isinstance(data, dict):
            raise PositionError(PositionError.POSITION_UNAVAILABLE, "position source sent no fix")
        lat = data.get("lat", data.get("latitude"))
        lon = data.get("lon", data.get("longitude"))
        try:
            return float(lat), float(lon)
        except (TypeError, ValueError) as exc:
            raise PositionError(PositionError.POSITION_UNAVAILABLE, "position source sent no fix") from exc


class GeoSampler:
    def __init__(self, provider: PositionProvider, *, timeout_s: float = DEFAULT_GEO_TIMEOUT_S):
        self._provider = provider
        self.timeout_s = timeout_s
        self._task: Optional[PeriodicTask] = None

    @property
    def running(self) -> bool:
        return self._task is not None and self._task.running

    async def sample_once(self) -> GeoSample:
        """Acquire one fix, converting a slow provider into a ``timeout`` error."""
        try:
            lat, lon = await asyncio.wait_for(self._provider.current_position(), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise PositionError(
                PositionError.TIMEOUT, f"no position fix within {self.timeout_s:.1f}s"
            ) from exc
        return GeoSample(lat=lat, lon=lon, taken_at=time.time())

    def start(
        self,
        interval_s: float,
        on_sample: Callable[[GeoSample], None],
        on_error: Optional[Callable[[PositionError], None]] = None,
    ) -> None:
        """Deliver a sample to ``on_sample`` every ``interval_s`` seconds.

        A tick that fires while the previous acquisition is still pending is
        skipped. After ``stop()``, results of an acquisition that was already
        in flight are dropped.
        """
        self.stop()
        task: PeriodicTask

        async def _tick() -> None:
            generation = task.generation
            try:
                sample = await self.sample_once()
            except PositionError as exc:
                if task.is_current(generation):
                    print(f"[geo] sample failed ({exc.kind}): {exc}")
                    if on_error is not None:
                        on_error(exc)
                return
            if task.is_current(generation):
                on_sample(sample)

        task = PeriodicTask("geo_sampler", interval_s, _tick)
        self._task = task
        task.start()

    def stop(self) -> None:
        if self._task is not None:
            self._task.stop()
            self._task = None

    async def stream(self, interval_s: float) -> AsyncIterator[GeoSample]:
        """Yield successful samples forever; each iteration of a new stream starts fresh.

        Failed acquisitions are skipped. The pause between samples never
        overlaps an acquisition, since the next one starts only after the
        consumer has taken the previous sample.
        """
        while True:
            started = time.monotonic()
            try:
                yield await self.sample_once()
            except PositionError as exc:
                print(f"[geo] stream sample failed ({exc.kind}): {exc}")
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, interval_s - elapsed))


__all__ = [
    "DEFAULT_GEO_TIMEOUT_S",
    "GeoSample",
    "GeoSampler",
    "HttpPositionProvider",
    "PositionProvider",
]
