import asyncio
import sys
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dispatch_errors import PositionError  # noqa: E402
from geo_sampler import GeoSampler, HttpPositionProvider, PositionProvider  # noqa: E402


class ScriptedProvider(PositionProvider):
    """Returns scripted fixes (or raises scripted errors) after an optional delay."""

    def __init__(self, results, delay=0.0):
        self._results = list(results)
        self._delay = delay
        self.calls = 0
        self.active = 0
        self.peak = 0

    async def current_position(self):
        self.calls += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            result = self._results[(self.calls - 1) % len(self._results)]
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.active -= 1


def test_sample_once_returns_fix():
    sampler = GeoSampler(ScriptedProvider([(10.96, -74.79)]))
    sample = asyncio.run(sampler.sample_once())
    assert sample.point == (10.96, -74.79)
    assert sample.taken_at > 0


def test_slow_provider_times_out():
    sampler = GeoSampler(ScriptedProvider([(1.0, 2.0)], delay=1.0), timeout_s=0.05)
    with pytest.raises(PositionError) as excinfo:
        asyncio.run(sampler.sample_once())
    assert excinfo.value.kind == PositionError.TIMEOUT


def test_errors_are_reported_and_schedule_continues():
    provider = ScriptedProvider(
        [PositionError(PositionError.PERMISSION_DENIED), (1.0, 2.0)]
    )

    async def scenario():
        samples, errors = [], []
        sampler = GeoSampler(provider)
        sampler.start(0.02, samples.append, errors.append)
        await asyncio.sleep(0.15)
        sampler.stop()
        return samples, errors

    samples, errors = asyncio.run(scenario())
    assert errors and all(e.kind == PositionError.PERMISSION_DENIED for e in errors)
    assert samples and all(s.point == (1.0, 2.0) for s in samples)


def test_ticks_coalesce_while_acquisition_pending():
    provider = ScriptedProvider([(1.0, 2.0)], delay=0.1)

    async def scenario():
        sampler = GeoSampler(provider)
        sampler.start(0.02, lambda sample: None)
        await asyncio.sleep(0.3)
        sampler.stop()

    asyncio.run(scenario())
    assert provider.peak == 1
    assert provider.calls <= 4


def test_no_callback_after_stop():
    provider = ScriptedProvider([(1.0, 2.0)], delay=0.1)

    async def scenario():
        samples, errors = [], []
        sampler = GeoSampler(provider)
        sampler.start(0.5, samples.append, errors.append)
        await asyncio.sleep(0.03)
        sampler.stop()
        await asyncio.sleep(0.2)
        return samples, errors, sampler.running

    samples, errors, running = asyncio.run(scenario())
    assert samples == []
    assert errors == []
    assert running is False


def test_stream_skips_failures_and_restarts_fresh():
    provider = ScriptedProvider(
        [(1.0, 1.0), PositionError(PositionError.POSITION_UNAVAILABLE), (2.0, 2.0)]
    )

    async def take(sampler, n):
        points = []
        stream = sampler.stream(0.0)
        async for sample in stream:
            points.append(sample.point)
            if len(points) == n:
                break
        await stream.aclose()
        return points

    sampler = GeoSampler(provider)
    assert asyncio.run(take(sampler, 2)) == [(1.0, 1.0), (2.0, 2.0)]
    assert asyncio.run(take(sampler, 1)) == [(1.0, 1.0)]


def _http_provider(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpPositionProvider("https://gps.example.org/fix", client=client)


def test_http_provider_reads_latitude_longitude():
    provider = _http_provider(lambda request: httpx.Response(200, json={"latitude": 10.5, "longitude": "-74.2"}))
    assert asyncio.run(provider.current_position()) == (10.5, -74.2)


def test_http_provider_maps_forbidden_to_permission_denied():
    provider = _http_provider(lambda request: httpx.Response(403))
    with pytest.raises(PositionError) as excinfo:
        asyncio.run(provider.current_position())
    assert excinfo.value.kind == PositionError.PERMISSION_DENIED


def test_http_provider_without_fix_is_unavailable():
    provider = _http_provider(lambda request: httpx.Response(200, json={"status": "searching"}))
    with pytest.raises(PositionError) as excinfo:
        asyncio.run(provider.current_position())
    assert excinfo.value.kind == PositionError.POSITION_UNAVAILABLE
