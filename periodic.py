"""Cancellable fixed-cadence task runner used by every background loop."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional


class PeriodicTask:
    """Run ``tick`` every ``interval_s`` seconds on the running event loop.

    The timer fires independently of how long a tick takes. If the previous
    tick is still in flight when the timer fires, the new tick is skipped
    (coalesced) rather than queued, so at most one tick runs at a time.

    ``stop()`` cancels the timer and the in-flight tick. Callers that deliver
    results from inside a tick should check ``is_current(generation)`` before
    touching shared state; a stopped (or restarted) task never reports a stale
    generation as current.
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        tick: Callable[[], Awaitable[None]],
        *,
        run_immediately: bool = True,
    ):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.name = name
        self.interval_s = interval_s
        self._tick = tick
        self._run_immediately = run_immediately
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._generation = 0
        self.tick_count = 0
        self.skipped_ticks = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, generation: int) -> bool:
        return self.running and generation == self._generation

    def start(self) -> None:
        if self.running:
            return
        self._generation += 1
        self._loop_task = asyncio.create_task(self._run(self._generation))

    def stop(self) -> None:
        self._generation += 1
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None

    async def _run(self, generation: int) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval_s)
        while generation == self._generation:
            if self._inflight is not None and not self._inflight.done():
                self.skipped_ticks += 1
                print(f"[periodic] {self.name}: previous tick still running, skipping")
            else:
                self.tick_count += 1
                self._inflight = asyncio.create_task(self._guarded_tick())
            await asyncio.sleep(self.interval_s)

    async def _guarded_tick(self) -> None:
        try:
            await self._tick()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            print(f"[periodic] {self.name}: tick failed: {exc}")


__all__ = ["PeriodicTask"]
