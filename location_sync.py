from __future__ import annotations

import time
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, Optional, Tuple

from dispatch_errors import DispatchError, PositionError
from fleet_roster import FleetRoster
from geo_sampler import GeoSampler
from notifications import Notifier
from periodic import PeriodicTask


DEFAULT_SYNC_INTERVAL_S = 10.0


class SyncState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    PUBLISHING = "publishing"
    RECONCILING = "reconciling"
    ERROR = "error"


class LocationSync:
    """
    Publishes one unit's position and pulls back the authoritative roster.

    Cycle (one per tick):
    1. Sampling    - read a fix from the GeoSampler
    2. Publishing  - resolve a neighbourhood label (best-effort) and PATCH the
                     unit's location
    3. Reconciling - re-fetch the full roster and replace the local snapshot
    4. back to Idle

    A failure in Sampling or Publishing passes through Error, is reported and
    the unit goes back to Idle; the schedule is never aborted. Only one cycle
    may be in flight: a tick that arrives while a cycle is running is dropped.
    """

    def __init__(
        self,
        unit_id: str,
        sampler: GeoSampler,
        client: Any,
        roster: FleetRoster,
        notifier: Notifier,
        geocoder: Any = None,
        *,
        interval_s: float = DEFAULT_SYNC_INTERVAL_S,
    ):
        self.unit_id = unit_id
        self._sampler = sampler
        self._client = client
        self._roster = roster
        self._notifier = notifier
        self._geocoder = geocoder
        self.interval_s = interval_s
        self.state = SyncState.IDLE
        self._cycle_running = False
        self._task: Optional[PeriodicTask] = None
        # Bumped on stop() so results of an abandoned cycle are discarded.
        self._epoch = 0

        self.cycles_completed = 0
        self.dropped_ticks = 0
        self.last_error: Optional[str] = None
        self.last_published: Optional[Tuple[float, float, str]] = None
        self.last_cycle_at: Optional[float] = None
        self.recent_transitions: Deque[Tuple[float, str]] = deque(maxlen=50)

    @property
    def running(self) -> bool:
        return self._task is not None and self._task.running

    def _set_state(self, state: SyncState) -> None:
        self.state = state
        self.recent_transitions.append((time.time(), state.value))

    def start(self) -> None:
        if self.running:
            return
        self._task = PeriodicTask(f"location_sync[{self.unit_id}]", self.interval_s, self._scheduled_tick)
        self._task.start()
        print(f"[location_sync] started for unit {self.unit_id} every {self.interval_s:.0f}s")

    def stop(self) -> None:
        self._epoch += 1
        if self._task is not None:
            self._task.stop()
            self._task = None
        self._cycle_running = False
        self._set_state(SyncState.IDLE)

    async def _scheduled_tick(self) -> None:
        await self.tick()

    async def tick(self) -> bool:
        """Run one cycle. Returns False when the tick was dropped."""
        if self._cycle_running:
            self.dropped_ticks += 1
            print(f"[location_sync] unit {self.unit_id}: cycle still in flight, dropping tick")
            return False
        self._cycle_running = True
        epoch = self._epoch
        try:
            await self._cycle(epoch)
        finally:
            if epoch == self._epoch:
                self._cycle_running = False
                self._set_state(SyncState.IDLE)
        return True

    def _fail(self, epoch: int, key: str, title: str, exc: Exception) -> None:
        if epoch != self._epoch:
            return
        self._set_state(SyncState.ERROR)
        self.last_error = str(exc)
        print(f"[location_sync] unit {self.unit_id}: {title}: {exc}")
        self._notifier.error_once(key, title, str(exc))

    async def _cycle(self, epoch: int) -> None:
        self._set_state(SyncState.SAMPLING)
        try:
            sample = await self._sampler.sample_once()
        except PositionError as exc:
            self._fail(epoch, f"location:{exc.kind}", "Location unavailable", exc)
            return
        if epoch != self._epoch:
            return
        self._notifier.clear(f"location:{PositionError.PERMISSION_DENIED}")
        self._notifier.clear(f"location:{PositionError.POSITION_UNAVAILABLE}")
        self._notifier.clear(f"location:{PositionError.TIMEOUT}")

        self._set_state(SyncState.PUBLISHING)
        label = await self._resolve_label(sample.lat, sample.lon)
        if epoch != self._epoch:
            return
        try:
            await self._client.update_unit_location(self.unit_id, sample.lat, sample.lon, label)
        except DispatchError as exc:
            self._fail(epoch, "location:publish", "Could not update unit location", exc)
            return
        if epoch != self._epoch:
            return
        self._notifier.clear("location:publish")
        self.last_published = (sample.lat, sample.lon, label)

        self._set_state(SyncState.RECONCILING)
        try:
            units = await self._client.list_units()
        except DispatchError as exc:
            # The write went through; the roster catches up on the next cycle.
            self._fail(epoch, "location:reconcile", "Could not refresh the fleet roster", exc)
            return
        if epoch != self._epoch:
            return
        self._notifier.clear("location:reconcile")
        self._roster.replace(units)
        self.cycles_completed += 1
        self.last_cycle_at = time.time()
        self.last_error = None

    async def _resolve_label(self, lat: float, lon: float) -> str:
        if self._geocoder is None:
            return ""
        try:
            return await self._geocoder.neighbourhood(lat, lon)
        except Exception as exc:
            print(f"[location_sync] unit {self.unit_id}: reverse geocode failed, publishing without label: {exc}")
            return ""

    def status(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "running": self.running,
            "state": self.state.value,
            "interval_s": self.interval_s,
            "cycles_completed": self.cycles_completed,
            "dropped_ticks": self.dropped_ticks,
            "last_error": self.last_error,
            "last_cycle_at": self.last_cycle_at,
            "last_published": (
                {"lat": self.last_published[0], "lon": self.last_published[1], "label": self.last_published[2]}
                if self.last_published
                else None
            ),
        }


__all__ = ["DEFAULT_SYNC_INTERVAL_S", "LocationSync", "SyncState"]
