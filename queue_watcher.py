"""Change detection over the transport-request queue.

The watcher keeps the previous ``id -> status`` snapshot and diffs every new
list against it. Each request is classified as created, transitioned,
unchanged or removed; created and transitioned requests produce exactly one
event each, in the order they appear in the fetched list.

Polling is one way of feeding the watcher. Anything that can deliver a full
request list (a socket push, for instance) can call ``apply`` instead; the
classification is identical.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from dispatch_errors import DispatchError
from dispatch_models import RequestStatus, TransportRequest
from notifications import Notifier
from periodic import PeriodicTask


DEFAULT_POLL_INTERVAL_S = 15.0
DEFAULT_MIN_GAP_S = 5.0


class ChangeKind(str, Enum):
    CREATED = "created"
    TRANSITIONED = "transitioned"
    UNCHANGED = "unchanged"
    REMOVED = "removed"


@dataclass(frozen=True)
class QueueChange:
    kind: ChangeKind
    request_id: str
    request: Optional[TransportRequest] = None
    previous_status: Optional[RequestStatus] = None
    current_status: Optional[RequestStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "request_id": self.request_id,
            "request": self.request.to_dict() if self.request else None,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "current_status": self.current_status.value if self.current_status else None,
        }


def classify_changes(
    previous: Mapping[str, RequestStatus],
    current: Sequence[TransportRequest],
) -> List[QueueChange]:
    """Classify every request in ``current`` against ``previous``.

    Results follow the order of ``current``; requests missing from ``current``
    are appended as ``REMOVED``.
    """
    changes: List[QueueChange] = []
    seen: set = set()
    for request in current:
        seen.add(request.id)
        before = previous.get(request.id)
        if before is None:
            kind = ChangeKind.CREATED
        elif before != request.status:
            kind = ChangeKind.TRANSITIONED
        else:
            kind = ChangeKind.UNCHANGED
        changes.append(
            QueueChange(
                kind=kind,
                request_id=request.id,
                request=request,
                previous_status=before,
                current_status=request.status,
            )
        )
    for request_id, before in previous.items():
        if request_id not in seen:
            changes.append(
                QueueChange(kind=ChangeKind.REMOVED, request_id=request_id, previous_status=before)
            )
    return changes


@dataclass(frozen=True)
class QueueSnapshot:
    requests: Tuple[TransportRequest, ...]
    statuses: Mapping[str, RequestStatus]
    fetched_at: float

    def find(self, request_id: str) -> Optional[TransportRequest]:
        for request in self.requests:
            if request.id == request_id:
                return request
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fetched_at": self.fetched_at,
            "requests": [request.to_dict() for request in self.requests],
        }


_STATUS_LABELS = {
    RequestStatus.PENDING: "pending",
    RequestStatus.IN_PROCESS: "in process",
    RequestStatus.COMPLETED: "completed",
    RequestStatus.CANCELLED: "cancelled",
}


class DispatchQueueWatcher:
    def __init__(
        self,
        client: Any,
        notifier: Notifier,
        *,
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
        min_gap_s: float = DEFAULT_MIN_GAP_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._notifier = notifier
        # The timer must never be throttled by the automatic-poll gap.
        self.interval_s = max(interval_s, min_gap_s)
        self.min_gap_s = min_gap_s
        self._clock = clock
        self._listeners: List[Callable[[QueueChange], None]] = []
        self._lock = asyncio.Lock()
        self._task: Optional[PeriodicTask] = None
        self._epoch = 0
        self._primed = False
        self._snapshot = QueueSnapshot(requests=(), statuses={}, fetched_at=0.0)
        self._last_automatic_poll: Optional[float] = None
        self.poll_count = 0
        self.failed_polls = 0
        self.throttled_polls = 0

    # ---------------------------
    # Lifecycle
    # ---------------------------
    @property
    def running(self) -> bool:
        return self._task is not None and self._task.running

    @property
    def primed(self) -> bool:
        return self._primed

    def start(self) -> None:
        if self.running:
            return
        self._task = PeriodicTask("queue_watcher", self.interval_s, self._scheduled_poll)
        self._task.start()
        print(f"[queue_watcher] started, polling every {self.interval_s:.0f}s")

    def stop(self) -> None:
        self._epoch += 1
        if self._task is not None:
            self._task.stop()
            self._task = None

    async def _scheduled_poll(self) -> None:
        await self.poll(scheduled=True)

    def on_change(self, callback: Callable[[QueueChange], None]) -> None:
        self._listeners.append(callback)

    # ---------------------------
    # Snapshot access
    # ---------------------------
    def snapshot(self) -> QueueSnapshot:
        return self._snapshot

    def status_of(self, request_id: str) -> Optional[RequestStatus]:
        return self._snapshot.statuses.get(request_id)

    def prime(self, requests: Sequence[TransportRequest]) -> None:
        """Install a baseline without emitting events."""
        self._snapshot = self._build_snapshot(requests)
        self._primed = True

    @staticmethod
    def _build_snapshot(requests: Sequence[TransportRequest]) -> QueueSnapshot:
        return QueueSnapshot(
            requests=tuple(requests),
            statuses={request.id: request.status for request in requests},
            fetched_at=time.time(),
        )

    # ---------------------------
    # Polling
    # ---------------------------
    async def poll(self, force: bool = False, *, scheduled: bool = False) -> Optional[List[QueueChange]]:
        """Fetch the queue and apply it.

        Unforced polls closer than ``min_gap_s`` to the previous automatic
        poll are skipped (returns None). Timer ticks (``scheduled=True``) are
        never skipped; they only move the automatic-poll clock. ``force=True``
        is for polls triggered by an operator action, e.g. right after
        submitting a request; it bypasses the gap and does not move the clock.
        Returns the emitted changes, or None when skipped, failed or stopped.
        """
        if scheduled:
            self._last_automatic_poll = self._clock()
        elif not force:
            now = self._clock()
            if self._last_automatic_poll is not None and now - self._last_automatic_poll < self.min_gap_s:
                self.throttled_polls += 1
                return None
            self._last_automatic_poll = now
        epoch = self._epoch
        async with self._lock:
            if epoch != self._epoch:
                return None
            self.poll_count += 1
            try:
                current = await self._client.list_requests()
            except DispatchError as exc:
                if epoch != self._epoch:
                    return None
                self.failed_polls += 1
                print(f"[queue_watcher] poll #{self.poll_count} failed: {exc}")
                self._notifier.error_once(
                    "queue:poll",
                    "Could not load transport requests",
                    "The request list could not be refreshed; retrying on the next cycle.",
                )
                return None
            if epoch != self._epoch:
                return None
            self._notifier.clear("queue:poll")
            return self._apply_locked(current)

    async def apply(self, current: Sequence[TransportRequest]) -> List[QueueChange]:
        """Classify a full request list obtained from any source."""
        async with self._lock:
            return self._apply_locked(current)

    def _apply_locked(self, current: Sequence[TransportRequest]) -> List[QueueChange]:
        if not self._primed:
            self.prime(current)
            print(f"[queue_watcher] baseline of {len(current)} requests")
            return []
        changes = classify_changes(self._snapshot.statuses, current)
        emitted = [c for c in changes if c.kind in (ChangeKind.CREATED, ChangeKind.TRANSITIONED)]
        removed = [c for c in changes if c.kind is ChangeKind.REMOVED]
        if removed:
            print(f"[queue_watcher] {len(removed)} requests disappeared from the queue; ignoring")
        self._snapshot = self._build_snapshot(current)
        for change in emitted:
            self._emit(change)
        return emitted

    def _emit(self, change: QueueChange) -> None:
        request = change.request
        if request is None:
            print(f"[queue_watcher] change for {change.request_id} carries no request, not emitted")
            return
        if change.kind is ChangeKind.CREATED:
            self._notifier.info(
                "New transport request",
                f"{request.patient}: {request.origin} -> {request.destination}",
                {"change": change.to_dict()},
            )
        else:
            before = _STATUS_LABELS.get(change.previous_status, "unknown")
            after = _STATUS_LABELS.get(change.current_status, "unknown")
            self._notifier.info(
                "Transport request updated",
                f"Request {request.id} ({request.patient}) changed from {before} to {after}",
                {"change": change.to_dict()},
            )
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as exc:
                print(f"[queue_watcher] listener failed: {exc}")


__all__ = [
    "ChangeKind",
    "DEFAULT_MIN_GAP_S",
    "DEFAULT_POLL_INTERVAL_S",
    "DispatchQueueWatcher",
    "QueueChange",
    "QueueSnapshot",
    "classify_changes",
]
