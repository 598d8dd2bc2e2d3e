"""Operator actions on transport requests.

    pending --accept--> in-process
    pending --reject--> cancelled

in-process, completed and cancelled accept no operator action. The
lifecycle never edits the local queue snapshot: after the backend confirms a
transition, the change becomes visible through the watcher's next poll (a
forced one is issued right away). Local state therefore only ever shows
statuses the backend has confirmed, and a transition the backend refuses is
corrected by that same poll instead of being rolled back.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from dispatch_errors import DispatchError, StateConflictError
from dispatch_models import NewTransportRequest, RequestStatus, TransportRequest
from notifications import Notifier
from queue_watcher import DispatchQueueWatcher


class LifecycleAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


TRANSITIONS: Dict[RequestStatus, Dict[LifecycleAction, RequestStatus]] = {
    RequestStatus.PENDING: {
        LifecycleAction.ACCEPT: RequestStatus.IN_PROCESS,
        LifecycleAction.REJECT: RequestStatus.CANCELLED,
    },
}


def next_status(current: Optional[RequestStatus], action: LifecycleAction) -> Optional[RequestStatus]:
    if current is None:
        return None
    return TRANSITIONS.get(current, {}).get(action)


def allowed_actions(current: Optional[RequestStatus]) -> List[LifecycleAction]:
    if current is None:
        return []
    return list(TRANSITIONS.get(current, {}))


class TransitionOutcome(str, Enum):
    SENT = "sent"
    NOT_ALLOWED = "not_allowed"
    CONFLICT = "conflict"
    FAILED = "failed"


class DispatchLifecycle:
    def __init__(self, client: Any, watcher: DispatchQueueWatcher, notifier: Notifier):
        self._client = client
        self._watcher = watcher
        self._notifier = notifier

    async def accept(self, request_id: str) -> TransitionOutcome:
        return await self._transition(request_id, LifecycleAction.ACCEPT)

    async def reject(self, request_id: str) -> TransitionOutcome:
        return await self._transition(request_id, LifecycleAction.REJECT)

    async def _transition(self, request_id: str, action: LifecycleAction) -> TransitionOutcome:
        current = self._watcher.status_of(request_id)
        target = next_status(current, action)
        if target is None:
            print(
                f"[lifecycle] {action.value} ignored for request {request_id}: "
                f"last known status {current.value if current else 'unknown'}"
            )
            return TransitionOutcome.NOT_ALLOWED
        try:
            await self._client.update_request_status(request_id, target)
        except StateConflictError as exc:
            print(f"[lifecycle] backend refused {action.value} for {request_id}: {exc}")
            self._notifier.error(
                "Request could not be updated",
                "The request was already handled or can no longer change. The list will refresh.",
                {"request_id": request_id, "action": action.value},
            )
            await self._refresh()
            return TransitionOutcome.CONFLICT
        except DispatchError as exc:
            print(f"[lifecycle] {action.value} failed for {request_id}: {exc}")
            self._notifier.error(
                "Request could not be updated",
                "Please try again.",
                {"request_id": request_id, "action": action.value},
            )
            return TransitionOutcome.FAILED
        print(f"[lifecycle] {action.value} sent for {request_id} -> {target.value}")
        await self._refresh()
        return TransitionOutcome.SENT

    async def submit(self, new_request: NewTransportRequest) -> Optional[TransportRequest]:
        """Validate and create a request, then poll the queue without waiting for the gap.

        ``InvalidRequestError`` propagates before any network call;
        backend failures are surfaced and propagate as ``DispatchError``.
        """
        new_request.validate()
        try:
            created = await self._client.create_request(new_request)
        except DispatchError as exc:
            print(f"[lifecycle] request submission failed: {exc}")
            self._notifier.error("Request not sent", "The transport request could not be sent. Please try again.")
            raise
        self._notifier.info("Request sent", f"Transport request for {new_request.patient.strip()} was sent.")
        await self._refresh()
        return created

    async def _refresh(self) -> None:
        await self._watcher.poll(force=True)


__all__ = [
    "DispatchLifecycle",
    "LifecycleAction",
    "TRANSITIONS",
    "TransitionOutcome",
    "allowed_actions",
    "next_status",
]
