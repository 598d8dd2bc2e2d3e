"""Web Push alerts for dispatch staff.

A browser or crew tablet registers its push subscription (the JSON produced by
``PushManager.subscribe()``) together with the lowest request priority it
wants to hear about. Whenever the queue watcher reports a new or updated
transport request, the subscriptions whose threshold the request meets get a
notification. Expired subscriptions (HTTP 410 from the push service) are
dropped.
"""

import asyncio
import functools
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

from pywebpush import webpush, WebPushException

from dispatch_models import Priority, parse_priority
from queue_watcher import ChangeKind, QueueChange


PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2}


@dataclass(frozen=True)
class PushSubscription:
    endpoint: str
    p256dh: str
    auth: str
    min_priority: Priority = Priority.LOW
    registered_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> Optional["PushSubscription"]:
        """Parse a browser subscription; None when keys or priority are unusable."""
        keys = raw.get("keys") or {}
        endpoint = raw.get("endpoint")
        if not endpoint or not isinstance(keys, Mapping) or not keys.get("p256dh") or not keys.get("auth"):
            return None
        min_priority = Priority.LOW
        if raw.get("minPriority") is not None:
            min_priority = parse_priority(raw.get("minPriority"))
            if min_priority is None:
                return None
        extra = {"registered_at": raw["registeredAt"]} if raw.get("registeredAt") else {}
        return cls(
            endpoint=str(endpoint),
            p256dh=str(keys["p256dh"]),
            auth=str(keys["auth"]),
            min_priority=min_priority,
            **extra,
        )

    def wants(self, priority: Priority) -> bool:
        return PRIORITY_RANK[priority] >= PRIORITY_RANK[self.min_priority]

    def to_subscription_info(self) -> dict:
        """Return dict in the format expected by pywebpush."""
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh, "auth": self.auth},
        }

    def to_dict(self) -> dict:
        return {
            **self.to_subscription_info(),
            "minPriority": self.min_priority.value,
            "registeredAt": self.registered_at,
        }


class PushSubscriptionStore:
    """Subscriptions persisted as a JSON list in the browser's own shape."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._by_endpoint: Dict[str, PushSubscription] = {}
        for raw in self._read():
            subscription = PushSubscription.from_payload(raw) if isinstance(raw, Mapping) else None
            if subscription is not None:
                self._by_endpoint[subscription.endpoint] = subscription

    def _read(self) -> list:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[push] could not read {self._path}: {exc}")
            return []
        return data if isinstance(data, list) else []

    def _write(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps([s.to_dict() for s in self._by_endpoint.values()], indent=2))
        tmp_path.replace(self._path)

    async def add(self, subscription: PushSubscription) -> bool:
        """Add or replace a subscription. Returns True if the endpoint was new."""
        async with self._lock:
            is_new = subscription.endpoint not in self._by_endpoint
            self._by_endpoint[subscription.endpoint] = subscription
            self._write()
            return is_new

    async def remove(self, endpoint: str) -> bool:
        async with self._lock:
            if self._by_endpoint.pop(endpoint, None) is None:
                return False
            self._write()
            return True

    async def recipients(self, priority: Priority) -> List[PushSubscription]:
        async with self._lock:
            return [s for s in self._by_endpoint.values() if s.wants(priority)]

    async def count(self) -> int:
        async with self._lock:
            return len(self._by_endpoint)


_STATUS_TEXT = {
    "pending": "pending",
    "in-process": "in process",
    "completed": "completed",
    "cancelled": "cancelled",
}


def alert_payload(change: QueueChange) -> Optional[dict]:
    """Build the push payload for a queue change, or None if it is not alert-worthy."""
    request = change.request
    if request is None:
        return None
    if change.kind is ChangeKind.CREATED:
        title = "New transport request"
        body = f"{request.patient}: {request.origin} -> {request.destination}"
    elif change.kind is ChangeKind.TRANSITIONED:
        title = "Transport request updated"
        status = change.current_status.value if change.current_status else ""
        body = f"{request.patient} is now {_STATUS_TEXT.get(status, status)}"
    else:
        return None
    return {
        "title": title,
        "body": body[:200],
        "tag": f"request-{request.id}-{change.kind.value}",
        "url": f"/requests/{request.id}",
        "request_id": request.id,
        "priority": request.priority.value,
    }


class PushAlertSender:
    def __init__(
        self,
        store: PushSubscriptionStore,
        vapid_private_key: str,
        vapid_subject: str,
    ):
        self._store = store
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._pending: Set[asyncio.Task] = set()
        self.sent_count = 0

    @property
    def configured(self) -> bool:
        return bool(self._vapid_private_key)

    def handle_change(self, change: QueueChange) -> None:
        """Watcher listener: schedules delivery without blocking the poll."""
        payload = alert_payload(change)
        if payload is None or not self.configured:
            return
        task = asyncio.get_running_loop().create_task(self.send(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def send(self, payload: dict) -> int:
        """Deliver one payload to every interested subscriber; returns how many accepted it.

        A payload without a priority goes to everyone.
        """
        priority = parse_priority(payload.get("priority")) or Priority.HIGH
        subscriptions = await self._store.recipients(priority)
        if not subscriptions:
            return 0
        loop = asyncio.get_running_loop()
        data = json.dumps(payload)
        delivered = 0
        for sub in subscriptions:
            try:
                # pywebpush is synchronous.
                await loop.run_in_executor(
                    None,
                    functools.partial(
                        webpush,
                        subscription_info=sub.to_subscription_info(),
                        data=data,
                        vapid_private_key=self._vapid_private_key,
                        vapid_claims={"sub": self._vapid_subject},
                    ),
                )
                delivered += 1
            except WebPushException as e:
                if e.response is not None and e.response.status_code == 410:
                    print("[push] removing expired subscription")
                    await self._store.remove(sub.endpoint)
                else:
                    print(f"[push] WebPushException: {e}")
            except Exception as push_err:
                print(f"[push] push error: {push_err}")
        self.sent_count += delivered
        print(f"[push] sent {payload.get('tag')} to {delivered}/{len(subscriptions)} subscribers")
        return delivered

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = ["PRIORITY_RANK", "PushAlertSender", "PushSubscription", "PushSubscriptionStore", "alert_payload"]
