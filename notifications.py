"""Operator notification channel.

Components never talk to the UI directly: they post ``Notification`` objects
to a ``Notifier`` that is handed to them at construction time. The notifier
keeps a short history, fans out to SSE subscribers and to optional sinks
(e.g. web-push delivery).
"""
from __future__ import annotations

import asyncio
import itertools
import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set


INFO = "info"
ERROR = "error"


@dataclass
class Notification:
    id: int
    level: str
    title: str
    message: str
    created_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "level": self.level,
            "title": self.title,
            "message": self.message,
            "created_at": self.created_at.isoformat().replace("+00:00", "Z"),
            "payload": self.payload,
        }


class Notifier:
    def __init__(self, history: int = 100, queue_size: int = 10):
        self._ids = itertools.count(1)
        self._history: Deque[Notification] = deque(maxlen=history)
        self._queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()
        self._sinks: List[Callable[[Notification], None]] = []
        # Keys of failures that have already been surfaced and not yet cleared.
        self._active_keys: Set[str] = set()

    def add_sink(self, sink: Callable[[Notification], None]) -> None:
        self._sinks.append(sink)

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    def recent(self, limit: Optional[int] = None) -> List[Notification]:
        items = list(self._history)
        if limit is not None:
            items = items[-limit:]
        return items

    def notify(
        self,
        level: str,
        title: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        notification = Notification(
            id=next(self._ids),
            level=level,
            title=title,
            message=message,
            created_at=datetime.now(timezone.utc),
            payload=dict(payload or {}),
        )
        self._history.append(notification)
        print(f"[notify] {level}: {title} - {message}")
        encoded = f"data: {json.dumps(notification.to_dict())}\n\n"
        for q in list(self._subscribers):
            try:
                q.put_nowait(encoded)
            except asyncio.QueueFull:
                # Slow consumer; it will pick up the history on reconnect.
                pass
        for sink in list(self._sinks):
            try:
                sink(notification)
            except Exception as exc:
                print(f"[notify] sink failed: {exc}")
        return notification

    def info(self, title: str, message: str, payload: Optional[Dict[str, Any]] = None) -> Notification:
        return self.notify(INFO, title, message, payload)

    def error(self, title: str, message: str, payload: Optional[Dict[str, Any]] = None) -> Notification:
        return self.notify(ERROR, title, message, payload)

    def error_once(self, key: str, title: str, message: str) -> Optional[Notification]:
        """Surface a failure only the first time ``key`` is seen until ``clear`` is called."""
        if key in self._active_keys:
            return None
        self._active_keys.add(key)
        return self.error(title, message, {"key": key})

    def clear(self, key: str) -> None:
        self._active_keys.discard(key)


__all__ = ["ERROR", "INFO", "Notification", "Notifier"]
