"""Transient user notifications that expire on their own."""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List

from ..config import DEFAULT_NOTIFICATION_TTL_SECONDS
from .events import emit_notification_event


LEVELS = ("success", "error", "info")


@dataclass(frozen=True)
class Notification:
    id: int
    level: str
    message: str
    created_at: float
    expires_at: float

    def to_dict(self) -> Dict[str, object]:
        return {"id": self.id, "level": self.level, "message": self.message}


class NotificationCenter:
    """Queue of notifications that disappear ``ttl_seconds`` after being pushed."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_NOTIFICATION_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._ids = itertools.count(1)
        self._items: List[Notification] = []
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def push(self, level: str, message: str) -> Notification:
        if level not in LEVELS:
            level = "info"
        now = self._clock()
        notification = Notification(
            id=next(self._ids),
            level=level,
            message=message,
            created_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._items.append(notification)
        emit_notification_event(level, message, payload={"id": notification.id})
        return notification

    def success(self, message: str) -> Notification:
        return self.push("success", message)

    def error(self, message: str) -> Notification:
        return self.push("error", message)

    def info(self, message: str) -> Notification:
        return self.push("info", message)

    def active(self) -> List[Notification]:
        """Drop expired notifications and return the rest, oldest first."""

        now = self._clock()
        with self._lock:
            self._items = [item for item in self._items if item.expires_at > now]
            return list(self._items)

    def history(self) -> List[Notification]:
        """Everything still held, expired or not."""

        with self._lock:
            return list(self._items)

    def dismiss(self, notification_id: int) -> bool:
        with self._lock:
            remaining = [item for item in self._items if item.id != notification_id]
            removed = len(remaining) != len(self._items)
            self._items = remaining
            return removed

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


__all__ = ["LEVELS", "Notification", "NotificationCenter"]
