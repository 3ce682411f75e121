"""
Transient user notifications with key-based deduplication.

Provides:
- DedupRegistry: bounded registry of active keys with an injectable clock
- NotificationCenter: recent notifications feed with subscribers
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    """Severity of a user notification."""
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Notification:
    """A single user-facing notification."""
    level: NotificationLevel
    message: str
    key: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "message": self.message,
            "key": self.key,
            "created_at": self.created_at.isoformat(),
        }


class DedupRegistry:
    """
    Registry of active keys, each held for at most ``window_seconds``.

    try_acquire(key) succeeds only if the key is not already active. Keys
    expire on their own after the window and can be released early. At most
    ``max_entries`` keys are tracked; the oldest is evicted first.
    """

    def __init__(
        self,
        window_seconds: float = 4.0,
        max_entries: int = 256,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock or time.monotonic
        self._active: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def _expire(self, now: float) -> None:
        expired = [k for k, acquired_at in self._active.items() if now - acquired_at >= self.window_seconds]
        for key in expired:
            del self._active[key]

    def try_acquire(self, key: str) -> bool:
        """Mark a key active. Returns False if it already is."""
        with self._lock:
            now = self._clock()
            self._expire(now)

            if key in self._active:
                return False

            self._active[key] = now
            while len(self._active) > self.max_entries:
                self._active.popitem(last=False)
            return True

    def release(self, key: str) -> bool:
        """Release a key before its window ends."""
        with self._lock:
            return self._active.pop(key, None) is not None

    def is_active(self, key: str) -> bool:
        with self._lock:
            self._expire(self._clock())
            return key in self._active

    def __len__(self) -> int:
        with self._lock:
            self._expire(self._clock())
            return len(self._active)


class NotificationCenter:
    """
    Feed of transient notifications shown to the user.

    Notifications with a key are deduplicated through a DedupRegistry, so the
    same message raised by several stores at once is shown only once.
    """

    def __init__(self, dedup: Optional[DedupRegistry] = None, max_notifications: int = 100):
        self.dedup = dedup or DedupRegistry()
        self._notifications: deque = deque(maxlen=max_notifications)
        self._subscribers: List[Callable[[Notification], Any]] = []

    def subscribe(self, handler: Callable[[Notification], Any]) -> None:
        self._subscribers.append(handler)

    def notify(self, level: NotificationLevel, message: str, key: Optional[str] = None) -> Optional[Notification]:
        """
        Show a notification.

        Returns:
            The notification, or None if a duplicate with the same key is active
        """
        if key is not None and not self.dedup.try_acquire(key):
            logger.debug(f"Suppressed duplicate notification '{key}'")
            return None

        notification = Notification(level=level, message=message, key=key)
        self._notifications.append(notification)

        log = logger.warning if level in (NotificationLevel.WARNING, NotificationLevel.ERROR) else logger.info
        log(f"[{level.value}] {message}")

        for handler in list(self._subscribers):
            try:
                handler(notification)
            except Exception as e:
                logger.error(f"Notification subscriber failed: {e}")

        return notification

    def success(self, message: str, key: Optional[str] = None) -> Optional[Notification]:
        return self.notify(NotificationLevel.SUCCESS, message, key)

    def info(self, message: str, key: Optional[str] = None) -> Optional[Notification]:
        return self.notify(NotificationLevel.INFO, message, key)

    def warning(self, message: str, key: Optional[str] = None) -> Optional[Notification]:
        return self.notify(NotificationLevel.WARNING, message, key)

    def error(self, message: str, key: Optional[str] = None) -> Optional[Notification]:
        return self.notify(NotificationLevel.ERROR, message, key)

    def dismiss(self, key: str) -> int:
        """Remove notifications with the given key and free it for reuse."""
        self.dedup.release(key)
        before = len(self._notifications)
        kept = [n for n in self._notifications if n.key != key]
        self._notifications.clear()
        self._notifications.extend(kept)
        return before - len(kept)

    def get_recent(self, limit: int = 20, level: Optional[NotificationLevel] = None) -> List[Notification]:
        """Most recent notifications first."""
        items = list(self._notifications)
        if level:
            items = [n for n in items if n.level == level]
        return list(reversed(items))[:limit]

    def clear(self) -> None:
        self._notifications.clear()


__all__ = ["NotificationLevel", "Notification", "DedupRegistry", "NotificationCenter"]
