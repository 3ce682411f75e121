"""
In-process event bus.

Components publish signals such as "auth required" here instead of patching
shared functions; interested parties subscribe explicitly.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

AUTH_REQUIRED = "auth_required"
SESSION_EXPIRED = "session_expired"

EventHandler = Callable[..., Any]


class EventBus:
    """Synchronous publish/subscribe registry keyed by event name."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        """Register a handler for an event."""
        with self._lock:
            if handler not in self._handlers[event_name]:
                self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> bool:
        """
        Remove a handler.

        Returns:
            True if the handler was registered
        """
        with self._lock:
            handlers = self._handlers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
            return False

    def publish(self, event_name: str, **payload: Any) -> int:
        """
        Deliver an event to every subscribed handler.

        A failing handler is logged and does not stop delivery to the others.

        Returns:
            Number of handlers that ran successfully
        """
        with self._lock:
            handlers = list(self._handlers.get(event_name, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(**payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Handler for '{event_name}' failed: {e}")

        logger.debug(f"Published '{event_name}' to {delivered}/{len(handlers)} handlers")
        return delivered

    def handler_count(self, event_name: str) -> int:
        return len(self._handlers.get(event_name, []))


__all__ = ["EventBus", "AUTH_REQUIRED", "SESSION_EXPIRED"]
