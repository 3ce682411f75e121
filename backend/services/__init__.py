"""
Services module for the interaction client.
"""

from .events import EventBus, AUTH_REQUIRED, SESSION_EXPIRED
from .notifications import NotificationCenter, NotificationLevel, Notification, DedupRegistry
from .counter_shadow import CounterShadow
from .session import SessionGate, AuthenticationRequired

__all__ = [
    "EventBus",
    "AUTH_REQUIRED",
    "SESSION_EXPIRED",
    "NotificationCenter",
    "NotificationLevel",
    "Notification",
    "DedupRegistry",
    "CounterShadow",
    "SessionGate",
    "AuthenticationRequired",
]
