"""
Request interceptors for the backend adapter.

Interceptors are registered on a BaaSAdapter instance. before_request hooks
run in registration order; after_response and on_error hooks run in reverse
order, so the first interceptor wraps all the others.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Import monitoring (lazy to avoid circular imports)
_monitor = None

def _get_monitor():
    global _monitor
    if _monitor is None:
        try:
            from monitoring import monitor
            _monitor = monitor
        except ImportError:
            _monitor = None
    return _monitor


@dataclass
class RequestCall:
    """A single outgoing backend request, mutable by interceptors."""
    method: str
    path: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Optional[Dict[str, Any]] = None
    json: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    started_at: Optional[float] = None
    # Free-form scratch space for interceptors
    context: Dict[str, Any] = field(default_factory=dict)


class Interceptor:
    """Base interceptor; override the hooks you need."""

    def before_request(self, call: RequestCall) -> None:
        pass

    def after_response(self, call: RequestCall, response: Any) -> None:
        pass

    def on_error(self, call: RequestCall, exc: Exception) -> None:
        pass


class AuthHeaderInterceptor(Interceptor):
    """Attach the current session token as a bearer header."""

    def __init__(self, token_provider: Callable[[], Optional[str]]):
        self.token_provider = token_provider

    def before_request(self, call: RequestCall) -> None:
        token = self.token_provider()
        if token and "Authorization" not in call.headers:
            call.headers["Authorization"] = f"Bearer {token}"


class IdempotencyInterceptor(Interceptor):
    """Send the client-supplied idempotency key so retries cannot duplicate writes."""

    HEADER = "Idempotency-Key"

    def before_request(self, call: RequestCall) -> None:
        if call.idempotency_key:
            call.headers[self.HEADER] = call.idempotency_key


class AuthRequiredInterceptor(Interceptor):
    """Publish an auth-required event whenever the backend answers 401."""

    def __init__(self, event_bus, event_name: Optional[str] = None):
        from services.events import AUTH_REQUIRED

        self.event_bus = event_bus
        self.event_name = event_name or AUTH_REQUIRED

    def after_response(self, call: RequestCall, response: Any) -> None:
        if getattr(response, "status_code", None) == 401:
            logger.info(f"Received 401 from {call.method} {call.path}, requesting re-authentication")
            self.event_bus.publish(self.event_name, path=call.path, method=call.method)


class MonitoringInterceptor(Interceptor):
    """Record backend call latency and errors in the system monitor."""

    def before_request(self, call: RequestCall) -> None:
        call.context["monitor_start"] = time.time()

    def _latency_ms(self, call: RequestCall) -> float:
        started = call.context.get("monitor_start") or time.time()
        return (time.time() - started) * 1000

    def after_response(self, call: RequestCall, response: Any) -> None:
        mon = _get_monitor()
        if mon:
            status = getattr(response, "status_code", 0)
            mon.metrics.record_baas_call(self._latency_ms(call), error=status >= 400)

    def on_error(self, call: RequestCall, exc: Exception) -> None:
        mon = _get_monitor()
        if mon:
            mon.metrics.record_baas_call(self._latency_ms(call), error=True)
            from monitoring import EventType
            mon.activity.add_event(EventType.ERROR, entity=None, error=f"{call.method} {call.path}: {str(exc)[:100]}")


__all__ = [
    "RequestCall",
    "Interceptor",
    "AuthHeaderInterceptor",
    "IdempotencyInterceptor",
    "AuthRequiredInterceptor",
    "MonitoringInterceptor",
]
