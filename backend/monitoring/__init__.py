"""
Monitoring and observability module for interaction features.

Provides metrics and insights for:
- API request latency (interaction API)
- Backend call latency and error rates (client adapter)
- Optimistic mutation outcomes (confirmed, rolled back, pending)
- Throttling and stale-response guards
- Activity feed
"""

from __future__ import annotations

import time
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Any, Optional
from dataclasses import dataclass
from collections import deque
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of system events."""
    LIKE_TOGGLED = "like_toggled"
    LIKE_IGNORED = "like_ignored"
    COMMENT_CONFIRMED = "comment_confirmed"
    COMMENT_RETRY = "comment_retry"
    COMMENT_PENDING = "comment_pending"
    COMMENT_FAILED = "comment_failed"
    ROLLBACK = "rollback"
    STATS_REFRESHED = "stats_refreshed"
    STALE_RESPONSE = "stale_response"
    SESSION_CHECK = "session_check"
    AUTH_REQUIRED = "auth_required"
    THROTTLED = "throttled"
    ERROR = "error"


@dataclass
class SystemEvent:
    """A recorded system event."""
    timestamp: datetime
    event_type: EventType
    entity: Optional[str]
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "entity": self.entity,
            "details": self.details,
            "age_seconds": (datetime.now(timezone.utc) - self.timestamp).total_seconds()
        }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Tracks:
    - Request counts per endpoint
    - Backend call latency distribution
    - Optimistic mutation outcomes
    """

    def __init__(self):
        self._start_time = time.time()
        self._request_counts: Dict[str, int] = {}
        self._latencies: Dict[str, List[float]] = {}
        self._error_counts: Dict[str, int] = {}

        # Backend adapter metrics
        self._baas_calls = 0
        self._baas_errors = 0
        self._baas_latencies: List[float] = []

        # Interaction outcomes
        self._likes_confirmed = 0
        self._likes_ignored = 0
        self._comments_confirmed = 0
        self._comments_pending = 0
        self._comment_retries = 0
        self._rollbacks = 0
        self._stale_responses = 0
        self._session_checks = 0
        self._throttled = 0

    def record_request(self, endpoint: str, latency_ms: float, error: bool = False) -> None:
        """Record an API request."""
        self._request_counts[endpoint] = self._request_counts.get(endpoint, 0) + 1

        if endpoint not in self._latencies:
            self._latencies[endpoint] = []
        self._latencies[endpoint].append(latency_ms)

        # Keep only last 1000 latencies per endpoint
        if len(self._latencies[endpoint]) > 1000:
            self._latencies[endpoint] = self._latencies[endpoint][-1000:]

        if error:
            self._error_counts[endpoint] = self._error_counts.get(endpoint, 0) + 1

    def record_baas_call(self, latency_ms: float, error: bool = False) -> None:
        """Record a backend call made by the adapter."""
        self._baas_calls += 1
        self._baas_latencies.append(latency_ms)
        if len(self._baas_latencies) > 1000:
            self._baas_latencies = self._baas_latencies[-1000:]
        if error:
            self._baas_errors += 1

    def record_like(self, ignored: bool = False) -> None:
        if ignored:
            self._likes_ignored += 1
        else:
            self._likes_confirmed += 1

    def record_comment(self, pending: bool = False) -> None:
        if pending:
            self._comments_pending += 1
        else:
            self._comments_confirmed += 1

    def record_comment_retry(self) -> None:
        self._comment_retries += 1

    def record_rollback(self) -> None:
        self._rollbacks += 1

    def record_stale_response(self) -> None:
        self._stale_responses += 1

    def record_session_check(self, throttled: bool = False) -> None:
        if throttled:
            self._throttled += 1
        else:
            self._session_checks += 1

    def _calculate_percentiles(self, values: List[float]) -> Dict[str, float]:
        """Calculate p50, p95, p99 percentiles."""
        if not values:
            return {"p50": 0, "p95": 0, "p99": 0, "avg": 0}

        sorted_values = sorted(values)
        n = len(sorted_values)

        return {
            "p50": sorted_values[int(n * 0.50)],
            "p95": sorted_values[min(n - 1, int(n * 0.95))],
            "p99": sorted_values[min(n - 1, int(n * 0.99))],
            "avg": sum(values) / n,
        }

    def get_metrics(self) -> Dict[str, Any]:
        """Get all collected metrics."""
        uptime = time.time() - self._start_time

        baas_error_rate = self._baas_errors / self._baas_calls if self._baas_calls > 0 else 0

        return {
            "uptime_seconds": int(uptime),
            "uptime_human": self._format_duration(uptime),

            "requests": {
                "total": sum(self._request_counts.values()),
                "by_endpoint": self._request_counts,
                "errors": self._error_counts,
            },

            "baas": {
                "calls": self._baas_calls,
                "errors": self._baas_errors,
                "error_rate": f"{baas_error_rate:.1%}",
                "latency_ms": self._calculate_percentiles(self._baas_latencies),
            },

            "interactions": {
                "likes_confirmed": self._likes_confirmed,
                "likes_ignored": self._likes_ignored,
                "comments_confirmed": self._comments_confirmed,
                "comments_pending": self._comments_pending,
                "comment_retries": self._comment_retries,
                "rollbacks": self._rollbacks,
                "stale_responses_discarded": self._stale_responses,
            },

            "sessions": {
                "checks": self._session_checks,
                "throttled": self._throttled,
            },
        }

    def _format_duration(self, seconds: float) -> str:
        """Format duration as human-readable string."""
        if seconds < 60:
            return f"{int(seconds)}s"
        elif seconds < 3600:
            return f"{int(seconds // 60)}m {int(seconds % 60)}s"
        else:
            hours = int(seconds // 3600)
            minutes = int((seconds % 3600) // 60)
            return f"{hours}h {minutes}m"


class ActivityFeed:
    """
    Real-time activity feed for system events.

    Stores recent events for live monitoring.
    """

    def __init__(self, max_events: int = 500):
        self.max_events = max_events
        self._events: deque = deque(maxlen=max_events)

    def add_event(
        self,
        event_type: EventType,
        entity: Optional[str] = None,
        **details
    ) -> None:
        """Add an event to the feed."""
        event = SystemEvent(
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            entity=entity,
            details=details
        )
        self._events.append(event)

    def get_recent(self, limit: int = 50, event_type: Optional[EventType] = None) -> List[Dict]:
        """Get recent events, optionally filtered by type."""
        events = list(self._events)

        if event_type:
            events = [e for e in events if e.event_type == event_type]

        # Return most recent first
        events = sorted(events, key=lambda e: e.timestamp, reverse=True)
        return [e.to_dict() for e in events[:limit]]

    def get_event_counts(self, since_minutes: int = 5) -> Dict[str, int]:
        """Get event counts by type since N minutes ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=since_minutes)

        counts: Dict[str, int] = {}
        for event in self._events:
            if event.timestamp >= cutoff:
                key = event.event_type.value
                counts[key] = counts.get(key, 0) + 1

        return counts


class SystemMonitor:
    """
    Central monitoring hub.

    Aggregates metrics from all components.
    """

    def __init__(self):
        self.metrics = MetricsCollector()
        self.activity = ActivityFeed()
        self._component_status: Dict[str, Dict[str, Any]] = {}

    def set_component_status(
        self,
        component: str,
        status: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Set status for a component."""
        self._component_status[component] = {
            "status": status,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "details": details or {}
        }

    def get_health_status(self) -> Dict[str, Any]:
        """Get overall system health status."""
        statuses = [c.get("status", "unknown") for c in self._component_status.values()]

        if statuses and all(s == "healthy" for s in statuses):
            overall = "healthy"
        elif any(s == "error" for s in statuses):
            overall = "degraded"
        elif any(s == "warning" for s in statuses):
            overall = "warning"
        else:
            overall = "unknown"

        return {
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": self._component_status,
        }

    def get_dashboard_data(self) -> Dict[str, Any]:
        """Get all data needed for a monitoring dashboard."""
        return {
            "health": self.get_health_status(),
            "metrics": self.metrics.get_metrics(),
            "recent_activity": self.activity.get_recent(limit=20),
            "event_counts_5m": self.activity.get_event_counts(since_minutes=5),
        }


# Global monitor instance
monitor = SystemMonitor()


def get_rate_limit_status(rate_limiter) -> Dict[str, Any]:
    """
    Get detailed rate limit status from a RateLimiter instance.

    Args:
        rate_limiter: RateLimiter instance

    Returns:
        Detailed rate limit status for all configured categories
    """
    status = {}

    for category, config in rate_limiter.configs.items():
        remaining = rate_limiter.get_remaining_requests(category)
        used = config.requests_per_window - remaining
        usage_pct = (used / config.requests_per_window * 100) if config.requests_per_window > 0 else 0

        status[category] = {
            "limit": config.requests_per_window,
            "window_seconds": config.window_seconds,
            "strategy": config.strategy,
            "max_concurrent": config.max_concurrent,
            "active": rate_limiter.active_count(category),
            "remaining": remaining,
            "used": used,
            "usage_percent": f"{usage_pct:.1f}%",
            "status": "ok" if usage_pct < 80 else ("warning" if usage_pct < 95 else "critical"),
        }

    return status


__all__ = [
    "SystemMonitor",
    "MetricsCollector",
    "ActivityFeed",
    "EventType",
    "SystemEvent",
    "monitor",
    "get_rate_limit_status",
]
