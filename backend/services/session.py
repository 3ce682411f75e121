"""
Session gate for interaction mutations.

check() answers from the locally held session only, so stores can refuse an
optimistic mutation before touching state or the network. revalidate() asks
the backend, throttled through the "session_check" rate limit category.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from adapter.baas import BaaSAuthenticationError, BaaSError
from adapter.models import Session
from adapter.rate_limiter import RateLimiter
from services.events import AUTH_REQUIRED, SESSION_EXPIRED, EventBus

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

logger = logging.getLogger(__name__)

SESSION_CHECK_CATEGORY = "session_check"


class AuthenticationRequired(Exception):
    """Raised when an action needs a valid session for the acting user."""

    def __init__(self, user_id: Optional[str] = None, reason: str = "no_session"):
        super().__init__(f"Authentication required ({reason})")
        self.user_id = user_id
        self.reason = reason


class SessionGate:
    """
    Holds the current session and answers "may this user act?".

    Usage:
        gate = SessionGate(adapter, rate_limiter=create_client_limiter(), event_bus=bus)
        gate.set_session(session)
        if gate.check("user42"):
            ...
        still_valid = await gate.revalidate()
    """

    def __init__(
        self,
        adapter=None,
        rate_limiter: Optional[RateLimiter] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.adapter = adapter
        self.rate_limiter = rate_limiter
        self.event_bus = event_bus
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._session: Optional[Session] = None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def current_user_id(self) -> Optional[str]:
        return self._session.user_id if self._session else None

    @property
    def token(self) -> Optional[str]:
        """Token provider for AuthHeaderInterceptor."""
        return self._session.token if self._session else None

    def set_session(self, session: Optional[Session]) -> None:
        self._session = session
        if session:
            logger.info(f"Session set for {session.user_id} (expires {session.expires_at.isoformat()})")

    def clear(self) -> None:
        if self._session:
            logger.info(f"Session cleared for {self._session.user_id}")
        self._session = None

    def _has_live_session(self) -> bool:
        return self._session is not None and not self._session.is_expired(self._clock())

    def check(self, user_id: Optional[str]) -> bool:
        """True if a live local session exists and belongs to ``user_id``. Never hits the network."""
        if not user_id or not self._has_live_session():
            return False
        return self._session.user_id == user_id

    def _publish_auth_required(self, user_id: Optional[str], reason: str) -> None:
        mon = _get_monitor()
        if mon:
            from monitoring import EventType
            mon.activity.add_event(EventType.AUTH_REQUIRED, entity=None, user_id=user_id, reason=reason)
        if self.event_bus:
            # session_expired always precedes auth_required
            if reason in ("expired", "rejected"):
                self.event_bus.publish(SESSION_EXPIRED, user_id=user_id, reason=reason)
            self.event_bus.publish(AUTH_REQUIRED, user_id=user_id, reason=reason)

    def require(self, user_id: Optional[str]) -> None:
        """
        Ensure ``user_id`` has a live session.

        Raises:
            AuthenticationRequired: If check() fails (an auth_required event is published first)
        """
        if self.check(user_id):
            return

        if self._session is None:
            reason = "no_session"
        elif self._session.is_expired(self._clock()):
            reason = "expired"
        else:
            reason = "user_mismatch"

        logger.info(f"Authentication required for {user_id}: {reason}")
        self._publish_auth_required(user_id, reason)
        raise AuthenticationRequired(user_id, reason)

    async def revalidate(self) -> bool:
        """
        Confirm the session with the backend.

        Throttled through the session_check category; when throttled, the
        local answer is returned without a network call. A 401 clears the
        session and publishes session_expired, then auth_required.

        Returns:
            True if the session is (still) valid
        """
        if self._session is None:
            return False

        if self.adapter is None:
            return self._has_live_session()

        mon = _get_monitor()
        if self.rate_limiter and not self.rate_limiter.try_acquire(SESSION_CHECK_CATEGORY):
            logger.debug("Session check throttled, using local session state")
            if mon:
                mon.metrics.record_session_check(throttled=True)
            return self._has_live_session()

        session = self._session
        try:
            if mon:
                mon.metrics.record_session_check()
                from monitoring import EventType
                mon.activity.add_event(EventType.SESSION_CHECK, entity=None, user_id=session.user_id)

            fresh = await asyncio.to_thread(self.adapter.get_session, session.token)
        except BaaSAuthenticationError:
            logger.warning(f"Session for {session.user_id} rejected by backend")
            if self._session is session:
                self.clear()
            self._publish_auth_required(session.user_id, "rejected")
            return False
        except BaaSError as e:
            logger.warning(f"Session check failed, keeping local session: {e}")
            return self._has_live_session()
        finally:
            if self.rate_limiter:
                self.rate_limiter.release(SESSION_CHECK_CATEGORY)

        # A different session may have been set while the check was in flight
        if self._session is session:
            self._session = fresh
        return self._has_live_session()


__all__ = ["SessionGate", "AuthenticationRequired", "SESSION_CHECK_CATEGORY"]
