"""
Unit tests for the services module (EventBus, notifications, CounterShadow, SessionGate).
"""

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock

from adapter.baas import BaaSAuthenticationError, BaaSTransientError
from adapter.models import Session
from adapter.rate_limiter import create_client_limiter
from services import (
    AUTH_REQUIRED,
    AuthenticationRequired,
    CounterShadow,
    DedupRegistry,
    EventBus,
    NotificationCenter,
    NotificationLevel,
    SESSION_EXPIRED,
    SessionGate,
)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_session(user_id="u1", minutes=30, token="tok"):
    return Session(
        user_id=user_id,
        token=token,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=minutes),
    )


# ============================================================================
# EventBus
# ============================================================================

class TestEventBus:
    """Test publish/subscribe delivery."""

    def test_publish_to_subscribers(self):
        bus = EventBus()
        handler = Mock()
        bus.subscribe("ping", handler)

        delivered = bus.publish("ping", value=1)

        assert delivered == 1
        handler.assert_called_once_with(value=1)

    def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        bad = Mock(side_effect=RuntimeError("boom"))
        good = Mock()
        bus.subscribe("ping", bad)
        bus.subscribe("ping", good)

        delivered = bus.publish("ping")

        assert delivered == 1
        good.assert_called_once()

    def test_unsubscribe(self):
        bus = EventBus()
        handler = Mock()
        bus.subscribe("ping", handler)

        assert bus.unsubscribe("ping", handler) is True
        assert bus.unsubscribe("ping", handler) is False
        assert bus.publish("ping") == 0

    def test_duplicate_subscribe_ignored(self):
        bus = EventBus()
        handler = Mock()
        bus.subscribe("ping", handler)
        bus.subscribe("ping", handler)

        assert bus.handler_count("ping") == 1


# ============================================================================
# Notifications
# ============================================================================

class TestDedupRegistry:
    """Test the bounded active-key registry."""

    def test_duplicate_key_rejected_within_window(self):
        clock = FakeClock()
        registry = DedupRegistry(window_seconds=4, clock=clock)

        assert registry.try_acquire("k") is True
        assert registry.try_acquire("k") is False

    def test_key_expires_after_window(self):
        clock = FakeClock()
        registry = DedupRegistry(window_seconds=4, clock=clock)
        registry.try_acquire("k")

        clock.now = 4.0

        assert registry.is_active("k") is False
        assert registry.try_acquire("k") is True

    def test_release(self):
        registry = DedupRegistry(clock=FakeClock())
        registry.try_acquire("k")

        assert registry.release("k") is True
        assert registry.try_acquire("k") is True

    def test_bounded_size_evicts_oldest(self):
        registry = DedupRegistry(max_entries=2, clock=FakeClock())
        registry.try_acquire("a")
        registry.try_acquire("b")
        registry.try_acquire("c")

        assert len(registry) == 2
        assert registry.is_active("a") is False
        assert registry.is_active("c") is True


class TestNotificationCenter:
    """Test user notifications."""

    def test_duplicate_key_suppressed(self):
        center = NotificationCenter(dedup=DedupRegistry(clock=FakeClock()))

        first = center.error("Failed", key="like_error")
        second = center.error("Failed", key="like_error")

        assert first is not None
        assert second is None
        assert len(center.get_recent()) == 1

    def test_unkeyed_notifications_not_deduplicated(self):
        center = NotificationCenter()

        center.info("a")
        center.info("a")

        assert len(center.get_recent()) == 2

    def test_recent_newest_first_and_level_filter(self):
        center = NotificationCenter()
        center.info("one")
        center.error("two")
        center.warning("three")

        assert [n.message for n in center.get_recent()] == ["three", "two", "one"]
        assert [n.message for n in center.get_recent(level=NotificationLevel.ERROR)] == ["two"]

    def test_dismiss_frees_key(self):
        center = NotificationCenter(dedup=DedupRegistry(clock=FakeClock()))
        center.error("Failed", key="k")

        assert center.dismiss("k") == 1
        assert center.error("Failed", key="k") is not None

    def test_subscriber_receives_notification(self):
        center = NotificationCenter()
        handler = Mock()
        center.subscribe(handler)

        notification = center.success("Saved")

        handler.assert_called_once_with(notification)
        assert notification.to_dict()["level"] == "success"


# ============================================================================
# CounterShadow
# ============================================================================

class TestCounterShadow:
    """Test the persisted counter shadow."""

    @pytest.fixture
    def shadow(self, tmp_path):
        return CounterShadow(db_path=tmp_path / "shadow.sqlite3")

    def test_key_formats(self):
        assert CounterShadow.like_count_key("vibe", "v1") == "vibe_like_count_v1"
        assert CounterShadow.comment_count_key("mix", "m1") == "mix_comment_count_m1"
        assert CounterShadow.liked_key("vibe", "v1", "u1") == "vibe_liked_by_user_v1_u1"

    def test_missing_values_are_none(self, shadow):
        assert shadow.read_like_count("vibe", "v1") is None
        assert shadow.read_comment_count("vibe", "v1") is None
        assert shadow.read_liked("vibe", "v1", "u1") is None

    def test_round_trip_last_write_wins(self, shadow):
        shadow.write_like_count("vibe", "v1", 3)
        shadow.write_like_count("vibe", "v1", 5)
        shadow.write_comment_count("vibe", "v1", 2)
        shadow.write_liked("vibe", "v1", "u1", True)

        assert shadow.read_like_count("vibe", "v1") == 5
        assert shadow.read_comment_count("vibe", "v1") == 2
        assert shadow.read_liked("vibe", "v1", "u1") is True

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "shadow.sqlite3"
        CounterShadow(db_path=path).write_like_count("post", "p1", 11)

        assert CounterShadow(db_path=path).read_like_count("post", "p1") == 11

    def test_unparsable_value_reads_none(self, shadow):
        shadow._set(CounterShadow.like_count_key("vibe", "v1"), "lots")

        assert shadow.read_like_count("vibe", "v1") is None

    def test_clear_by_feature(self, shadow):
        shadow.write_like_count("vibe", "v1", 1)
        shadow.write_like_count("mix", "m1", 1)

        assert shadow.clear("vibe") == 1
        assert shadow.read_like_count("vibe", "v1") is None
        assert shadow.read_like_count("mix", "m1") == 1

    def test_stats(self, shadow):
        shadow.read_like_count("vibe", "missing")
        shadow.write_like_count("vibe", "v1", 1)
        shadow.read_like_count("vibe", "v1")

        stats = shadow.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1


# ============================================================================
# SessionGate
# ============================================================================

class TestSessionGateLocal:
    """Test local session checks."""

    def test_check_requires_matching_live_session(self):
        gate = SessionGate()

        assert gate.check("u1") is False

        gate.set_session(make_session("u1"))
        assert gate.check("u1") is True
        assert gate.check("u2") is False
        assert gate.check(None) is False
        assert gate.current_user_id == "u1"
        assert gate.token == "tok"

    def test_expired_session_fails_check(self):
        gate = SessionGate()
        gate.set_session(make_session("u1", minutes=-1))

        assert gate.check("u1") is False

    def test_check_never_calls_backend(self):
        adapter = Mock()
        gate = SessionGate(adapter=adapter)

        gate.check("u1")

        adapter.get_session.assert_not_called()

    def test_require_raises_and_publishes(self):
        bus = EventBus()
        handler = Mock()
        bus.subscribe(AUTH_REQUIRED, handler)
        gate = SessionGate(event_bus=bus)

        with pytest.raises(AuthenticationRequired) as exc_info:
            gate.require("u1")

        assert exc_info.value.reason == "no_session"
        handler.assert_called_once_with(user_id="u1", reason="no_session")

    def test_require_with_expired_session_publishes_session_expired(self):
        bus = EventBus()
        received = []
        bus.subscribe(SESSION_EXPIRED, lambda **payload: received.append(("expired", payload)))
        bus.subscribe(AUTH_REQUIRED, lambda **payload: received.append(("auth", payload)))
        gate = SessionGate(event_bus=bus)
        gate.set_session(make_session("u1", minutes=-1))

        with pytest.raises(AuthenticationRequired):
            gate.require("u1")

        assert [name for name, _ in received] == ["expired", "auth"]
        assert received[0][1] == {"user_id": "u1", "reason": "expired"}

    def test_require_without_session_does_not_publish_session_expired(self):
        bus = EventBus()
        handler = Mock()
        bus.subscribe(SESSION_EXPIRED, handler)
        gate = SessionGate(event_bus=bus)

        with pytest.raises(AuthenticationRequired):
            gate.require("u1")

        handler.assert_not_called()

    def test_require_passes_with_session(self):
        gate = SessionGate()
        gate.set_session(make_session("u1"))

        gate.require("u1")

    def test_clear(self):
        gate = SessionGate()
        gate.set_session(make_session("u1"))
        gate.clear()

        assert gate.session is None
        assert gate.check("u1") is False


class TestSessionGateRevalidate:
    """Test backend revalidation."""

    @pytest.mark.asyncio
    async def test_no_session(self):
        adapter = Mock()
        gate = SessionGate(adapter=adapter)

        assert await gate.revalidate() is False
        adapter.get_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_valid_session_refreshed(self):
        fresh = make_session("u1", minutes=60)
        adapter = Mock()
        adapter.get_session = Mock(return_value=fresh)
        gate = SessionGate(adapter=adapter)
        gate.set_session(make_session("u1"))

        assert await gate.revalidate() is True
        assert gate.session is fresh
        adapter.get_session.assert_called_once_with("tok")

    @pytest.mark.asyncio
    async def test_rejected_session_cleared_and_published(self):
        adapter = Mock()
        adapter.get_session = Mock(side_effect=BaaSAuthenticationError("expired", status_code=401))
        bus = EventBus()
        handler = Mock()
        expired = Mock()
        bus.subscribe(AUTH_REQUIRED, handler)
        bus.subscribe(SESSION_EXPIRED, expired)
        gate = SessionGate(adapter=adapter, event_bus=bus)
        gate.set_session(make_session("u1"))

        assert await gate.revalidate() is False
        assert gate.session is None
        handler.assert_called_once_with(user_id="u1", reason="rejected")
        expired.assert_called_once_with(user_id="u1", reason="rejected")

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_local_session(self):
        adapter = Mock()
        adapter.get_session = Mock(side_effect=BaaSTransientError("down"))
        gate = SessionGate(adapter=adapter)
        gate.set_session(make_session("u1"))

        assert await gate.revalidate() is True
        assert gate.session is not None

    @pytest.mark.asyncio
    async def test_throttled_after_ten_checks_per_minute(self):
        adapter = Mock()
        adapter.get_session = Mock(side_effect=lambda token: make_session("u1", token=token))
        limiter = create_client_limiter(clock=FakeClock(100.0))
        gate = SessionGate(adapter=adapter, rate_limiter=limiter)
        gate.set_session(make_session("u1"))

        results = [await gate.revalidate() for _ in range(12)]

        assert all(results)
        assert adapter.get_session.call_count == 10
        assert limiter.active_count("session_check") == 0
