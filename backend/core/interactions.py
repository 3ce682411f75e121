"""
Optimistic interaction reconciler.

InteractionStore keeps an advisory per-entity copy of like and comment
state. Mutations are applied locally first, sent to the backend, then
either confirmed with the server's values or rolled back. Background stats
refreshes are discarded when a local mutation happened while they were in
flight.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Set, Tuple

from pydantic import BaseModel, Field

from adapter.baas import BaaSAdapter, ErrorKind, classify_error
from adapter.models import Comment, CommentStatus, LikeStatus
from services.counter_shadow import CounterShadow
from services.notifications import NotificationCenter
from services.session import AuthenticationRequired, SessionGate

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


LOGIN_REQUIRED_MESSAGE = "Please log in to continue."
LIKE_FAILED_MESSAGE = "Failed to update like. Please try again."
DELETE_FAILED_MESSAGE = "Failed to delete comment. Please try again."

COMMENT_ERROR_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.TRANSIENT: "Server is temporarily unavailable. Your comment will be saved locally.",
    ErrorKind.VALIDATION: "Invalid comment format. Please try again with different text.",
    ErrorKind.PERMISSION: "You don't have permission to post comments.",
    ErrorKind.RATE_LIMITED: "You're commenting too quickly. Please wait a moment and try again.",
    ErrorKind.UNKNOWN: "Failed to post your comment. Please try again.",
    ErrorKind.UNAUTHENTICATED: LOGIN_REQUIRED_MESSAGE,
}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class InteractionConfig:
    """
    Per-feature interaction settings.

    Attributes:
        feature: Feature name used for shadow keys and notification keys
        max_comment_attempts: Total send attempts for a comment (first try included)
        retry_base_delay: Backoff before the 2nd attempt; doubles for each later one
        max_comment_length: Longest accepted comment text, after trimming
        refresh_after_mutation: Re-fetch entity stats after a confirmed mutation
    """
    feature: str
    max_comment_attempts: int = 3
    retry_base_delay: float = 1.0
    max_comment_length: int = 1000
    refresh_after_mutation: bool = True

    def retry_delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        return self.retry_base_delay * (2 ** (attempt - 1))

    @classmethod
    def for_feature(cls, feature: str) -> "InteractionConfig":
        """
        Config for a feature with environment overrides applied.

        Overrides use the upper-cased feature as prefix, e.g.
        VIBE_RETRY_BASE_DELAY=0.5 or MIX_MAX_COMMENT_ATTEMPTS=5.
        """
        base = FEATURE_CONFIGS.get(feature) or cls(feature=feature)
        prefix = feature.upper()
        return replace(
            base,
            max_comment_attempts=int(os.getenv(f"{prefix}_MAX_COMMENT_ATTEMPTS", base.max_comment_attempts)),
            retry_base_delay=float(os.getenv(f"{prefix}_RETRY_BASE_DELAY", base.retry_base_delay)),
            max_comment_length=int(os.getenv(f"{prefix}_MAX_COMMENT_LENGTH", base.max_comment_length)),
            refresh_after_mutation=_env_bool(f"{prefix}_REFRESH_AFTER_MUTATION", base.refresh_after_mutation),
        )


FEATURE_CONFIGS: Dict[str, InteractionConfig] = {
    "vibe": InteractionConfig(feature="vibe", max_comment_length=500),
    "mix": InteractionConfig(feature="mix"),
    "post": InteractionConfig(feature="post"),
}


@dataclass
class InteractionState:
    """Advisory local copy of one entity's interaction state."""
    entity_id: str
    likes_count: int = 0
    comments_count: int = 0
    liked_by: Dict[str, bool] = field(default_factory=dict)
    comments: List[Comment] = field(default_factory=list)  # newest first
    # Bumped on every local mutation; refreshes started before a bump are stale
    version: int = 0
    hydrated_from_shadow: bool = False
    authoritative: bool = False
    last_refreshed: Optional[datetime] = None


class InteractionSnapshot(BaseModel):
    """Read-only view of an entity's state for one user."""
    entity_id: str
    feature: str
    likes_count: int = 0
    comments_count: int = 0
    has_liked: bool = False
    like_pending: bool = False
    comments: List[Comment] = Field(default_factory=list)
    hydrated_from_shadow: bool = False


class ToggleOutcome(BaseModel):
    """Result of toggle_like()."""
    status: Literal["ok", "ignored", "unauthenticated", "failed"]
    liked: bool
    count: int
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None


class CommentOutcome(BaseModel):
    """Result of submit_comment() and retry_comment()."""
    status: Literal["confirmed", "pending", "failed", "invalid", "unauthenticated"]
    comment: Optional[Comment] = None
    comments_count: int = 0
    attempts: int = 0
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None


class InteractionStore:
    """
    Optimistic like/comment store for one feature.

    Usage:
        store = InteractionStore(adapter, InteractionConfig.for_feature("vibe"), gate)
        await store.mount("vibe123", user_id="user42")
        outcome = await store.toggle_like("vibe123", "user42")
        outcome = await store.submit_comment("vibe123", "user42", "great track")

    Mutation methods never raise on backend failures; they return an outcome
    and post a user notification instead.
    """

    def __init__(
        self,
        adapter: BaaSAdapter,
        config: InteractionConfig,
        session_gate: SessionGate,
        shadow: Optional[CounterShadow] = None,
        notifications: Optional[NotificationCenter] = None,
        sleep=asyncio.sleep,
    ):
        self.adapter = adapter
        self.config = config
        self.session_gate = session_gate
        self.shadow = shadow
        self.notifications = notifications or NotificationCenter()
        self._sleep = sleep

        self._states: Dict[str, InteractionState] = {}
        self._likes_in_flight: Set[Tuple[str, str]] = set()
        # comment id -> entity id, for sends and deletes awaiting the backend
        self._comments_in_flight: Dict[str, str] = {}
        self._deletes_in_flight: Dict[str, str] = {}
        self._refresh_generation: Dict[str, int] = {}

    @property
    def feature(self) -> str:
        return self.config.feature

    # =========================================================================
    # State access
    # =========================================================================

    def get_state(self, entity_id: str) -> InteractionState:
        state = self._states.get(entity_id)
        if state is None:
            state = InteractionState(entity_id=entity_id)
            self._states[entity_id] = state
        return state

    def snapshot(self, entity_id: str, user_id: Optional[str] = None) -> InteractionSnapshot:
        state = self.get_state(entity_id)
        return InteractionSnapshot(
            entity_id=entity_id,
            feature=self.feature,
            likes_count=state.likes_count,
            comments_count=state.comments_count,
            has_liked=state.liked_by.get(user_id, False) if user_id else False,
            like_pending=(entity_id, user_id) in self._likes_in_flight if user_id else False,
            comments=list(state.comments),
            hydrated_from_shadow=state.hydrated_from_shadow,
        )

    def _like_in_flight(self, entity_id: str) -> bool:
        return any(eid == entity_id for eid, _ in self._likes_in_flight)

    def _mutation_in_flight(self, entity_id: str) -> bool:
        """True while any like, comment send or comment delete on the entity awaits the backend."""
        return (
            self._like_in_flight(entity_id)
            or entity_id in self._comments_in_flight.values()
            or entity_id in self._deletes_in_flight.values()
        )

    @staticmethod
    def _unconfirmed_count(state: InteractionState) -> int:
        """Local comments whose +1 is applied on top of the server's comments count."""
        return sum(1 for c in state.comments if c.status != CommentStatus.CONFIRMED)

    def _find_comment(self, state: InteractionState, comment_id: str) -> int:
        for i, comment in enumerate(state.comments):
            if comment.id == comment_id:
                return i
        return -1

    # =========================================================================
    # Shadow
    # =========================================================================

    def hydrate(self, entity_id: str, user_id: Optional[str] = None) -> InteractionState:
        """
        Pre-seed counters and the liked flag from the counter shadow.

        Only runs before any authoritative value has been received.
        """
        state = self.get_state(entity_id)
        if self.shadow is None or state.authoritative:
            return state

        try:
            if not state.hydrated_from_shadow:
                likes = self.shadow.read_like_count(self.feature, entity_id)
                comments = self.shadow.read_comment_count(self.feature, entity_id)
                if likes is not None:
                    state.likes_count = likes
                if comments is not None:
                    state.comments_count = comments
                state.hydrated_from_shadow = True

            if user_id and user_id not in state.liked_by:
                liked = self.shadow.read_liked(self.feature, entity_id, user_id)
                if liked is not None:
                    state.liked_by[user_id] = liked
        except sqlite3.Error as e:
            logger.warning(f"Could not read counter shadow for {entity_id}: {e}")

        return state

    def _write_shadow(
        self,
        entity_id: str,
        likes: Optional[int] = None,
        comments: Optional[int] = None,
        user_id: Optional[str] = None,
        liked: Optional[bool] = None,
    ) -> None:
        if self.shadow is None:
            return
        try:
            if likes is not None:
                self.shadow.write_like_count(self.feature, entity_id, likes)
            if comments is not None:
                self.shadow.write_comment_count(self.feature, entity_id, comments)
            if user_id and liked is not None:
                self.shadow.write_liked(self.feature, entity_id, user_id, liked)
        except sqlite3.Error as e:
            logger.warning(f"Could not write counter shadow for {entity_id}: {e}")

    async def mount(self, entity_id: str, user_id: Optional[str] = None) -> InteractionSnapshot:
        """Hydrate from the shadow, then load authoritative stats and like status."""
        self.hydrate(entity_id, user_id)
        await self.refresh_stats(entity_id)
        if user_id:
            await self.load_like_status(entity_id, user_id)
        return self.snapshot(entity_id, user_id)

    def _login_required(self, user_id: Optional[str]) -> bool:
        """Local session check; notifies and returns True if the user must log in."""
        try:
            self.session_gate.require(user_id)
            return False
        except AuthenticationRequired:
            self.notifications.error(LOGIN_REQUIRED_MESSAGE, key="auth_required")
            return True

    # =========================================================================
    # Likes
    # =========================================================================

    async def toggle_like(self, entity_id: str, user_id: str) -> ToggleOutcome:
        """
        Optimistically like or unlike an entity.

        A toggle for the same (entity, user) that is already in flight is
        ignored without a request.
        """
        state = self.get_state(entity_id)
        previous_liked = state.liked_by.get(user_id, False)
        previous_count = state.likes_count

        if self._login_required(user_id):
            return ToggleOutcome(
                status="unauthenticated",
                liked=previous_liked,
                count=previous_count,
                error_kind=ErrorKind.UNAUTHENTICATED,
                message=LOGIN_REQUIRED_MESSAGE,
            )

        mon = _get_monitor()
        key = (entity_id, user_id)
        if key in self._likes_in_flight:
            logger.debug(f"Ignoring like toggle on {entity_id} for {user_id}: already in flight")
            if mon:
                mon.metrics.record_like(ignored=True)
                from monitoring import EventType
                mon.activity.add_event(EventType.LIKE_IGNORED, entity=entity_id, user_id=user_id)
            return ToggleOutcome(status="ignored", liked=previous_liked, count=previous_count)

        liked = not previous_liked
        state.liked_by[user_id] = liked
        state.likes_count = max(0, previous_count + (1 if liked else -1))
        state.version += 1

        self._likes_in_flight.add(key)
        try:
            result = await asyncio.to_thread(self.adapter.toggle_like, entity_id, user_id)
        except Exception as e:
            kind = classify_error(e)
            state.liked_by[user_id] = previous_liked
            state.likes_count = previous_count
            state.version += 1
            logger.warning(f"Like toggle on {entity_id} failed ({kind.value}), rolled back: {e}")

            if mon:
                mon.metrics.record_rollback()
                from monitoring import EventType
                mon.activity.add_event(EventType.ROLLBACK, entity=entity_id, action="toggle_like", error_kind=kind.value)

            message = LOGIN_REQUIRED_MESSAGE if kind == ErrorKind.UNAUTHENTICATED else LIKE_FAILED_MESSAGE
            self.notifications.error(message, key=f"{self.feature}_like_error_{entity_id}")
            return ToggleOutcome(
                status="failed",
                liked=previous_liked,
                count=previous_count,
                error_kind=kind,
                message=message,
            )
        finally:
            self._likes_in_flight.discard(key)

        state.liked_by[user_id] = result.liked
        state.likes_count = result.count
        state.authoritative = True
        state.version += 1
        self._write_shadow(entity_id, likes=result.count, user_id=user_id, liked=result.liked)

        if mon:
            mon.metrics.record_like()
            from monitoring import EventType
            mon.activity.add_event(EventType.LIKE_TOGGLED, entity=entity_id, action=result.action, count=result.count)

        if self.config.refresh_after_mutation:
            await self.refresh_stats(entity_id)

        return ToggleOutcome(status="ok", liked=result.liked, count=result.count)

    async def load_like_status(self, entity_id: str, user_id: str) -> Optional[LikeStatus]:
        """Fetch the like count and liked flag; ignored while a toggle is in flight."""
        state = self.get_state(entity_id)
        if (entity_id, user_id) in self._likes_in_flight:
            return None

        version = state.version
        try:
            status = await asyncio.to_thread(self.adapter.get_like_status, entity_id, user_id)
        except Exception as e:
            logger.warning(f"Could not load like status for {entity_id}: {e}")
            return None

        if state.version != version or self._like_in_flight(entity_id):
            logger.debug(f"Discarding stale like status for {entity_id}")
            self._record_stale(entity_id)
            return None

        state.likes_count = status.count
        state.liked_by[user_id] = status.has_liked
        state.authoritative = True
        self._write_shadow(entity_id, likes=status.count, user_id=user_id, liked=status.has_liked)
        return status

    # =========================================================================
    # Comments
    # =========================================================================

    async def submit_comment(self, entity_id: str, user_id: str, text: str) -> CommentOutcome:
        """
        Post a comment optimistically, retrying transient failures with backoff.

        The temporary comment id doubles as the idempotency key, so retried
        sends never create duplicates.
        """
        state = self.get_state(entity_id)
        text = (text or "").strip()

        if not text:
            return CommentOutcome(
                status="invalid",
                comments_count=state.comments_count,
                error_kind=ErrorKind.VALIDATION,
                message="Comment cannot be empty.",
            )
        if len(text) > self.config.max_comment_length:
            return CommentOutcome(
                status="invalid",
                comments_count=state.comments_count,
                error_kind=ErrorKind.VALIDATION,
                message=f"Comment must be {self.config.max_comment_length} characters or less.",
            )

        if self._login_required(user_id):
            return CommentOutcome(
                status="unauthenticated",
                comments_count=state.comments_count,
                error_kind=ErrorKind.UNAUTHENTICATED,
                message=LOGIN_REQUIRED_MESSAGE,
            )

        temp = Comment(
            id=f"temp-{uuid.uuid4().hex}",
            author_id=user_id,
            entity_id=entity_id,
            text=text,
            is_optimistic=True,
            status=CommentStatus.OPTIMISTIC,
        )
        state.comments.insert(0, temp)
        state.comments_count += 1
        state.version += 1

        return await self._send_comment(entity_id, temp)

    async def retry_comment(self, entity_id: str, comment_id: str, user_id: str) -> CommentOutcome:
        """Send a comment left in pending_sync again."""
        state = self.get_state(entity_id)

        if self._login_required(user_id):
            return CommentOutcome(
                status="unauthenticated",
                comments_count=state.comments_count,
                error_kind=ErrorKind.UNAUTHENTICATED,
                message=LOGIN_REQUIRED_MESSAGE,
            )

        index = self._find_comment(state, comment_id)
        if (
            index < 0
            or comment_id in self._comments_in_flight
            or state.comments[index].status != CommentStatus.PENDING_SYNC
            or state.comments[index].author_id != user_id
        ):
            return CommentOutcome(
                status="invalid",
                comments_count=state.comments_count,
                message="Comment is not waiting to be sent.",
            )

        comment = state.comments[index].model_copy(update={"status": CommentStatus.OPTIMISTIC})
        state.comments[index] = comment
        state.version += 1
        return await self._send_comment(entity_id, comment)

    async def _send_comment(self, entity_id: str, comment: Comment) -> CommentOutcome:
        state = self.get_state(entity_id)
        mon = _get_monitor()
        attempts = 0
        last_error: Optional[Exception] = None
        kind = ErrorKind.UNKNOWN
        confirmed: Optional[Comment] = None

        self._comments_in_flight[comment.id] = entity_id
        try:
            while attempts < self.config.max_comment_attempts:
                attempts += 1
                try:
                    confirmed = await asyncio.to_thread(
                        self.adapter.create_comment,
                        entity_id,
                        comment.author_id,
                        comment.text,
                        comment.id,
                    )
                except Exception as e:
                    last_error = e
                    kind = classify_error(e)
                    if kind != ErrorKind.TRANSIENT:
                        break
                    if attempts < self.config.max_comment_attempts:
                        delay = self.config.retry_delay(attempts)
                        logger.info(f"Comment attempt {attempts} on {entity_id} failed ({e}), retrying in {delay}s")
                        if mon:
                            mon.metrics.record_comment_retry()
                            from monitoring import EventType
                            mon.activity.add_event(EventType.COMMENT_RETRY, entity=entity_id, attempt=attempts, delay=delay)
                        await self._sleep(delay)
                    continue
                break
        finally:
            self._comments_in_flight.pop(comment.id, None)

        if confirmed is not None:
            return await self._confirm_comment(entity_id, comment, confirmed, attempts)

        index = self._find_comment(state, comment.id)

        if kind == ErrorKind.TRANSIENT:
            pending = comment.model_copy(update={"status": CommentStatus.PENDING_SYNC})
            if index >= 0:
                state.comments[index] = pending
            state.version += 1
            logger.warning(f"Comment on {entity_id} kept as pending_sync after {attempts} attempts: {last_error}")

            if mon:
                mon.metrics.record_comment(pending=True)
                from monitoring import EventType
                mon.activity.add_event(EventType.COMMENT_PENDING, entity=entity_id, attempts=attempts)

            message = COMMENT_ERROR_MESSAGES[ErrorKind.TRANSIENT]
            self.notifications.warning(message, key=f"{self.feature}_comment_{kind.value}")
            return CommentOutcome(
                status="pending",
                comment=pending,
                comments_count=state.comments_count,
                attempts=attempts,
                error_kind=kind,
                message=message,
            )

        if index >= 0:
            del state.comments[index]
        state.comments_count = max(0, state.comments_count - 1)
        state.version += 1
        logger.warning(f"Comment on {entity_id} failed ({kind.value}), rolled back: {last_error}")

        if mon:
            mon.metrics.record_rollback()
            from monitoring import EventType
            mon.activity.add_event(EventType.COMMENT_FAILED, entity=entity_id, error_kind=kind.value)

        message = COMMENT_ERROR_MESSAGES.get(kind, COMMENT_ERROR_MESSAGES[ErrorKind.UNKNOWN])
        self.notifications.error(message, key=f"{self.feature}_comment_{kind.value}")
        return CommentOutcome(
            status="failed",
            comments_count=state.comments_count,
            attempts=attempts,
            error_kind=kind,
            message=message,
        )

    async def _confirm_comment(
        self,
        entity_id: str,
        temp: Comment,
        confirmed: Comment,
        attempts: int,
    ) -> CommentOutcome:
        state = self.get_state(entity_id)
        index = self._find_comment(state, temp.id)
        if index >= 0:
            del state.comments[index]
        else:
            index = 0

        # A comments reload may already have brought in the confirmed record
        if self._find_comment(state, confirmed.id) < 0:
            state.comments.insert(min(index, len(state.comments)), confirmed)
        state.version += 1

        logger.info(f"Comment {confirmed.id} confirmed on {entity_id} after {attempts} attempt(s)")
        mon = _get_monitor()
        if mon:
            mon.metrics.record_comment()
            from monitoring import EventType
            mon.activity.add_event(EventType.COMMENT_CONFIRMED, entity=entity_id, comment_id=confirmed.id, attempts=attempts)

        if self.config.refresh_after_mutation:
            await self.refresh_stats(entity_id)

        return CommentOutcome(
            status="confirmed",
            comment=confirmed,
            comments_count=state.comments_count,
            attempts=attempts,
        )

    def discard_comment(self, entity_id: str, comment_id: str) -> bool:
        """Drop a pending_sync comment and undo its counter increment."""
        state = self.get_state(entity_id)
        index = self._find_comment(state, comment_id)
        if index < 0 or comment_id in self._comments_in_flight:
            return False
        if state.comments[index].status != CommentStatus.PENDING_SYNC:
            return False

        del state.comments[index]
        state.comments_count = max(0, state.comments_count - 1)
        state.version += 1
        logger.info(f"Discarded pending comment {comment_id} on {entity_id}")
        return True

    async def delete_comment(self, entity_id: str, comment_id: str, user_id: str) -> bool:
        """
        Delete a confirmed comment authored by ``user_id``.

        The comment disappears immediately and is restored if the backend
        refuses.
        """
        state = self.get_state(entity_id)
        if self._login_required(user_id):
            return False

        index = self._find_comment(state, comment_id)
        if index < 0:
            return False

        comment = state.comments[index]
        if comment.author_id != user_id:
            self.notifications.error("You can only delete your own comments.", key=f"{self.feature}_delete_{comment_id}")
            return False
        if comment.status == CommentStatus.PENDING_SYNC:
            return self.discard_comment(entity_id, comment_id)
        if comment.status != CommentStatus.CONFIRMED:
            return False

        del state.comments[index]
        state.comments_count = max(0, state.comments_count - 1)
        state.version += 1

        self._deletes_in_flight[comment_id] = entity_id
        try:
            count = await asyncio.to_thread(self.adapter.delete_comment, comment_id, user_id)
        except Exception as e:
            kind = classify_error(e)
            state.comments.insert(min(index, len(state.comments)), comment)
            state.comments_count += 1
            state.version += 1
            logger.warning(f"Deleting comment {comment_id} failed ({kind.value}), restored: {e}")

            mon = _get_monitor()
            if mon:
                mon.metrics.record_rollback()
                from monitoring import EventType
                mon.activity.add_event(EventType.ROLLBACK, entity=entity_id, action="delete_comment", error_kind=kind.value)

            if kind == ErrorKind.PERMISSION:
                message = "You don't have permission to delete this comment."
            elif kind == ErrorKind.UNAUTHENTICATED:
                message = LOGIN_REQUIRED_MESSAGE
            else:
                message = DELETE_FAILED_MESSAGE
            self.notifications.error(message, key=f"{self.feature}_delete_{comment_id}")
            return False
        finally:
            self._deletes_in_flight.pop(comment_id, None)

        state.comments_count = count + self._unconfirmed_count(state)
        state.authoritative = True
        self._write_shadow(entity_id, comments=count)
        logger.info(f"Deleted comment {comment_id} on {entity_id}")
        return True

    async def load_comments(self, entity_id: str, limit: int = 20, offset: int = 0) -> List[Comment]:
        """
        Load a page of confirmed comments.

        The first page replaces the confirmed comments held locally; later
        pages are appended. Unconfirmed local comments stay at the head.
        """
        state = self.get_state(entity_id)
        try:
            comments, _total = await asyncio.to_thread(self.adapter.list_comments, entity_id, limit, offset)
        except Exception as e:
            logger.warning(f"Could not load comments for {entity_id}: {e}")
            return list(state.comments)

        unconfirmed = [c for c in state.comments if c.status != CommentStatus.CONFIRMED]
        if offset == 0:
            confirmed = comments
        else:
            confirmed = [c for c in state.comments if c.status == CommentStatus.CONFIRMED]
            known = {c.id for c in confirmed}
            confirmed = confirmed + [c for c in comments if c.id not in known]

        state.comments = unconfirmed + confirmed
        return list(state.comments)

    # =========================================================================
    # Stats
    # =========================================================================

    def _record_stale(self, entity_id: str) -> None:
        mon = _get_monitor()
        if mon:
            mon.metrics.record_stale_response()
            from monitoring import EventType
            mon.activity.add_event(EventType.STALE_RESPONSE, entity=entity_id)

    async def refresh_stats(self, entity_id: str) -> bool:
        """
        Overwrite both counters with the backend's entity stats.

        The response is discarded if a newer refresh was started, a local
        mutation happened meanwhile, or a mutation on the entity is still
        waiting for the backend. Unconfirmed local comments keep their +1 on
        top of the server's comments count.

        Returns:
            True if the counters were updated
        """
        state = self.get_state(entity_id)
        generation = self._refresh_generation.get(entity_id, 0) + 1
        self._refresh_generation[entity_id] = generation
        version = state.version

        try:
            entity = await asyncio.to_thread(self.adapter.get_entity, entity_id)
        except Exception as e:
            logger.warning(f"Stats refresh for {entity_id} failed: {e}")
            return False

        if (
            self._refresh_generation.get(entity_id) != generation
            or state.version != version
            or self._mutation_in_flight(entity_id)
        ):
            logger.debug(f"Discarding stale stats for {entity_id}")
            self._record_stale(entity_id)
            return False

        state.likes_count = entity.stats.likes_count
        state.comments_count = entity.stats.comments_count + self._unconfirmed_count(state)
        state.authoritative = True
        state.last_refreshed = datetime.now(timezone.utc)
        self._write_shadow(entity_id, likes=entity.stats.likes_count, comments=entity.stats.comments_count)

        mon = _get_monitor()
        if mon:
            from monitoring import EventType
            mon.activity.add_event(
                EventType.STATS_REFRESHED,
                entity=entity_id,
                likes=state.likes_count,
                comments=state.comments_count,
            )
        return True
