"""
Shared data models for the backend adapter.

Stats arrive from the backend in two encodings (legacy array and object).
normalize_stats() is the only place that knows about either shape.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EntityStats(BaseModel):
    """
    Denormalized interaction counters for a content entity.

    Attributes:
        likes_count: Total likes
        comments_count: Total comments
        views_count: Total views (only some encodings carry it)
    """
    likes_count: int = Field(default=0, ge=0, description="Total likes")
    comments_count: int = Field(default=0, ge=0, description="Total comments")
    views_count: int = Field(default=0, ge=0, description="Total views")


def _to_count(value: Any) -> int:
    """Parse a counter value that may be an int, float or numeric string."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    if isinstance(value, str):
        try:
            return max(0, int(float(value.strip())))
        except ValueError:
            return 0
    return 0


def normalize_stats(raw: Any) -> EntityStats:
    """
    Normalize stats from any backend encoding.

    Accepted shapes:
        ["5", "2", "10"]                                   (likes, comments, views)
        {"total_likes": 5, "total_comments": 2, ...}
        {"likes": 5, "comments": 2}
        a JSON string holding either of the above

    Anything else normalizes to zero counters.
    """
    if isinstance(raw, EntityStats):
        return raw

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.debug(f"Unparsable stats string: {raw!r}")
            return EntityStats()

    if isinstance(raw, (list, tuple)):
        values = list(raw) + [0, 0, 0]
        return EntityStats(
            likes_count=_to_count(values[0]),
            comments_count=_to_count(values[1]),
            views_count=_to_count(values[2]),
        )

    if isinstance(raw, dict):
        return EntityStats(
            likes_count=_to_count(raw.get("total_likes", raw.get("likes", 0))),
            comments_count=_to_count(raw.get("total_comments", raw.get("comments", 0))),
            views_count=_to_count(raw.get("total_views", raw.get("views", 0))),
        )

    if raw is not None:
        logger.debug(f"Unknown stats shape {type(raw).__name__}, using zeros")
    return EntityStats()


class Entity(BaseModel):
    """A content entity (vibe, mix, post) as returned by the backend."""
    id: str = Field(description="Entity ID")
    feature: str = Field(default="vibe", description="Feature the entity belongs to")
    stats: EntityStats = Field(default_factory=EntityStats)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Entity":
        return cls(
            id=str(payload.get("id") or payload.get("$id") or ""),
            feature=payload.get("feature") or "vibe",
            stats=normalize_stats(payload.get("stats")),
        )


class CommentStatus(str, Enum):
    """Lifecycle of a locally held comment."""
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    PENDING_SYNC = "pending_sync"


class Comment(BaseModel):
    """
    A comment on an entity.

    Optimistic comments carry a temporary ``temp-`` id until the backend
    confirms them.
    """
    id: str = Field(description="Comment ID (temporary while optimistic)")
    author_id: str = Field(description="Author user ID")
    entity_id: str = Field(description="Entity the comment belongs to")
    text: str = Field(description="Comment text")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_optimistic: bool = Field(default=False)
    status: CommentStatus = Field(default=CommentStatus.CONFIRMED)

    @classmethod
    def from_api(cls, data: Dict[str, Any], fallback: Optional["Comment"] = None) -> "Comment":
        """
        Build a confirmed comment from a backend record.

        Missing or malformed fields are taken from ``fallback`` (usually the
        optimistic record being replaced).
        """
        def pick(*keys: str) -> Optional[str]:
            for key in keys:
                value = data.get(key)
                if isinstance(value, str) and value:
                    return value
            return None

        created_raw = pick("created_at", "createdAt", "$createdAt")
        created_at = None
        if created_raw:
            try:
                created_at = datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
            except ValueError:
                created_at = None

        return cls(
            id=pick("id", "$id") or (fallback.id if fallback else ""),
            author_id=pick("author_id", "authorId", "user_id", "userId") or (fallback.author_id if fallback else ""),
            entity_id=pick("entity_id", "entityId", "vibe_id") or (fallback.entity_id if fallback else ""),
            text=pick("text") or (fallback.text if fallback else ""),
            created_at=created_at or (fallback.created_at if fallback else datetime.now(timezone.utc)),
            is_optimistic=False,
            status=CommentStatus.CONFIRMED,
        )


class ToggleLikeResult(BaseModel):
    """Authoritative result of a like toggle."""
    action: Literal["liked", "unliked"]
    count: int = Field(ge=0)

    @property
    def liked(self) -> bool:
        return self.action == "liked"


class LikeStatus(BaseModel):
    """Like count and whether a given user has liked."""
    count: int = Field(default=0, ge=0)
    has_liked: bool = Field(default=False)


class Session(BaseModel):
    """An authenticated session."""
    user_id: str
    token: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


__all__ = [
    "EntityStats",
    "Entity",
    "CommentStatus",
    "Comment",
    "ToggleLikeResult",
    "LikeStatus",
    "Session",
    "normalize_stats",
]
