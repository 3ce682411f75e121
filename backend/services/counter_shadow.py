"""
Persisted counter shadow for interaction counters.

Provides:
- Durable (sqlite) copy of the last server-confirmed like/comment counts
- Liked-by-user flags so a remount does not flash the wrong heart state
- Thread-safe last-write-wins writes
- Read metrics

The shadow is advisory: it pre-seeds state on mount and is overwritten as
soon as the backend answers. Only server-confirmed values are written here.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from database import get_db, init_db

logger = logging.getLogger(__name__)


class CounterShadow:
    """
    Key/value store of stringified counters.

    Key formats:
        <feature>_like_count_<entity_id>
        <feature>_comment_count_<entity_id>
        <feature>_liked_by_user_<entity_id>_<user_id>
    """

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize the counter shadow.

        Args:
            db_path: sqlite file holding the counter_shadow table (defaults to DB_PATH)
        """
        self._db_path = db_path
        self._lock = threading.Lock()

        self._hits = 0
        self._misses = 0

        init_db(db_path)
        logger.info(f"CounterShadow initialized ({db_path or 'default database'})")

    @staticmethod
    def like_count_key(feature: str, entity_id: str) -> str:
        return f"{feature}_like_count_{entity_id}"

    @staticmethod
    def comment_count_key(feature: str, entity_id: str) -> str:
        return f"{feature}_comment_count_{entity_id}"

    @staticmethod
    def liked_key(feature: str, entity_id: str, user_id: str) -> str:
        return f"{feature}_liked_by_user_{entity_id}_{user_id}"

    def _get(self, key: str) -> Optional[str]:
        with self._lock, get_db(self._db_path) as db:
            row = db.execute("SELECT value FROM counter_shadow WHERE key = ?", (key,)).fetchone()
        if row is None:
            self._misses += 1
            return None
        self._hits += 1
        return row["value"]

    def _set(self, key: str, value: str) -> None:
        with self._lock, get_db(self._db_path) as db:
            db.execute(
                """INSERT INTO counter_shadow (key, value, updated_at)
                   VALUES (?, ?, CURRENT_TIMESTAMP)
                   ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value,
                   updated_at = excluded.updated_at""",
                (key, value),
            )

    def _get_count(self, key: str) -> Optional[int]:
        raw = self._get(key)
        if raw is None:
            return None
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"Ignoring unparsable shadow value for {key}: {raw!r}")
            return None
        return value if value >= 0 else None

    def read_like_count(self, feature: str, entity_id: str) -> Optional[int]:
        """Last confirmed like count, or None if unknown."""
        return self._get_count(self.like_count_key(feature, entity_id))

    def write_like_count(self, feature: str, entity_id: str, count: int) -> None:
        self._set(self.like_count_key(feature, entity_id), str(max(0, int(count))))
        logger.debug(f"Shadowed {feature} {entity_id} likes={count}")

    def read_comment_count(self, feature: str, entity_id: str) -> Optional[int]:
        """Last confirmed comment count, or None if unknown."""
        return self._get_count(self.comment_count_key(feature, entity_id))

    def write_comment_count(self, feature: str, entity_id: str, count: int) -> None:
        self._set(self.comment_count_key(feature, entity_id), str(max(0, int(count))))
        logger.debug(f"Shadowed {feature} {entity_id} comments={count}")

    def read_liked(self, feature: str, entity_id: str, user_id: str) -> Optional[bool]:
        raw = self._get(self.liked_key(feature, entity_id, user_id))
        if raw is None:
            return None
        return raw == "true"

    def write_liked(self, feature: str, entity_id: str, user_id: str, liked: bool) -> None:
        self._set(self.liked_key(feature, entity_id, user_id), "true" if liked else "false")

    def clear(self, feature: Optional[str] = None) -> int:
        """
        Remove shadowed values.

        Args:
            feature: Only clear keys for this feature (all keys if None)

        Returns:
            Number of entries removed
        """
        with self._lock, get_db(self._db_path) as db:
            if feature:
                prefix = f"{feature}_"
                cursor = db.execute(
                    "DELETE FROM counter_shadow WHERE substr(key, 1, ?) = ?",
                    (len(prefix), prefix),
                )
            else:
                cursor = db.execute("DELETE FROM counter_shadow")
            removed = cursor.rowcount
        logger.info(f"Cleared {removed} shadowed counters")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate_percent": round((self._hits / total * 100) if total else 0, 2),
        }


__all__ = ["CounterShadow"]
