"""
SQLite database module for the interaction store.
Provides connection management and query helpers.
"""

import json
import os
import secrets
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from adapter.models import normalize_stats

DB_PATH = Path(os.environ.get("VIBE_DB_PATH", Path(__file__).parent.parent / "db.sqlite3"))

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

STATS_ENCODINGS = ("array", "object")


def init_db(path: Optional[Path] = None, reset: bool = False):
    """
    Initialize the database with schema.

    Args:
        path: Database file (defaults to DB_PATH)
        reset: If True, drops all existing tables and recreates them (fresh start).
               If False, only creates tables if they don't exist (preserves data).
    """
    with sqlite3.connect(path or DB_PATH) as conn:
        if reset:
            conn.execute("DROP TABLE IF EXISTS counter_shadow")
            conn.execute("DROP TABLE IF EXISTS sessions")
            conn.execute("DROP TABLE IF EXISTS comments")
            conn.execute("DROP TABLE IF EXISTS likes")
            conn.execute("DROP TABLE IF EXISTS entities")

        with open(SCHEMA_PATH) as f:
            conn.executescript(f.read())
        conn.commit()


@contextmanager
def get_db(path: Optional[Path] = None):
    """Context manager for database connections."""
    conn = sqlite3.connect(path or DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row  # Enable dict-like access
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _encode_stats(encoding: str, likes: int, comments: int, views: int) -> str:
    """Serialize stats in the entity's own encoding (legacy array or object)."""
    if encoding == "array":
        return json.dumps([str(likes), str(comments), str(views)])
    return json.dumps({"total_likes": likes, "total_comments": comments, "total_views": views})


class Database:
    """Interaction store: entities, likes, comments and sessions."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path or DB_PATH

    def _db(self):
        return get_db(self.path)

    # Entities
    def create_entity(
        self,
        entity_id: Optional[str] = None,
        feature: str = "vibe",
        stats_encoding: str = "object",
    ) -> Dict[str, Any]:
        """Create a content entity with zeroed stats."""
        if stats_encoding not in STATS_ENCODINGS:
            raise ValueError(f"Invalid stats encoding: {stats_encoding}. Valid: {list(STATS_ENCODINGS)}")

        entity_id = entity_id or uuid.uuid4().hex
        with self._db() as db:
            db.execute(
                "INSERT INTO entities (id, feature, stats, stats_encoding) VALUES (?, ?, ?, ?)",
                (entity_id, feature, _encode_stats(stats_encoding, 0, 0, 0), stats_encoding),
            )
        return self.get_entity(entity_id)

    def get_entity(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Get an entity with stats decoded but not normalized."""
        with self._db() as db:
            row = db.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
            if not row:
                return None
            return {
                "id": row["id"],
                "feature": row["feature"],
                "stats": json.loads(row["stats"]),
                "stats_encoding": row["stats_encoding"],
            }

    def _refresh_stats(self, db: sqlite3.Connection, entity_id: str) -> Tuple[int, int]:
        """Recount likes and comments and rewrite the denormalized stats."""
        row = db.execute("SELECT stats, stats_encoding FROM entities WHERE id = ?", (entity_id,)).fetchone()
        likes = db.execute("SELECT COUNT(*) FROM likes WHERE entity_id = ?", (entity_id,)).fetchone()[0]
        comments = db.execute("SELECT COUNT(*) FROM comments WHERE entity_id = ?", (entity_id,)).fetchone()[0]
        views = normalize_stats(json.loads(row["stats"])).views_count
        db.execute(
            "UPDATE entities SET stats = ? WHERE id = ?",
            (_encode_stats(row["stats_encoding"], likes, comments, views), entity_id),
        )
        return likes, comments

    # Likes
    def toggle_like(self, entity_id: str, user_id: str) -> Tuple[str, int]:
        """
        Like or unlike an entity for a user.

        Returns:
            (action, count) where action is "liked" or "unliked"
        """
        with self._db() as db:
            existing = db.execute(
                "SELECT id FROM likes WHERE entity_id = ? AND user_id = ?",
                (entity_id, user_id),
            ).fetchone()

            if existing:
                db.execute("DELETE FROM likes WHERE id = ?", (existing["id"],))
                action = "unliked"
            else:
                db.execute(
                    "INSERT INTO likes (entity_id, user_id) VALUES (?, ?)",
                    (entity_id, user_id),
                )
                action = "liked"

            likes, _ = self._refresh_stats(db, entity_id)
            return action, likes

    def get_like_status(self, entity_id: str, user_id: Optional[str] = None) -> Tuple[int, bool]:
        """Get like count and whether the user has liked."""
        with self._db() as db:
            count = db.execute("SELECT COUNT(*) FROM likes WHERE entity_id = ?", (entity_id,)).fetchone()[0]
            has_liked = False
            if user_id:
                has_liked = db.execute(
                    "SELECT 1 FROM likes WHERE entity_id = ? AND user_id = ?",
                    (entity_id, user_id),
                ).fetchone() is not None
            return count, has_liked

    # Comments
    def create_comment(
        self,
        entity_id: str,
        user_id: str,
        text: str,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], int]:
        """
        Create a comment.

        A repeated idempotency key returns the comment created the first time.

        Returns:
            (comment, comments_count)
        """
        with self._db() as db:
            if idempotency_key:
                existing = self._find_by_idempotency_key(db, idempotency_key)
                if existing:
                    return existing

            comment_id = uuid.uuid4().hex
            created_at = datetime.now(timezone.utc).isoformat(timespec="microseconds")
            db.execute(
                """INSERT INTO comments (id, entity_id, user_id, text, idempotency_key, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (comment_id, entity_id, user_id, text, idempotency_key, created_at),
            )
            _, count = self._refresh_stats(db, entity_id)
            row = db.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
            return self._comment_dict(row), count

    def _find_by_idempotency_key(
        self, db: sqlite3.Connection, idempotency_key: str
    ) -> Optional[Tuple[Dict[str, Any], int]]:
        row = db.execute(
            "SELECT * FROM comments WHERE idempotency_key = ?", (idempotency_key,)
        ).fetchone()
        if not row:
            return None
        count = db.execute(
            "SELECT COUNT(*) FROM comments WHERE entity_id = ?", (row["entity_id"],)
        ).fetchone()[0]
        return self._comment_dict(row), count

    def find_idempotent_comment(self, idempotency_key: str) -> Optional[Tuple[Dict[str, Any], int]]:
        """(comment, comments_count) for a previously used idempotency key, else None."""
        with self._db() as db:
            return self._find_by_idempotency_key(db, idempotency_key)

    def list_comments(self, entity_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """Get comments for an entity, newest first, with the total count."""
        with self._db() as db:
            cursor = db.execute(
                """SELECT * FROM comments
                   WHERE entity_id = ?
                   ORDER BY created_at DESC
                   LIMIT ? OFFSET ?""",
                (entity_id, limit, offset),
            )
            comments = [self._comment_dict(row) for row in cursor.fetchall()]
            total = db.execute("SELECT COUNT(*) FROM comments WHERE entity_id = ?", (entity_id,)).fetchone()[0]
            return comments, total

    def get_comment(self, comment_id: str) -> Optional[Dict[str, Any]]:
        with self._db() as db:
            row = db.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
            return self._comment_dict(row) if row else None

    def delete_comment(self, comment_id: str) -> int:
        """
        Delete a comment.

        Returns:
            Updated comments count for the comment's entity
        """
        with self._db() as db:
            row = db.execute("SELECT entity_id FROM comments WHERE id = ?", (comment_id,)).fetchone()
            if not row:
                raise KeyError(comment_id)
            db.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
            _, count = self._refresh_stats(db, row["entity_id"])
            return count

    @staticmethod
    def _comment_dict(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "entity_id": row["entity_id"],
            "user_id": row["user_id"],
            "text": row["text"],
            "created_at": row["created_at"],
        }

    # Sessions
    def create_session(self, user_id: str, ttl_seconds: int = 3600) -> Dict[str, Any]:
        """Create an opaque session token for a user."""
        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        with self._db() as db:
            db.execute(
                "INSERT INTO sessions (token, user_id, expires_at) VALUES (?, ?, ?)",
                (token, user_id, expires_at.isoformat()),
            )
        return {"token": token, "user_id": user_id, "expires_at": expires_at}

    def get_session(self, token: str) -> Optional[Dict[str, Any]]:
        """Get a session if the token exists and has not expired."""
        with self._db() as db:
            row = db.execute("SELECT * FROM sessions WHERE token = ?", (token,)).fetchone()
            if not row:
                return None
            expires_at = datetime.fromisoformat(row["expires_at"])
            if expires_at <= datetime.now(timezone.utc):
                return None
            return {"token": row["token"], "user_id": row["user_id"], "expires_at": expires_at}


def reset_db(path: Optional[Path] = None):
    """Completely reset the database (delete all data and recreate schema)."""
    init_db(path, reset=True)


__all__ = ["init_db", "reset_db", "get_db", "Database", "DB_PATH"]
