"""
FastAPI routes for the interaction API.

Implements the backend contract the client adapter talks to: like toggles,
comments, entity stats and development sessions. Errors use the
{"error": {"message", "code"}} body.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from adapter.rate_limiter import RateLimiter, RateLimitConfig
from database import Database
from monitoring import monitor, get_rate_limit_status, EventType

logger = logging.getLogger(__name__)

# Router for API endpoints
router = APIRouter(prefix="/api/v1", tags=["Interactions"])

MAX_COMMENT_LENGTH = 1000

COMMENT_RATE_LIMIT = RateLimitConfig(requests_per_window=10, window_seconds=60)

COMMENT_CATEGORY_PREFIX = "comments:"

# Idle per-user comment categories are pruned once this many are configured
MAX_COMMENT_CATEGORIES = int(os.getenv("MAX_COMMENT_CATEGORIES", "1000"))


# ============================================================================
# Request/Response Models
# ============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ToggleLikeRequest(_CamelModel):
    """Request to toggle a like."""
    user_id: str = Field(alias="userId", min_length=1, description="Acting user")


class ToggleLikeResponse(BaseModel):
    action: Literal["liked", "unliked"]
    count: int


class LikeStatusResponse(_CamelModel):
    count: int
    has_liked: bool = Field(serialization_alias="hasLiked")


class CreateCommentRequest(_CamelModel):
    """Request to create a comment."""
    entity_id: str = Field(alias="entityId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    text: str = Field(description="Comment text (trimmed, 1-1000 characters)")


class CreateEntityRequest(_CamelModel):
    """Request to seed a content entity."""
    id: Optional[str] = Field(default=None, description="Entity ID (generated if omitted)")
    feature: str = Field(default="vibe", description="Feature the entity belongs to")
    stats_encoding: Literal["array", "object"] = Field(default="object", alias="statsEncoding")


class CreateSessionRequest(_CamelModel):
    """Request to open a development session."""
    user_id: str = Field(alias="userId", min_length=1)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime


def _comment_payload(comment: dict) -> dict:
    return {
        "id": comment["id"],
        "entityId": comment["entity_id"],
        "userId": comment["user_id"],
        "text": comment["text"],
        "createdAt": comment["created_at"],
    }


# ============================================================================
# Error handling
# ============================================================================

def error_body(message: str, code) -> dict:
    return {"error": {"message": message, "code": code}}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), exc.status_code),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {location} {first.get('msg', '')}".strip()
    return JSONResponse(status_code=400, content=error_body(message, 400))


def register_exception_handlers(app: FastAPI) -> None:
    """Install the structured error handlers on an app."""
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)


# ============================================================================
# Dependencies
# ============================================================================

_database: Optional[Database] = None
_rate_limiter: Optional[RateLimiter] = None
_session_ttl: int = 3600


def set_dependencies(database: Database, rate_limiter: RateLimiter, session_ttl: int = 3600):
    """Set the service dependencies (called from main app)."""
    global _database, _rate_limiter, _session_ttl
    _database = database
    _rate_limiter = rate_limiter
    _session_ttl = session_ttl


def get_database() -> Database:
    if _database is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _database


def get_rate_limiter() -> RateLimiter:
    if _rate_limiter is None:
        raise HTTPException(status_code=503, detail="Rate limiter not initialized")
    return _rate_limiter


def _require_entity(db: Database, entity_id: str) -> dict:
    entity = db.get_entity(entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"Entity '{entity_id}' not found")
    return entity


# ============================================================================
# Routes
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(db: Database = Depends(get_database)):
    """Health check endpoint."""
    return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc))


# ----------------------------------------------------------------------------
# Entities
# ----------------------------------------------------------------------------

@router.post("/entities", status_code=201)
async def create_entity(request: CreateEntityRequest, db: Database = Depends(get_database)):
    """Seed a content entity with zeroed stats in the requested encoding."""
    if request.id and db.get_entity(request.id):
        raise HTTPException(status_code=409, detail=f"Entity '{request.id}' already exists")
    entity = db.create_entity(request.id, feature=request.feature, stats_encoding=request.stats_encoding)
    logger.info(f"Created {entity['feature']} entity {entity['id']} ({entity['stats_encoding']} stats)")
    return {"id": entity["id"], "feature": entity["feature"], "stats": entity["stats"]}


@router.get("/entities/{entity_id}")
async def get_entity(entity_id: str, db: Database = Depends(get_database)):
    """Get an entity; stats are returned in the entity's stored encoding."""
    entity = _require_entity(db, entity_id)
    return {"id": entity["id"], "feature": entity["feature"], "stats": entity["stats"]}


# ----------------------------------------------------------------------------
# Likes
# ----------------------------------------------------------------------------

@router.post("/interactions/{entity_id}/toggle-like", response_model=ToggleLikeResponse)
async def toggle_like(
    entity_id: str,
    request: ToggleLikeRequest,
    db: Database = Depends(get_database),
):
    """Like or unlike an entity; returns the authoritative count."""
    _require_entity(db, entity_id)
    action, count = db.toggle_like(entity_id, request.user_id)
    logger.info(f"{request.user_id} {action} {entity_id} ({count} likes)")
    return ToggleLikeResponse(action=action, count=count)


@router.get("/interactions/{entity_id}/likes")
async def get_likes(
    entity_id: str,
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: Database = Depends(get_database),
):
    """Like count and whether the given user has liked."""
    _require_entity(db, entity_id)
    count, has_liked = db.get_like_status(entity_id, user_id)
    return LikeStatusResponse(count=count, has_liked=has_liked).model_dump(by_alias=True)


# ----------------------------------------------------------------------------
# Comments
# ----------------------------------------------------------------------------

@router.post("/comments", status_code=201)
async def create_comment(
    request: CreateCommentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: Database = Depends(get_database),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    Create a comment.

    Resending the same Idempotency-Key returns the comment created the first
    time instead of creating a duplicate.
    """
    text = request.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Comment cannot be empty")
    if len(text) > MAX_COMMENT_LENGTH:
        raise HTTPException(status_code=400, detail=f"Comment must be {MAX_COMMENT_LENGTH} characters or less")

    _require_entity(db, request.entity_id)

    # A replayed key never consumes a rate limit slot
    if idempotency_key:
        existing = db.find_idempotent_comment(idempotency_key)
        if existing:
            comment, count = existing
            logger.info(f"Replayed comment {comment['id']} for idempotency key {idempotency_key}")
            return {"data": _comment_payload(comment), "count": count}

    category = f"{COMMENT_CATEGORY_PREFIX}{request.user_id}"
    if category not in rate_limiter.configs:
        if len(rate_limiter.configs) >= MAX_COMMENT_CATEGORIES:
            rate_limiter.prune_idle(COMMENT_CATEGORY_PREFIX)
        rate_limiter.configure_limit(category, COMMENT_RATE_LIMIT)
    if not rate_limiter.try_acquire(category):
        monitor.activity.add_event(EventType.THROTTLED, entity=request.entity_id, user_id=request.user_id)
        raise HTTPException(
            status_code=429,
            detail="Too many comments. Please wait a moment.",
            headers={"Retry-After": str(COMMENT_RATE_LIMIT.window_seconds)},
        )
    rate_limiter.release(category)

    comment, count = db.create_comment(request.entity_id, request.user_id, text, idempotency_key=idempotency_key)
    return {"data": _comment_payload(comment), "count": count}


@router.get("/comments")
async def list_comments(
    entity_id: str = Query(alias="entityId"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Database = Depends(get_database),
):
    """Comments for an entity, newest first."""
    comments, total = db.list_comments(entity_id, limit=limit, offset=offset)
    return {"comments": [_comment_payload(c) for c in comments], "total": total}


@router.delete("/comments/{comment_id}")
async def delete_comment(
    comment_id: str,
    user_id: str = Query(alias="userId"),
    db: Database = Depends(get_database),
):
    """Delete a comment; only its author may do so."""
    comment = db.get_comment(comment_id)
    if comment is None:
        raise HTTPException(status_code=404, detail=f"Comment '{comment_id}' not found")
    if comment["user_id"] != user_id:
        raise HTTPException(status_code=403, detail="You can only delete your own comments")

    try:
        count = db.delete_comment(comment_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Comment '{comment_id}' not found")
    return {"count": count}


# ----------------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------------

@router.post("/account/sessions", status_code=201)
async def create_session(request: CreateSessionRequest, db: Database = Depends(get_database)):
    """Open a development session and return its bearer token."""
    session = db.create_session(request.user_id, ttl_seconds=_session_ttl)
    return {
        "token": session["token"],
        "userId": session["user_id"],
        "expiresAt": session["expires_at"].isoformat(),
    }


@router.get("/account/session")
async def get_session(
    authorization: Optional[str] = Header(default=None),
    db: Database = Depends(get_database),
):
    """Validate the bearer token of the current session."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing session token")

    session = db.get_session(authorization[7:].strip())
    if session is None:
        raise HTTPException(status_code=401, detail="Session is invalid or expired")
    return {"userId": session["user_id"], "expiresAt": session["expires_at"].isoformat()}


# ============================================================================
# Monitoring & Observability
# ============================================================================

@router.get("/monitor/dashboard", tags=["Monitoring"])
async def get_dashboard():
    """
    Full monitoring dashboard data.

    Returns all metrics, health status, and recent activity in one call.
    """
    return monitor.get_dashboard_data()


@router.get("/monitor/metrics", tags=["Monitoring"])
async def get_metrics():
    """
    Detailed performance metrics.

    Includes:
    - Request counts and latencies
    - Backend call statistics
    - Optimistic mutation outcomes
    """
    return monitor.metrics.get_metrics()


@router.get("/monitor/rate-limits", tags=["Monitoring"])
async def get_rate_limits():
    """Rate limit usage per category."""
    if _rate_limiter is None:
        return {"error": "Rate limiter not configured", "categories": {}}

    status = get_rate_limit_status(_rate_limiter)

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "categories": status,
        "summary": {
            "total_categories": len(status),
            "critical": sum(1 for s in status.values() if s["status"] == "critical"),
            "warning": sum(1 for s in status.values() if s["status"] == "warning"),
            "ok": sum(1 for s in status.values() if s["status"] == "ok"),
        }
    }


@router.get("/monitor/activity", tags=["Monitoring"])
async def get_activity_feed(
    limit: int = Query(default=50, ge=1, le=200, description="Number of events"),
    event_type: Optional[str] = Query(default=None, description="Filter by event type")
):
    """
    Recent system events: like toggles, comment outcomes, rollbacks,
    stale responses, session checks and errors.
    """
    filter_type = None
    if event_type:
        try:
            filter_type = EventType(event_type)
        except ValueError:
            valid_types = [e.value for e in EventType]
            raise HTTPException(
                status_code=400,
                detail=f"Invalid event_type. Valid options: {valid_types}"
            )

    events = monitor.activity.get_recent(limit=limit, event_type=filter_type)
    event_counts = monitor.activity.get_event_counts(since_minutes=5)

    return {
        "events": events,
        "event_counts_5m": event_counts,
        "available_types": [e.value for e in EventType],
    }


__all__ = [
    "router",
    "set_dependencies",
    "register_exception_handlers",
    "error_body",
    "MAX_COMMENT_LENGTH",
]
