"""
Backend (BaaS) adapter for interaction features.

Wraps the interaction endpoints (like toggles, comments, entity stats,
sessions) and maps every failure onto a small error taxonomy the stores use
to decide between retry, rollback and user messaging.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests
from dotenv import load_dotenv

from ..models import Comment, Entity, LikeStatus, Session, ToggleLikeResult
from ..rate_limiter import RateLimiter, RateLimitConfig
from .interceptors import IdempotencyInterceptor, Interceptor, MonitoringInterceptor, RequestCall

load_dotenv()

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Failure classes for interaction mutations."""
    UNAUTHENTICATED = "unauthenticated"
    TRANSIENT = "transient"
    VALIDATION = "validation"
    PERMISSION = "permission"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


class BaaSError(Exception):
    """Base exception for backend adapter errors."""
    kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Any = None,
        response_text: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.response_text = response_text

    @property
    def retriable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


class BaaSAuthenticationError(BaaSError):
    """Raised when the session is missing, invalid or expired."""
    kind = ErrorKind.UNAUTHENTICATED


class BaaSTransientError(BaaSError):
    """Raised for timeouts, connection failures and gateway errors."""
    kind = ErrorKind.TRANSIENT


class BaaSValidationError(BaaSError):
    """Raised when the backend rejects the request payload."""
    kind = ErrorKind.VALIDATION


class BaaSPermissionError(BaaSError):
    """Raised when the user may not perform the action."""
    kind = ErrorKind.PERMISSION


class BaaSRateLimitError(BaaSError):
    """Raised when the backend rate limit is exceeded."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, retry_after: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class BaaSAPIError(BaaSError):
    """Raised for any other backend error."""
    kind = ErrorKind.UNKNOWN


TRANSIENT_STATUS_CODES = {502, 503, 504}

_STATUS_ERRORS = {
    400: BaaSValidationError,
    401: BaaSAuthenticationError,
    403: BaaSPermissionError,
    404: BaaSValidationError,
    422: BaaSValidationError,
    429: BaaSRateLimitError,
}

_KIND_ERRORS = {
    ErrorKind.UNAUTHENTICATED: BaaSAuthenticationError,
    ErrorKind.TRANSIENT: BaaSTransientError,
    ErrorKind.VALIDATION: BaaSValidationError,
    ErrorKind.PERMISSION: BaaSPermissionError,
    ErrorKind.RATE_LIMITED: BaaSRateLimitError,
    ErrorKind.UNKNOWN: BaaSAPIError,
}


def error_for_status(status_code: int, message: str, code: Any = None, response_text: Optional[str] = None) -> BaaSError:
    """Build the adapter exception matching an HTTP status code."""
    if status_code in TRANSIENT_STATUS_CODES:
        error_cls = BaaSTransientError
    else:
        error_cls = _STATUS_ERRORS.get(status_code, BaaSAPIError)
    return error_cls(message, status_code=status_code, code=code, response_text=response_text)


def error_for_code(code: Any, message: str) -> BaaSError:
    """Build the adapter exception for an error body ({error: {message, code}})."""
    if isinstance(code, int) or (isinstance(code, str) and code.isdigit()):
        return error_for_status(int(code), message, code=code)
    try:
        kind = ErrorKind(code)
    except ValueError:
        kind = ErrorKind.UNKNOWN
    return _KIND_ERRORS[kind](message, code=code)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto the interaction error taxonomy."""
    if isinstance(exc, BaaSError):
        return exc.kind
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


class BaaSAdapter:
    """
    Adapter for the interaction backend.

    Usage:
        adapter = BaaSAdapter()  # Uses BAAS_ENDPOINT env var
        result = adapter.toggle_like("vibe123", "user42")
        entity = adapter.get_entity("vibe123")
    """

    DEFAULT_ENDPOINT = "http://localhost:8000/api/v1"

    DEFAULT_TIMEOUT = 10

    # Internal limits are generous; the backend enforces the real ones
    DEFAULT_RATE_LIMITS = {
        "baas_read": RateLimitConfig(requests_per_window=600, window_seconds=60),
        "baas_write": RateLimitConfig(requests_per_window=120, window_seconds=60),
    }

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
        interceptors: Optional[Iterable[Interceptor]] = None,
        skip_rate_limit: bool = False,
    ):
        """
        Initialize the backend adapter.

        Args:
            endpoint: Base URL (or set BAAS_ENDPOINT env var)
            api_key: Project API key (or set BAAS_API_KEY env var)
            timeout: Request timeout in seconds (or set BAAS_TIMEOUT env var)
            rate_limiter: Optional shared rate limiter
            interceptors: Extra interceptors, run after the built-in ones
            skip_rate_limit: If True, skip internal rate limiting
        """
        self.endpoint = (endpoint or os.environ.get("BAAS_ENDPOINT") or self.DEFAULT_ENDPOINT).rstrip("/")
        self.api_key = api_key or os.environ.get("BAAS_API_KEY")
        self.timeout = float(timeout or os.environ.get("BAAS_TIMEOUT", self.DEFAULT_TIMEOUT))
        self._skip_rate_limit = skip_rate_limit

        self.headers = {"Content-Type": "application/json"}
        if self.api_key:
            self.headers["X-API-Key"] = self.api_key
        else:
            logger.debug("No BAAS_API_KEY provided - sending unauthenticated project requests")

        self.rate_limiter = rate_limiter or RateLimiter()
        for category, config in self.DEFAULT_RATE_LIMITS.items():
            if category not in self.rate_limiter.configs:
                self.rate_limiter.configure_limit(category, config)

        self.interceptors: List[Interceptor] = [IdempotencyInterceptor(), MonitoringInterceptor()]
        for interceptor in interceptors or []:
            self.add_interceptor(interceptor)

    @property
    def is_configured(self) -> bool:
        """Check if the adapter has an endpoint to talk to."""
        return bool(self.endpoint)

    def add_interceptor(self, interceptor: Interceptor) -> None:
        """Register an interceptor at the end of the chain."""
        self.interceptors.append(interceptor)

    def remove_interceptor(self, interceptor: Interceptor) -> bool:
        if interceptor in self.interceptors:
            self.interceptors.remove(interceptor)
            return True
        return False

    # ---------------------------------------------------------------------
    # Transport
    # ---------------------------------------------------------------------

    def _parse_error(self, response) -> Tuple[str, Any]:
        """Extract (message, code) from an error response body."""
        try:
            data = response.json()
        except ValueError:
            return f"Backend error: {response.status_code}", None

        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                return error.get("message") or f"Backend error: {response.status_code}", error.get("code")
            if isinstance(error, str):
                return error, None
            if "detail" in data:
                return str(data["detail"]), None
        return f"Backend error: {response.status_code}", None

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        category: str = "baas_read",
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Send a request through the interceptor chain.

        Raises:
            BaaSError subclass matching the failure
        """
        if not self._skip_rate_limit:
            self.rate_limiter.wait_if_needed(category)

        call = RequestCall(
            method=method,
            path=path,
            url=f"{self.endpoint}{path}",
            headers={**self.headers, **(headers or {})},
            params=params,
            json=json,
            idempotency_key=idempotency_key,
        )

        for interceptor in self.interceptors:
            interceptor.before_request(call)

        try:
            response = requests.request(
                call.method,
                call.url,
                headers=call.headers,
                params=call.params,
                json=call.json,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            error = BaaSTransientError(f"Backend request timed out: {method} {path}")
            self._notify_error(call, error)
            raise error
        except requests.exceptions.ConnectionError:
            error = BaaSTransientError(f"Failed to connect to backend: {method} {path}")
            self._notify_error(call, error)
            raise error
        except requests.exceptions.RequestException as e:
            error = BaaSAPIError(f"Request failed: {e}")
            self._notify_error(call, error)
            raise error

        for interceptor in reversed(self.interceptors):
            interceptor.after_response(call, response)

        if response.status_code >= 400:
            message, code = self._parse_error(response)
            error = error_for_status(response.status_code, message, code=code, response_text=response.text)
            if isinstance(error, BaaSRateLimitError):
                retry_after = response.headers.get("retry-after")
                error.retry_after = int(retry_after) if retry_after and str(retry_after).isdigit() else None
            logger.debug(f"{method} {path} failed with {response.status_code}: {message}")
            raise error

        try:
            data = response.json()
        except ValueError:
            raise BaaSAPIError(
                f"Invalid JSON from backend: {method} {path}",
                status_code=response.status_code,
                response_text=response.text,
            )

        # Some backends report failures in a 200 body
        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            if isinstance(error, dict):
                raise error_for_code(error.get("code"), error.get("message") or "Backend error")
            raise BaaSAPIError(str(error), status_code=response.status_code)

        return data

    def _notify_error(self, call: RequestCall, error: Exception) -> None:
        for interceptor in reversed(self.interceptors):
            try:
                interceptor.on_error(call, error)
            except Exception as e:
                logger.error(f"Interceptor {type(interceptor).__name__} failed in on_error: {e}")

    # ---------------------------------------------------------------------
    # Interactions
    # ---------------------------------------------------------------------

    def toggle_like(self, entity_id: str, user_id: str) -> ToggleLikeResult:
        """
        Toggle a like for a user and return the authoritative count.

        Raises:
            BaaSError subclass on failure
        """
        data = self._request(
            "POST",
            f"/interactions/{entity_id}/toggle-like",
            json={"userId": user_id},
            category="baas_write",
        )
        try:
            result = ToggleLikeResult(action=data.get("action"), count=data.get("count"))
        except (ValueError, TypeError, AttributeError) as e:
            raise BaaSAPIError(f"Malformed toggle-like response: {e}")

        logger.info(f"Toggled like on {entity_id} for {user_id}: {result.action} ({result.count})")
        return result

    def get_like_status(self, entity_id: str, user_id: Optional[str] = None) -> LikeStatus:
        """Get like count and whether ``user_id`` has liked the entity."""
        params = {"userId": user_id} if user_id else None
        data = self._request("GET", f"/interactions/{entity_id}/likes", params=params)
        return LikeStatus(count=max(0, int(data.get("count") or 0)), has_liked=bool(data.get("hasLiked")))

    def create_comment(
        self,
        entity_id: str,
        user_id: str,
        text: str,
        idempotency_key: Optional[str] = None,
    ) -> Comment:
        """
        Create a comment.

        Args:
            entity_id: Entity being commented on
            user_id: Author
            text: Comment text
            idempotency_key: Client-generated key; resending it must not duplicate the comment

        Returns:
            The server-confirmed Comment

        Raises:
            BaaSError subclass on failure
        """
        data = self._request(
            "POST",
            "/comments",
            json={"entityId": entity_id, "userId": user_id, "text": text},
            idempotency_key=idempotency_key,
            category="baas_write",
        )

        record = data.get("data") if isinstance(data, dict) else None
        if not isinstance(record, dict):
            raise BaaSAPIError("Malformed comment response: missing data")

        fallback = Comment(id=idempotency_key or "", author_id=user_id, entity_id=entity_id, text=text)
        comment = Comment.from_api(record, fallback=fallback)
        logger.info(f"Created comment {comment.id} on {entity_id}")
        return comment

    def list_comments(self, entity_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Comment], int]:
        """
        List comments for an entity, newest first.

        Returns:
            (comments, total)
        """
        data = self._request(
            "GET",
            "/comments",
            params={"entityId": entity_id, "limit": limit, "offset": offset},
        )
        comments = [Comment.from_api(c) for c in data.get("comments", []) if isinstance(c, dict)]
        total = max(0, int(data.get("total") or len(comments)))
        return comments, total

    def delete_comment(self, comment_id: str, user_id: str) -> int:
        """
        Delete a comment.

        Returns:
            Updated comments count
        """
        data = self._request(
            "DELETE",
            f"/comments/{comment_id}",
            params={"userId": user_id},
            category="baas_write",
        )
        return max(0, int(data.get("count") or 0))

    def get_entity(self, entity_id: str) -> Entity:
        """Fetch an entity with its normalized stats."""
        data = self._request("GET", f"/entities/{entity_id}")
        if not isinstance(data, dict):
            raise BaaSAPIError(f"Malformed entity response for {entity_id}")
        return Entity.from_api(data)

    def create_session(self, user_id: str) -> Session:
        """Open a development session for a user."""
        data = self._request(
            "POST",
            "/account/sessions",
            json={"userId": user_id},
            category="baas_write",
        )
        try:
            return Session(user_id=data["userId"], token=data["token"], expires_at=data["expiresAt"])
        except (KeyError, TypeError, ValueError) as e:
            raise BaaSAPIError(f"Malformed session response: {e}")

    def get_session(self, token: str) -> Session:
        """
        Validate a session token.

        Raises:
            BaaSAuthenticationError: If the session is invalid or expired
        """
        data = self._request(
            "GET",
            "/account/session",
            headers={"Authorization": f"Bearer {token}"},
        )
        try:
            return Session(user_id=data["userId"], token=token, expires_at=data["expiresAt"])
        except (KeyError, TypeError, ValueError) as e:
            raise BaaSAPIError(f"Malformed session response: {e}")


__all__ = [
    "BaaSAdapter",
    "BaaSError",
    "BaaSAuthenticationError",
    "BaaSTransientError",
    "BaaSValidationError",
    "BaaSPermissionError",
    "BaaSRateLimitError",
    "BaaSAPIError",
    "ErrorKind",
    "classify_error",
    "error_for_status",
    "error_for_code",
    "Comment",
    "Entity",  # Re-export for convenience
]
