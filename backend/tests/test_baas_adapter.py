"""Unit tests for the BaaSAdapter module."""

import pytest
import requests
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from adapter.baas import (
    BaaSAdapter,
    BaaSAPIError,
    BaaSAuthenticationError,
    BaaSPermissionError,
    BaaSRateLimitError,
    BaaSTransientError,
    BaaSValidationError,
    ErrorKind,
    classify_error,
    error_for_code,
    error_for_status,
)
from adapter.baas.interceptors import (
    AuthHeaderInterceptor,
    AuthRequiredInterceptor,
    IdempotencyInterceptor,
    Interceptor,
    MonitoringInterceptor,
)
from adapter.models import CommentStatus
from adapter.rate_limiter import RateLimiter
from services.events import AUTH_REQUIRED, EventBus


def create_mock_response(status_code=200, json_data=None, headers=None, text=""):
    """Helper to create mock response with proper headers."""
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.json.return_value = json_data if json_data is not None else {}
    mock_response.text = text
    mock_response.headers = headers or {}
    return mock_response


@pytest.fixture
def adapter():
    return BaaSAdapter(endpoint="http://test.local/api/v1", api_key="key", skip_rate_limit=True)


class TestBaaSAdapterInit:
    """Test BaaSAdapter initialization."""

    def test_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            adapter = BaaSAdapter()

            assert adapter.endpoint == "http://localhost:8000/api/v1"
            assert adapter.api_key is None
            assert adapter.timeout == 10
            assert "X-API-Key" not in adapter.headers

    def test_env_configuration(self):
        env = {"BAAS_ENDPOINT": "http://env.local/api/", "BAAS_API_KEY": "env_key", "BAAS_TIMEOUT": "3"}
        with patch.dict("os.environ", env, clear=True):
            adapter = BaaSAdapter()

            assert adapter.endpoint == "http://env.local/api"
            assert adapter.headers["X-API-Key"] == "env_key"
            assert adapter.timeout == 3.0

    def test_default_rate_limits_configured(self):
        limiter = RateLimiter()
        BaaSAdapter(endpoint="http://x", rate_limiter=limiter)

        assert limiter.configs["baas_read"].requests_per_window == 600
        assert limiter.configs["baas_write"].requests_per_window == 120

    def test_builtin_interceptors(self, adapter):
        kinds = [type(i) for i in adapter.interceptors]

        assert kinds == [IdempotencyInterceptor, MonitoringInterceptor]


class TestErrorTaxonomy:
    """Test mapping of failures onto error kinds."""

    @pytest.mark.parametrize("status,kind", [
        (400, ErrorKind.VALIDATION),
        (401, ErrorKind.UNAUTHENTICATED),
        (403, ErrorKind.PERMISSION),
        (404, ErrorKind.VALIDATION),
        (422, ErrorKind.VALIDATION),
        (429, ErrorKind.RATE_LIMITED),
        (500, ErrorKind.UNKNOWN),
        (502, ErrorKind.TRANSIENT),
        (503, ErrorKind.TRANSIENT),
        (504, ErrorKind.TRANSIENT),
    ])
    def test_error_for_status(self, status, kind):
        error = error_for_status(status, "boom")

        assert error.kind == kind
        assert error.status_code == status
        assert error.retriable is (kind == ErrorKind.TRANSIENT)

    def test_error_for_code(self):
        assert isinstance(error_for_code(403, "no"), BaaSPermissionError)
        assert isinstance(error_for_code("401", "no"), BaaSAuthenticationError)
        assert isinstance(error_for_code("rate_limited", "slow"), BaaSRateLimitError)
        assert isinstance(error_for_code("mystery", "?"), BaaSAPIError)

    def test_classify_error(self):
        assert classify_error(BaaSTransientError("x")) == ErrorKind.TRANSIENT
        assert classify_error(requests.exceptions.Timeout()) == ErrorKind.TRANSIENT
        assert classify_error(ConnectionError()) == ErrorKind.TRANSIENT
        assert classify_error(ValueError("x")) == ErrorKind.UNKNOWN


class TestRequests:
    """Test transport behaviour."""

    @patch("adapter.baas.requests.request")
    def test_timeout_is_transient(self, mock_request, adapter):
        mock_request.side_effect = requests.exceptions.Timeout()

        with pytest.raises(BaaSTransientError):
            adapter.get_entity("v1")

    @patch("adapter.baas.requests.request")
    def test_connection_error_is_transient(self, mock_request, adapter):
        mock_request.side_effect = requests.exceptions.ConnectionError()

        with pytest.raises(BaaSTransientError):
            adapter.toggle_like("v1", "u1")

    @patch("adapter.baas.requests.request")
    def test_error_body_message_and_code(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(
            403, {"error": {"message": "You can only delete your own comments", "code": 403}}
        )

        with pytest.raises(BaaSPermissionError) as exc_info:
            adapter.delete_comment("c1", "u2")

        assert "own comments" in str(exc_info.value)
        assert exc_info.value.code == 403

    @patch("adapter.baas.requests.request")
    def test_rate_limit_retry_after(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(
            429, {"error": {"message": "slow down", "code": 429}}, headers={"retry-after": "30"}
        )

        with pytest.raises(BaaSRateLimitError) as exc_info:
            adapter.create_comment("v1", "u1", "hi")

        assert exc_info.value.retry_after == 30

    @patch("adapter.baas.requests.request")
    def test_error_in_200_body_raises(self, mock_request, adapter):
        """Some backends answer 200 with an error body."""
        mock_request.return_value = create_mock_response(
            200, {"error": {"message": "Invalid comment", "code": "validation"}}
        )

        with pytest.raises(BaaSValidationError):
            adapter.create_comment("v1", "u1", "hi")

    @patch("adapter.baas.requests.request")
    def test_invalid_json(self, mock_request, adapter):
        response = create_mock_response(200)
        response.json.side_effect = ValueError("no json")
        mock_request.return_value = response

        with pytest.raises(BaaSAPIError):
            adapter.get_entity("v1")

    @patch("adapter.baas.requests.request")
    def test_rate_limiter_used_unless_skipped(self, mock_request):
        mock_request.return_value = create_mock_response(200, {"id": "v1", "stats": []})
        limiter = Mock(spec=RateLimiter)
        limiter.configs = {}
        adapter = BaaSAdapter(endpoint="http://x", rate_limiter=limiter)

        adapter.get_entity("v1")

        limiter.wait_if_needed.assert_called_once_with("baas_read")


class TestOperations:
    """Test the interaction operations."""

    @patch("adapter.baas.requests.request")
    def test_toggle_like(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(200, {"action": "liked", "count": 4})

        result = adapter.toggle_like("v1", "u1")

        assert result.liked is True
        assert result.count == 4
        args, kwargs = mock_request.call_args
        assert args == ("POST", "http://test.local/api/v1/interactions/v1/toggle-like")
        assert kwargs["json"] == {"userId": "u1"}
        assert kwargs["timeout"] == adapter.timeout

    @patch("adapter.baas.requests.request")
    def test_toggle_like_malformed(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(200, {"action": "shrug"})

        with pytest.raises(BaaSAPIError):
            adapter.toggle_like("v1", "u1")

    @patch("adapter.baas.requests.request")
    def test_get_like_status(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(200, {"count": 9, "hasLiked": True})

        status = adapter.get_like_status("v1", "u1")

        assert status.count == 9
        assert status.has_liked is True
        assert mock_request.call_args.kwargs["params"] == {"userId": "u1"}

    @patch("adapter.baas.requests.request")
    def test_create_comment_sends_idempotency_key(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(201, {
            "data": {
                "id": "c1",
                "entityId": "v1",
                "userId": "u1",
                "text": "great",
                "createdAt": "2024-06-15T12:00:00+00:00",
            },
            "count": 1,
        })

        comment = adapter.create_comment("v1", "u1", "great", idempotency_key="temp-123")

        assert comment.id == "c1"
        assert comment.status == CommentStatus.CONFIRMED
        assert comment.created_at == datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
        kwargs = mock_request.call_args.kwargs
        assert kwargs["headers"]["Idempotency-Key"] == "temp-123"
        assert kwargs["json"] == {"entityId": "v1", "userId": "u1", "text": "great"}

    @patch("adapter.baas.requests.request")
    def test_create_comment_missing_data(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(200, {"count": 1})

        with pytest.raises(BaaSAPIError):
            adapter.create_comment("v1", "u1", "great")

    @patch("adapter.baas.requests.request")
    def test_list_comments(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(200, {
            "comments": [
                {"id": "c2", "entityId": "v1", "userId": "u1", "text": "b"},
                {"id": "c1", "entityId": "v1", "userId": "u2", "text": "a"},
            ],
            "total": 5,
        })

        comments, total = adapter.list_comments("v1", limit=2)

        assert [c.id for c in comments] == ["c2", "c1"]
        assert total == 5
        assert mock_request.call_args.kwargs["params"] == {"entityId": "v1", "limit": 2, "offset": 0}

    @patch("adapter.baas.requests.request")
    def test_delete_comment(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(200, {"count": 2})

        assert adapter.delete_comment("c1", "u1") == 2
        assert mock_request.call_args.args[0] == "DELETE"

    @patch("adapter.baas.requests.request")
    def test_get_entity_normalizes_stats(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(200, {"$id": "v1", "stats": ["5", "2"]})

        entity = adapter.get_entity("v1")

        assert entity.id == "v1"
        assert entity.stats.likes_count == 5
        assert entity.stats.comments_count == 2

    @patch("adapter.baas.requests.request")
    def test_get_session(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(
            200, {"userId": "u1", "expiresAt": "2030-01-01T00:00:00+00:00"}
        )

        session = adapter.get_session("tok")

        assert session.user_id == "u1"
        assert session.token == "tok"
        assert mock_request.call_args.kwargs["headers"]["Authorization"] == "Bearer tok"

    @patch("adapter.baas.requests.request")
    def test_create_session(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(
            201, {"token": "tok", "userId": "u1", "expiresAt": "2030-01-01T00:00:00+00:00"}
        )

        session = adapter.create_session("u1")

        assert session.token == "tok"
        assert session.user_id == "u1"
        assert mock_request.call_args.args[0] == "POST"
        assert mock_request.call_args.kwargs["json"] == {"userId": "u1"}

    @patch("adapter.baas.requests.request")
    def test_get_session_unauthorized(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(401, {"error": {"message": "expired", "code": 401}})

        with pytest.raises(BaaSAuthenticationError):
            adapter.get_session("tok")


class TestInterceptors:
    """Test the interceptor chain."""

    @patch("adapter.baas.requests.request")
    def test_hook_order(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(200, {"id": "v1"})
        calls = []

        class Recorder(Interceptor):
            def __init__(self, name):
                self.name = name

            def before_request(self, call):
                calls.append(f"before:{self.name}")

            def after_response(self, call, response):
                calls.append(f"after:{self.name}")

        adapter.interceptors = [Recorder("a"), Recorder("b")]
        adapter.get_entity("v1")

        assert calls == ["before:a", "before:b", "after:b", "after:a"]

    @patch("adapter.baas.requests.request")
    def test_on_error_called_for_transport_failure(self, mock_request, adapter):
        mock_request.side_effect = requests.exceptions.Timeout()
        interceptor = Mock(spec=Interceptor)
        adapter.interceptors = [interceptor]

        with pytest.raises(BaaSTransientError):
            adapter.get_entity("v1")

        interceptor.on_error.assert_called_once()

    @patch("adapter.baas.requests.request")
    def test_auth_header_interceptor(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(200, {"id": "v1"})
        adapter.add_interceptor(AuthHeaderInterceptor(lambda: "session-token"))

        adapter.get_entity("v1")

        assert mock_request.call_args.kwargs["headers"]["Authorization"] == "Bearer session-token"

    @patch("adapter.baas.requests.request")
    def test_auth_required_interceptor_publishes_on_401(self, mock_request, adapter):
        mock_request.return_value = create_mock_response(401, {"error": {"message": "no", "code": 401}})
        bus = EventBus()
        handler = Mock()
        bus.subscribe(AUTH_REQUIRED, handler)
        adapter.add_interceptor(AuthRequiredInterceptor(bus))

        with pytest.raises(BaaSAuthenticationError):
            adapter.toggle_like("v1", "u1")

        handler.assert_called_once_with(path="/interactions/v1/toggle-like", method="POST")

    def test_remove_interceptor(self, adapter):
        interceptor = Interceptor()
        adapter.add_interceptor(interceptor)

        assert adapter.remove_interceptor(interceptor) is True
        assert adapter.remove_interceptor(interceptor) is False

    @patch("adapter.baas.requests.request")
    def test_monitoring_interceptor_records_calls(self, mock_request, adapter):
        from monitoring import monitor

        mock_request.return_value = create_mock_response(503, {"error": {"message": "down", "code": 503}})
        before = monitor.metrics.get_metrics()["baas"]

        with pytest.raises(BaaSTransientError):
            adapter.get_entity("v1")

        after = monitor.metrics.get_metrics()["baas"]
        assert after["calls"] == before["calls"] + 1
        assert after["errors"] == before["errors"] + 1
