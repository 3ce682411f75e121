"""
End-to-end API tests against a temporary SQLite database.

Tests the full flow: HTTP request → route → Database → structured response
"""

import pytest
from fastapi.testclient import TestClient

from main import app
from adapter.models import normalize_stats
from adapter.rate_limiter import RateLimiter
from api import MAX_COMMENT_LENGTH, set_dependencies
from database import Database, init_db


# ============================================================================
# Fixtures
# ============================================================================

class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def database(tmp_path):
    path = tmp_path / "test.sqlite3"
    init_db(path)
    return Database(path)


@pytest.fixture
def client(database):
    set_dependencies(database, RateLimiter())
    return TestClient(app)


@pytest.fixture
def vibe(database):
    return database.create_entity("vibe1", feature="vibe", stats_encoding="array")


def post_comment(client, text="nice", user_id="u1", entity_id="vibe1", key=None):
    headers = {"Idempotency-Key": key} if key else {}
    return client.post(
        "/api/v1/comments",
        json={"entityId": entity_id, "userId": user_id, "text": text},
        headers=headers,
    )


# ============================================================================
# Health & Entities
# ============================================================================

class TestHealthAndRoot:
    """Test basic endpoints."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "Vibe Interactions API"

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestEntities:
    """Test entity seeding and stats encodings."""

    def test_create_array_encoded_entity(self, client):
        response = client.post("/api/v1/entities", json={"id": "v1", "statsEncoding": "array"})

        assert response.status_code == 201
        assert response.json()["stats"] == ["0", "0", "0"]

    def test_create_object_encoded_entity(self, client):
        response = client.post("/api/v1/entities", json={"id": "m1", "feature": "mix"})

        assert response.status_code == 201
        data = response.json()
        assert data["feature"] == "mix"
        assert data["stats"] == {"total_likes": 0, "total_comments": 0, "total_views": 0}

    def test_generated_id(self, client):
        response = client.post("/api/v1/entities", json={})

        assert response.status_code == 201
        assert response.json()["id"]

    def test_duplicate_entity_conflict(self, client, vibe):
        response = client.post("/api/v1/entities", json={"id": "vibe1"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == 409

    def test_invalid_encoding_rejected(self, client):
        response = client.post("/api/v1/entities", json={"statsEncoding": "csv"})

        assert response.status_code == 400

    def test_unknown_entity(self, client):
        response = client.get("/api/v1/entities/missing")

        assert response.status_code == 404
        assert response.json() == {"error": {"message": "Entity 'missing' not found", "code": 404}}

    def test_stats_keep_their_encoding_after_mutations(self, client, vibe):
        client.post("/api/v1/interactions/vibe1/toggle-like", json={"userId": "u1"})
        post_comment(client)

        stats = client.get("/api/v1/entities/vibe1").json()["stats"]

        assert stats[:2] == ["1", "1"]
        assert normalize_stats(stats).likes_count == 1


# ============================================================================
# Likes
# ============================================================================

class TestLikes:
    """Test like toggling and status."""

    def test_toggle_like_and_unlike(self, client, vibe):
        first = client.post("/api/v1/interactions/vibe1/toggle-like", json={"userId": "u1"})
        second = client.post("/api/v1/interactions/vibe1/toggle-like", json={"userId": "u1"})

        assert first.json() == {"action": "liked", "count": 1}
        assert second.json() == {"action": "unliked", "count": 0}

    def test_likes_from_different_users(self, client, vibe):
        client.post("/api/v1/interactions/vibe1/toggle-like", json={"userId": "u1"})
        response = client.post("/api/v1/interactions/vibe1/toggle-like", json={"userId": "u2"})

        assert response.json()["count"] == 2

    def test_like_status(self, client, vibe):
        client.post("/api/v1/interactions/vibe1/toggle-like", json={"userId": "u1"})

        mine = client.get("/api/v1/interactions/vibe1/likes", params={"userId": "u1"})
        theirs = client.get("/api/v1/interactions/vibe1/likes", params={"userId": "u2"})

        assert mine.json() == {"count": 1, "hasLiked": True}
        assert theirs.json() == {"count": 1, "hasLiked": False}

    def test_toggle_unknown_entity(self, client):
        response = client.post("/api/v1/interactions/missing/toggle-like", json={"userId": "u1"})

        assert response.status_code == 404

    def test_toggle_missing_user(self, client, vibe):
        response = client.post("/api/v1/interactions/vibe1/toggle-like", json={})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == 400


# ============================================================================
# Comments
# ============================================================================

class TestComments:
    """Test comment creation, listing and deletion."""

    def test_create_comment(self, client, vibe):
        response = post_comment(client, text="  great track  ")

        assert response.status_code == 201
        data = response.json()
        assert data["count"] == 1
        assert data["data"]["text"] == "great track"
        assert data["data"]["userId"] == "u1"
        assert data["data"]["entityId"] == "vibe1"
        assert data["data"]["createdAt"]

    def test_idempotency_key_prevents_duplicates(self, client, vibe):
        first = post_comment(client, key="temp-abc")
        second = post_comment(client, key="temp-abc")

        assert first.json()["data"]["id"] == second.json()["data"]["id"]
        assert second.json()["count"] == 1
        assert client.get("/api/v1/comments", params={"entityId": "vibe1"}).json()["total"] == 1

    @pytest.mark.parametrize("text", ["", "   "])
    def test_empty_comment_rejected(self, client, vibe, text):
        response = post_comment(client, text=text)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Comment cannot be empty"

    def test_too_long_comment_rejected(self, client, vibe):
        assert post_comment(client, text="x" * MAX_COMMENT_LENGTH).status_code == 201

        response = post_comment(client, text="x" * (MAX_COMMENT_LENGTH + 1))

        assert response.status_code == 400

    def test_comment_on_unknown_entity(self, client):
        response = post_comment(client, entity_id="missing")

        assert response.status_code == 404

    def test_rate_limited_after_ten_per_minute(self, client, vibe):
        statuses = [post_comment(client, text=f"c{i}").status_code for i in range(11)]

        assert statuses == [201] * 10 + [429]

    def test_rate_limit_response(self, client, vibe):
        for i in range(10):
            post_comment(client, text=f"c{i}")

        response = post_comment(client, text="one more")

        assert response.headers["Retry-After"] == "60"
        assert response.json()["error"]["code"] == 429

    def test_idempotent_replay_not_rate_limited(self, client, vibe):
        first = post_comment(client, text="c0", key="temp-retry")
        for i in range(1, 10):
            post_comment(client, text=f"c{i}")

        replay = post_comment(client, text="c0", key="temp-retry")

        assert replay.status_code == 201
        assert replay.json()["data"]["id"] == first.json()["data"]["id"]
        assert replay.json()["count"] == 10
        assert post_comment(client, text="new").status_code == 429

    def test_idle_commenter_limits_pruned(self, database, vibe, monkeypatch):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        set_dependencies(database, limiter)
        monkeypatch.setattr("api.MAX_COMMENT_CATEGORIES", 2)
        client = TestClient(app)

        post_comment(client, user_id="u1")
        post_comment(client, user_id="u2")
        clock.now += 61
        post_comment(client, user_id="u3")

        assert "comments:u1" not in limiter.configs
        assert "comments:u2" not in limiter.configs
        assert "comments:u3" in limiter.configs

    def test_rate_limit_is_per_user(self, client, vibe):
        for i in range(10):
            post_comment(client, text=f"c{i}", user_id="u1")

        assert post_comment(client, user_id="u2").status_code == 201

    def test_list_newest_first_with_paging(self, client, vibe):
        for text in ("first", "second", "third"):
            post_comment(client, text=text)

        page = client.get("/api/v1/comments", params={"entityId": "vibe1", "limit": 2}).json()
        rest = client.get("/api/v1/comments", params={"entityId": "vibe1", "limit": 2, "offset": 2}).json()

        assert [c["text"] for c in page["comments"]] == ["third", "second"]
        assert [c["text"] for c in rest["comments"]] == ["first"]
        assert page["total"] == 3

    def test_delete_own_comment(self, client, vibe):
        comment_id = post_comment(client).json()["data"]["id"]

        response = client.delete(f"/api/v1/comments/{comment_id}", params={"userId": "u1"})

        assert response.status_code == 200
        assert response.json() == {"count": 0}

    def test_delete_other_users_comment_forbidden(self, client, vibe):
        comment_id = post_comment(client).json()["data"]["id"]

        response = client.delete(f"/api/v1/comments/{comment_id}", params={"userId": "u2"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == 403

    def test_delete_unknown_comment(self, client):
        response = client.delete("/api/v1/comments/nope", params={"userId": "u1"})

        assert response.status_code == 404


# ============================================================================
# Sessions
# ============================================================================

class TestSessions:
    """Test development sessions."""

    def test_create_and_validate_session(self, client):
        created = client.post("/api/v1/account/sessions", json={"userId": "u1"})

        assert created.status_code == 201
        token = created.json()["token"]

        response = client.get("/api/v1/account/session", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["userId"] == "u1"

    def test_missing_token(self, client):
        response = client.get("/api/v1/account/session")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == 401

    def test_unknown_token(self, client):
        response = client.get("/api/v1/account/session", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_expired_session(self, database):
        set_dependencies(database, RateLimiter(), session_ttl=-1)
        client = TestClient(app)

        token = client.post("/api/v1/account/sessions", json={"userId": "u1"}).json()["token"]
        response = client.get("/api/v1/account/session", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401


# ============================================================================
# Monitoring
# ============================================================================

class TestMonitoring:
    """Test monitoring endpoints."""

    def test_metrics(self, client):
        response = client.get("/api/v1/monitor/metrics")

        assert response.status_code == 200
        assert "interactions" in response.json()

    def test_activity_invalid_type(self, client):
        response = client.get("/api/v1/monitor/activity", params={"event_type": "bogus"})

        assert response.status_code == 400

    def test_throttled_comment_in_activity(self, client, vibe):
        for i in range(11):
            post_comment(client, text=f"c{i}", user_id="spammer")

        response = client.get("/api/v1/monitor/activity", params={"event_type": "throttled"})

        assert any(e["entity"] == "vibe1" for e in response.json()["events"])

    def test_rate_limits(self, client, vibe):
        post_comment(client)

        response = client.get("/api/v1/monitor/rate-limits")

        assert "comments:u1" in response.json()["categories"]
