from __future__ import annotations

from datetime import timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from unitedwerise.api import create_app
from unitedwerise.config import RateLimitSettings
from unitedwerise.db import create_post
from unitedwerise.services import build_services
from unitedwerise.utils import utc_now

ALICE = {"X-User-Id": "u-alice"}
BOB = {"X-User-Id": "u-bob"}
CAROL = {"X-User-Id": "u-carol"}
ADMIN = {"X-User-Id": "u-admin"}


@pytest.fixture()
def client(services, users):
    return TestClient(create_app(services=services))


def test_liveness_and_security_headers(client):
    r = client.get("/health/live")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"


def test_readiness_lists_components(client):
    r = client.get("/health/ready")
    assert r.status_code == 200
    assert {c["name"] for c in r.json()["components"]} == {"database", "llm", "disk_space", "memory"}


def test_prometheus_metrics(client):
    client.get("/health/live")
    r = client.get("/metrics/prometheus")
    assert r.status_code == 200
    assert "uwr_http_requests_total" in r.text


class TestPosts:
    def test_requires_user(self, client):
        assert client.post("/posts", json={"content": "hello"}).status_code == 401
        assert client.post("/posts", json={"content": "hello"}, headers={"X-User-Id": "ghost"}).status_code == 401

    def test_create_post(self, client, services):
        r = client.post(
            "/posts",
            json={"content": "Lovely morning at the farmers market downtown", "isPolitical": False, "tags": ["local"]},
            headers=ALICE,
        )
        assert r.status_code == 201
        body = r.json()
        assert body["post"]["author_id"] == "u-alice"
        assert body["post"]["tags"] == ["local"]
        assert "embedding" not in body["post"]
        assert body["reputation"]["penalties"] == []
        assert body["flags"] == []
        assert body["completedQuests"] == []

    def test_validation(self, client):
        assert client.post("/posts", json={"content": ""}, headers=ALICE).status_code == 422

    def test_suspended_user_cannot_post(self, client, services):
        services.moderation.suspend_user("u-bob", "u-admin", "spam links", "POSTING_RESTRICTED", days=1)
        r = client.post("/posts", json={"content": "let me back in"}, headers=BOB)
        assert r.status_code == 403
        assert r.json()["error"] == "Your account is suspended from posting"


class TestReputation:
    def test_own_and_public_reputation(self, client):
        me = client.get("/reputation/me", headers=ALICE).json()
        assert me["current"] == 70.0
        assert me["tier"] == "normal"

        public = client.get("/reputation/user/u-alice").json()
        assert public == {"userId": "u-alice", "tier": "normal", "visibilityMultiplier": 1.0}

    def test_unknown_user(self, client):
        r = client.get("/reputation/user/ghost")
        assert r.status_code == 404
        assert r.json()["details"] == {"userId": "ghost"}

    def test_appeal_reason_length(self, client):
        r = client.post("/reputation/appeal", json={"eventId": "e1", "reason": "short"}, headers=ALICE)
        assert r.status_code == 422

    def test_report_own_post(self, client, services):
        post = create_post(services.db_path, "u-alice", "my own words")
        r = client.post(
            "/reputation/report",
            json={"targetUserId": "u-alice", "postId": post["id"], "reason": "spam"},
            headers=ALICE,
        )
        assert r.status_code == 400

    def test_award(self, client):
        r = client.post("/reputation/award", json={"userId": "u-alice", "reason": "quality_post"}, headers=ADMIN)
        assert r.json() == {"userId": "u-alice", "newScore": 70.5, "awardedBy": "u-admin"}

        r = client.post("/reputation/award", json={"userId": "u-alice", "reason": "qualty_post"}, headers=ADMIN)
        assert r.status_code == 400
        assert r.json()["details"] == {"reason": "qualty_post"}

    def test_admin_only_endpoints(self, client):
        assert client.get("/reputation/stats").status_code == 401
        assert client.get("/reputation/stats", headers=BOB).status_code == 403
        assert client.get("/reputation/stats", headers=ADMIN).status_code == 200
        r = client.get("/reputation/stats", params={"timeframe": "year"}, headers=ADMIN)
        assert r.status_code == 422


class TestModeration:
    def test_report_flow(self, client, services):
        r = client.post(
            "/moderation/reports",
            json={"targetType": "USER", "targetId": "u-bob", "reason": "HARASSMENT"},
            headers=ALICE,
        )
        assert r.status_code == 201
        report_id = r.json()["reportId"]
        assert r.json()["priority"] == "HIGH"

        assert client.get("/moderation/reports", headers=BOB).status_code == 403
        queue = client.get("/moderation/reports", headers=CAROL).json()
        assert [x["id"] for x in queue["reports"]] == [report_id]
        assert client.get("/moderation/reports/my", headers=ALICE).json()["pagination"]["count"] == 1

        resolved = client.post(
            f"/moderation/reports/{report_id}/resolve", json={"action": "WARNING_ISSUED"}, headers=CAROL
        )
        assert resolved.json() == {"reportId": report_id, "action": "WARNING_ISSUED"}

        audit = services.security.get_security_events(event_type="ADMIN_ACTION")
        assert audit[0]["details"]["action"] == "report_resolved"
        assert audit[0]["user_id"] == "u-carol"

    def test_domain_errors(self, client):
        r = client.post(
            "/moderation/reports",
            json={"targetType": "USER", "targetId": "u-bob", "reason": "RUDE"},
            headers=ALICE,
        )
        assert r.status_code == 400
        assert "error" in r.json()

    def test_image_screening_without_service(self, client):
        r = client.post("/moderation/images", content=b"\x89PNG", headers=ALICE)
        assert r.status_code == 200
        assert r.json()["category"] == "BLOCK"
        assert r.json()["model"] == "not-configured"
        assert client.post("/moderation/images", content=b"", headers=ALICE).status_code == 400


class TestAdmin:
    def test_dashboard(self, client):
        assert client.get("/admin/dashboard", headers=BOB).status_code == 403
        r = client.get("/admin/dashboard", headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["overview"]["totalUsers"] == 4
        assert r.json()["overview"]["moderatorCount"] == 2

    def test_api_key_is_required_when_configured(self, monkeypatch, services, users):
        monkeypatch.setenv("UWR_ADMIN_API_KEY", "s3cret")
        client = TestClient(create_app(services=services))
        assert client.get("/admin/dashboard", headers=ADMIN).status_code == 401
        r = client.get("/admin/dashboard", headers={"X-API-Key": "s3cret"})
        assert r.status_code == 200

    def test_suspend_and_unsuspend(self, client, services):
        r = client.post(
            "/admin/users/u-bob/suspend",
            json={"reason": "cooling off", "type": "TEMPORARY", "durationDays": 2},
            headers=ADMIN,
        )
        assert r.status_code == 200
        users = client.get("/admin/users", params={"status": "suspended"}, headers=ADMIN).json()
        assert [u["id"] for u in users["users"]] == ["u-bob"]

        r = client.post("/admin/users/u-bob/unsuspend", headers=ADMIN)
        assert r.json() == {"userId": "u-bob", "liftedSuspensions": 1}

        assert client.post("/admin/users/u-admin/suspend", json={"reason": "x"}, headers=ADMIN).status_code == 403

    def test_blocked_ip(self, client):
        r = client.post(
            "/admin/security/blocked-ips",
            json={"ipAddress": "203.0.113.9", "reason": "credential stuffing"},
            headers=ADMIN,
        )
        assert r.status_code == 201

        blocked = {"X-Forwarded-For": "203.0.113.9", **ALICE}
        r = client.get("/feed", headers=blocked)
        assert r.status_code == 403
        assert r.json()["error"] == "Access denied"
        assert client.get("/health/live", headers=blocked).status_code == 200

        client.post("/admin/security/blocked-ips/unblock", json={"ipAddress": "203.0.113.9"}, headers=ADMIN)
        assert client.get("/feed", headers=blocked).status_code == 200

    def test_blocked_ip_expiry(self, client, services):
        past = (utc_now() - timedelta(hours=1)).astimezone(timezone(timedelta(hours=5)))
        r = client.post(
            "/admin/security/blocked-ips",
            json={"ipAddress": "203.0.113.10", "reason": "credential stuffing", "expiresAt": past.isoformat()},
            headers=ADMIN,
        )
        assert r.status_code == 201
        assert r.json()["expires_at"].endswith("Z")
        assert not services.security.is_ip_blocked("203.0.113.10")

        r = client.post(
            "/admin/security/blocked-ips",
            json={"ipAddress": "203.0.113.11", "reason": "credential stuffing", "expiresAt": "garbage"},
            headers=ADMIN,
        )
        assert r.status_code == 422
        assert not services.security.is_ip_blocked("203.0.113.11")

    def test_invalid_ip(self, client):
        r = client.post(
            "/admin/security/blocked-ips", json={"ipAddress": "not-an-ip", "reason": "testing"}, headers=ADMIN
        )
        assert r.status_code == 400

    def test_quest_admin(self, client):
        weekly = client.post("/admin/quests/weekly", headers=ADMIN)
        assert weekly.status_code == 201
        assert weekly.json()["timeframe"] == "WEEKLY"
        quests = client.get("/admin/quests", headers=ADMIN).json()["quests"]
        assert [q["title"] for q in quests] == ["Weekly Civic Champion"]

        r = client.put(f"/admin/quests/{weekly.json()['id']}", json={"isActive": False}, headers=ADMIN)
        assert r.json()["is_active"] == 0


class TestPublicEndpoints:
    def test_trending_topics_empty(self, client):
        r = client.get("/trending/topics", params={"scope": "state", "state": "CA"})
        assert r.status_code == 200
        assert r.json() == {"topics": [], "count": 0, "scope": "state"}
        assert client.get("/trending/topics", params={"scope": "galactic"}).status_code == 422

    def test_unknown_topic(self, client):
        assert client.get("/trending/topics/topic_missing/posts").status_code == 404

    def test_feed_fallback(self, client):
        r = client.get("/feed", headers=ALICE)
        assert r.status_code == 200
        assert r.json()["posts"] == []
        assert r.json()["algorithm"] == "fallback-empty"

    def test_daily_quests(self, client):
        quests = client.get("/quests/daily", headers=ALICE).json()["quests"]
        assert [q["title"] for q in quests][0] == "Daily Check-In"
        r = client.post("/quests/progress/update", json={"actionType": "POST_VIEWED"}, headers=ALICE)
        assert r.json() == {"completedQuests": [], "count": 0}
        progress = client.get("/quests/progress", headers=ALICE).json()
        assert progress["stats"]["totalCompleted"] == 0

    def test_district_lookup_without_provider(self, client):
        r = client.post("/districts/lookup", json={"state": "va", "zipCode": "22201"})
        assert r.status_code == 200
        assert r.json()["districts"] == []
        assert r.json()["location"]["state"] == "VA"
        assert client.post("/districts/missing-offices", json={"districtIds": []}).status_code == 422

    def test_news_without_key(self, client):
        assert client.get("/news/trending").json() == {"articles": [], "count": 0}
        r = client.get("/news/official/Jane Doe")
        assert r.json()["articles"] == []


def test_rate_limit(settings, db_path, users):
    settings.app.rate_limit = RateLimitSettings(enabled=True, anonymous_max_requests=2)
    services = build_services(settings)
    client = TestClient(create_app(services=services))
    statuses = [client.get("/health/live").status_code for _ in range(3)]
    assert statuses == [200, 200, 429]

    r = client.get("/health/live")
    assert r.headers["X-RateLimit-Remaining"] == "0"
    assert int(r.headers["Retry-After"]) >= 1

    events = services.security.get_security_events(event_type="RAPID_REQUESTS")
    assert len(events) == 2
    assert events[0]["details"] == {"rateLimitHit": True, "path": "/health/live"}

    # identified users get their own bucket
    ok = client.get("/health/live", headers=ALICE)
    assert ok.status_code == 200
    assert ok.headers["X-RateLimit-Limit"] == "600"
