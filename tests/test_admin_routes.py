"""Tests for administrative rate limit and version lifecycle endpoints."""

from fastapi.testclient import TestClient

from tests.conftest import ADMIN_HEADERS, USER_HEADERS


class TestAdminAuthorization:
    def test_anonymous_rejected(self, client: TestClient) -> None:
        resp = client.get("/api/admin/rate-limits/policies")

        assert resp.status_code == 403
        assert resp.json()["error"] == "AUTHENTICATION_REQUIRED"

    def test_non_admin_rejected(self, client: TestClient) -> None:
        resp = client.get("/api/admin/rate-limits/policies", headers=USER_HEADERS)

        assert resp.status_code == 403
        assert resp.json()["error"] == "ADMIN_REQUIRED"


class TestRateLimitAdmin:
    def test_policies_are_sanitized(self, client: TestClient) -> None:
        resp = client.get("/api/admin/rate-limits/policies", headers=ADMIN_HEADERS)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["auth"] == {"windowMs": 900_000, "max": 5}
        assert data["api"] == {"windowMs": 60_000, "max": 3}
        assert "message" not in data["auth"]

    def test_status_reflects_usage_without_mutating(self, client: TestClient, store) -> None:
        client.get("/api/version", headers=USER_HEADERS)

        for _ in range(3):
            resp = client.get("/api/admin/rate-limits/api/users/u1", headers=ADMIN_HEADERS)
            data = resp.json()["data"]
            assert data["limit"] == 3
            assert data["remaining"] == 2
            assert data["available"] is True
            assert data["windowMs"] == 60_000
            assert data["resetTime"] is not None

        assert store.get("api:user:u1") == 1

    def test_unknown_policy_rejected(self, client: TestClient) -> None:
        resp = client.get("/api/admin/rate-limits/bogus/users/u1", headers=ADMIN_HEADERS)
        assert resp.status_code == 422

    def test_clear_restores_full_quota(self, client: TestClient) -> None:
        for _ in range(3):
            client.get("/api/version", headers=USER_HEADERS)
        assert client.get("/api/version", headers=USER_HEADERS).status_code == 429

        resp = client.delete("/api/admin/rate-limits/api/users/u1", headers=ADMIN_HEADERS)

        assert resp.status_code == 200
        assert resp.json()["data"]["cleared"] is True
        assert resp.json()["data"]["clearedBy"] == "admin-1"

        after = client.get("/api/version", headers=USER_HEADERS)
        assert after.status_code == 200
        assert after.headers["X-RateLimit-Remaining"] == "2"


class TestVersionAdmin:
    def test_deprecate_version(self, client: TestClient) -> None:
        resp = client.post(
            "/api/admin/versions/v2/deprecation",
            headers=ADMIN_HEADERS,
            json={"sunsetDate": "2030-12-31", "message": "Migrate to v3"},
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["deprecated"] is True

        followup = client.get("/api/v2/anything", headers=USER_HEADERS)
        assert followup.headers["X-API-Deprecation-Warning"] == "Migrate to v3"
        assert followup.headers["X-API-Sunset-Date"] == "2030-12-31"

        info = client.get("/api/version", headers=USER_HEADERS).json()["data"]
        assert info["deprecationWarnings"]["v2"]["message"] == "Migrate to v3"

    def test_deprecate_without_body_uses_default_message(self, client: TestClient) -> None:
        resp = client.post("/api/admin/versions/v2/deprecation", headers=ADMIN_HEADERS)

        assert resp.status_code == 200
        assert resp.json()["data"]["message"].startswith("API v2 is deprecated")

    def test_deprecate_unsupported_version(self, client: TestClient) -> None:
        resp = client.post(
            "/api/admin/versions/v9/deprecation",
            headers=ADMIN_HEADERS,
            json={"sunsetDate": "2030-12-31"},
        )

        assert resp.status_code == 400
        assert resp.json()["error"] == "UNSUPPORTED_API_VERSION"
