"""HTTP tests for /v1/auth/* and /v1/app-updates/macos."""
import pytest

from conftest import PROXY_KEY, VALID_ACCESS_TOKEN, VALID_PASSWORD, VALID_REFRESH_TOKEN


class TestSignUp:
    def test_sign_up_with_session(self, client):
        response = client.post(
            "/v1/auth/signup",
            json={"email": " alice@example.com ", "password": VALID_PASSWORD, "profile_name": "Alice A."},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["account"] == {
            "user_id": "uid-alice",
            "email": "alice@example.com",
            "profile_name": "Alice A.",
            "tier": "free",
        }
        assert body["session"]["access_token"] == VALID_ACCESS_TOKEN
        assert body["session"]["expires_at"] == 1_900_000_000
        assert body["requires_email_confirmation"] is False

    def test_sign_up_requiring_email_confirmation(self, client):
        response = client.post(
            "/v1/auth/signup",
            json={"email": "confirm.bob@example.com", "password": VALID_PASSWORD},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["session"] is None
        assert body["requires_email_confirmation"] is True
        assert body["account"]["profile_name"] == "Confirm.bob"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "password": VALID_PASSWORD},
            {"email": "alice@example.com", "password": "short"},
            {"email": "alice@example.com", "password": VALID_PASSWORD, "profile_name": "   "},
            {"password": VALID_PASSWORD},
        ],
    )
    def test_invalid_payload(self, client, payload):
        response = client.post("/v1/auth/signup", json=payload)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"] == "Invalid auth signup payload"
        assert error["details"]["issues"]

    def test_malformed_json_body(self, client):
        response = client.post(
            "/v1/auth/signup", content=b"{not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid auth signup payload"


class TestLogin:
    def test_login_returns_normalized_session(self, client):
        response = client.post(
            "/v1/auth/login", json={"email": "alice+pro@example.com", "password": VALID_PASSWORD}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["account"]["tier"] == "pro"
        assert body["account"]["profile_name"] == "Alice+pro"
        assert body["session"]["refresh_token"] == VALID_REFRESH_TOKEN
        assert body["request_id"] == response.headers["x-request-id"]

    def test_wrong_password(self, client):
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "wrong-password"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid email or password"


class TestRefreshAndLogout:
    def test_refresh(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": VALID_REFRESH_TOKEN})

        assert response.status_code == 200
        assert response.json()["session"]["access_token"] == VALID_ACCESS_TOKEN

    def test_refresh_with_stale_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "stale"})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Refresh token is invalid or expired"

    def test_logout_with_body_token(self, client):
        response = client.post("/v1/auth/logout", json={"access_token": VALID_ACCESS_TOKEN})

        assert response.status_code == 200
        assert response.json() == {"request_id": response.headers["x-request-id"], "success": True}

    def test_logout_with_bearer_header(self, client):
        response = client.post("/v1/auth/logout", headers={"Authorization": f"Bearer {VALID_ACCESS_TOKEN}"})

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_logout_without_token(self, client):
        response = client.post("/v1/auth/logout", json={})

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing access token for logout"

    def test_logout_with_rejected_token(self, client):
        response = client.post("/v1/auth/logout", json={"access_token": "revoked"})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Access token is invalid or expired"


class TestAuthRouteGuards:
    def test_proxy_key_is_required_when_configured(self, build_client):
        client = build_client(proxy_shared_api_key=PROXY_KEY)
        body = {"email": "alice@example.com", "password": VALID_PASSWORD}

        assert client.post("/v1/auth/login", json=body).status_code == 401
        assert client.post("/v1/auth/login", json=body, headers={"x-api-key": PROXY_KEY}).status_code == 200

    def test_auth_routes_are_rate_limited_per_test_key(self, build_client):
        client = build_client(auth_route_rate_limit_max_requests=1)
        body = {"email": "alice@example.com", "password": VALID_PASSWORD}

        first = client.post("/v1/auth/login", json=body, headers={"x-test-rate-limit-key": "a"})
        second = client.post("/v1/auth/login", json=body, headers={"x-test-rate-limit-key": "a"})
        other_key = client.post("/v1/auth/login", json=body, headers={"x-test-rate-limit-key": "b"})

        assert first.status_code == 200
        assert first.headers["x-ratelimit-remaining"] == "0"
        assert second.status_code == 429
        assert second.json()["error"]["message"] == "Rate limit exceeded for auth requests"
        assert other_key.status_code == 200


class TestAppUpdates:
    def test_update_available_and_required(self, client):
        response = client.get("/v1/app-updates/macos", params={"current_version": "1.1.9"})

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        body = response.json()
        assert body["platform"] == "macos"
        assert body["latest_version"] == "1.4.0"
        assert body["update_available"] is True
        assert body["update_required"] is True

    def test_current_version_up_to_date(self, client):
        body = client.get("/v1/app-updates/macos", params={"current_version": "1.4"}).json()

        assert body["update_available"] is False
        assert body["update_required"] is False

    def test_without_current_version(self, client):
        body = client.get("/v1/app-updates/macos").json()

        assert body["update_available"] is None
        assert body["update_required"] is None
        assert body["download_url"].endswith(".dmg")

    def test_malformed_version(self, client):
        response = client.get("/v1/app-updates/macos", params={"current_version": "1.2.beta"})

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid update check query parameters"
