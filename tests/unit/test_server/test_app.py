"""Tests for the matrix control REST API."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_PASSWORD, VIEWER_PASSWORD
from matrixgate.auth.access import AccessControl
from matrixgate.auth.attempts import AttemptTracker
from matrixgate.auth.ratelimit import RequestRateLimiter
from matrixgate.auth.credentials import CredentialStore
from matrixgate.auth.sessions import SessionStore
from matrixgate.config.settings import SecurityConfig, Settings
from matrixgate.errors import LinkError, NotConnectedError, RetriesExhaustedError
from matrixgate.matrix.cache import StatusCache
from matrixgate.matrix.link import MatrixLink
from matrixgate.server import SESSION_COOKIE, create_app


@pytest.fixture
def mock_link() -> AsyncMock:
    """A mock MatrixLink with all async methods stubbed."""
    link = AsyncMock(spec=MatrixLink)
    link.host = "192.168.2.142"
    link.port = 23
    link.is_connected = True
    link.send.return_value = "OK\r\n"
    link.ensure_connected.return_value = True
    return link


def build_client(access: AccessControl, link: AsyncMock) -> TestClient:
    app = create_app(
        settings=Settings(),
        access=access,
        link=link,
        cache=StatusCache(ttl=5.0),
        connect_on_startup=False,
    )
    return TestClient(app)


@pytest.fixture
def client(access: AccessControl, mock_link: AsyncMock) -> TestClient:
    """A test client with a mock link and real access control."""
    return build_client(access, mock_link)


def login(client: TestClient, username: str, password: str) -> dict[str, str]:
    resp = client.post("/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['session']}"}


@pytest.fixture
def admin_headers(client: TestClient) -> dict[str, str]:
    return login(client, "admin", ADMIN_PASSWORD)


@pytest.fixture
def viewer_headers(client: TestClient) -> dict[str, str]:
    return login(client, "viewer", VIEWER_PASSWORD)


# ===================================================================
# Authentication
# ===================================================================

class TestHealthEndpoint:
    def test_health_needs_no_session(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "connected": True}


class TestLoginEndpoint:
    def test_login_success(self, client: TestClient) -> None:
        resp = client.post("/login", json={"username": "admin", "password": ADMIN_PASSWORD})
        assert resp.status_code == 200
        data = resp.json()
        assert data["session"]
        assert data["username"] == "admin"
        assert data["role"] == "admin"
        assert data["permissions"] == ["config", "query", "switch"]
        assert resp.cookies.get(SESSION_COOKIE) == data["session"]

    def test_wrong_password_and_unknown_user_look_alike(self, client: TestClient) -> None:
        wrong = client.post("/login", json={"username": "admin", "password": "nope"})
        unknown = client.post("/login", json={"username": "ghost", "password": "nope"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    def test_bad_format(self, client: TestClient) -> None:
        resp = client.post("/login", json={"username": "admin!", "password": "x"})
        assert resp.status_code == 400

    def test_missing_fields(self, client: TestClient) -> None:
        resp = client.post("/login", json={})
        assert resp.status_code == 400

    def test_wrong_types(self, client: TestClient) -> None:
        resp = client.post("/login", json={"username": 123, "password": "x"})
        assert resp.status_code == 400
        assert resp.json() == {"detail": "Invalid credentials format"}

    def test_malformed_body(self, client: TestClient) -> None:
        resp = client.post(
            "/login", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400

    def test_lockout(self, client: TestClient) -> None:
        for _ in range(3):
            resp = client.post("/login", json={"username": "admin", "password": "nope"})
            assert resp.status_code == 401
        resp = client.post("/login", json={"username": "admin", "password": ADMIN_PASSWORD})
        assert resp.status_code == 429

    def test_ip_not_allowed(self, credentials: CredentialStore, mock_link: AsyncMock) -> None:
        acl = AccessControl(
            credentials=credentials,
            attempts=AttemptTracker(),
            sessions=SessionStore(),
            allowed_ips=["10.0.0.0/8"],
        )
        resp = build_client(acl, mock_link).post(
            "/login", json={"username": "admin", "password": ADMIN_PASSWORD}
        )
        assert resp.status_code == 403


class TestLogoutEndpoint:
    def test_logout_ends_session(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        assert client.get("/status", headers=admin_headers).status_code == 200
        resp = client.post("/logout", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        assert client.get("/status", headers=admin_headers).status_code == 401

    def test_logout_without_session(self, client: TestClient) -> None:
        assert client.post("/logout").status_code == 200


# ===================================================================
# Matrix control
# ===================================================================

class TestStatusEndpoint:
    def test_requires_session(self, client: TestClient) -> None:
        assert client.get("/status").status_code == 401

    def test_bogus_token(self, client: TestClient) -> None:
        resp = client.get("/status", headers={"Authorization": "Bearer bogus"})
        assert resp.status_code == 401

    def test_status(self, client: TestClient, viewer_headers: dict[str, str]) -> None:
        resp = client.get("/status", headers=viewer_headers)
        assert resp.status_code == 200
        assert resp.json() == {
            "connected": True,
            "device_address": "192.168.2.142",
            "device_port": 23,
            "user": "viewer",
        }

    def test_cookie_session(self, client: TestClient) -> None:
        client.post("/login", json={"username": "viewer", "password": VIEWER_PASSWORD})
        resp = client.get("/status")
        assert resp.status_code == 200
        assert resp.json()["user"] == "viewer"


class TestConnectEndpoint:
    def test_connect(
        self, client: TestClient, mock_link: AsyncMock, admin_headers: dict[str, str]
    ) -> None:
        resp = client.post("/connect", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "connected": True}
        mock_link.ensure_connected.assert_awaited_once()

    def test_connect_forbidden(self, client: TestClient, viewer_headers: dict[str, str]) -> None:
        assert client.post("/connect", headers=viewer_headers).status_code == 403

    def test_connect_unauthenticated(self, client: TestClient) -> None:
        assert client.post("/connect").status_code == 401


class TestSwitchEndpoint:
    def test_switch_success(
        self, client: TestClient, mock_link: AsyncMock, admin_headers: dict[str, str]
    ) -> None:
        resp = client.post("/switch", json={"input": 0, "output": 5}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "input": 0, "output": 5, "ack": "OK"}
        mock_link.send.assert_awaited_once_with("SET SW in0 out5\r\n")

    def test_switch_out_of_range(
        self, client: TestClient, mock_link: AsyncMock, admin_headers: dict[str, str]
    ) -> None:
        resp = client.post("/switch", json={"input": 9, "output": 1}, headers=admin_headers)
        assert resp.status_code == 400
        resp = client.post("/switch", json={"input": 1, "output": 0}, headers=admin_headers)
        assert resp.status_code == 400
        mock_link.send.assert_not_awaited()

    def test_switch_missing_field(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        resp = client.post("/switch", json={"input": 1}, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json() == {"detail": "Invalid input or output value"}

    def test_switch_wrong_type(
        self, client: TestClient, mock_link: AsyncMock, admin_headers: dict[str, str]
    ) -> None:
        resp = client.post("/switch", json={"input": "abc", "output": 1}, headers=admin_headers)
        assert resp.status_code == 400
        mock_link.send.assert_not_awaited()

    def test_switch_forbidden(
        self, client: TestClient, mock_link: AsyncMock, viewer_headers: dict[str, str]
    ) -> None:
        resp = client.post("/switch", json={"input": 1, "output": 1}, headers=viewer_headers)
        assert resp.status_code == 403
        mock_link.send.assert_not_awaited()

    def test_switch_link_failure(
        self, client: TestClient, mock_link: AsyncMock, admin_headers: dict[str, str]
    ) -> None:
        mock_link.send.side_effect = RetriesExhaustedError("Command failed after maximum retries")
        resp = client.post("/switch", json={"input": 1, "output": 1}, headers=admin_headers)
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Command failed after maximum retries"


class TestQueryStatusEndpoint:
    def test_query(
        self, client: TestClient, mock_link: AsyncMock, viewer_headers: dict[str, str]
    ) -> None:
        mock_link.send.return_value = "MP in2 out1\r\nMP in0 out2\r\nnoise\r\n"
        resp = client.get("/query-status", headers=viewer_headers)
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "routing": {"1": 2, "2": 0}}

    def test_query_cached(
        self, client: TestClient, mock_link: AsyncMock, viewer_headers: dict[str, str]
    ) -> None:
        mock_link.send.return_value = "MP in2 out1\r\n"
        client.get("/query-status", headers=viewer_headers)
        client.get("/query-status", headers=viewer_headers)
        assert mock_link.send.await_count == 1

    def test_query_not_connected(
        self, client: TestClient, mock_link: AsyncMock, viewer_headers: dict[str, str]
    ) -> None:
        mock_link.send.side_effect = NotConnectedError("Not connected to video matrix")
        resp = client.get("/query-status", headers=viewer_headers)
        assert resp.status_code == 500

    def test_query_empty(
        self, client: TestClient, mock_link: AsyncMock, viewer_headers: dict[str, str]
    ) -> None:
        mock_link.send.return_value = "\r\n"
        resp = client.get("/query-status", headers=viewer_headers)
        assert resp.status_code == 500
        assert resp.json()["detail"] == "No mapping data received"


class TestDisconnectEndpoint:
    def test_disconnect(
        self, client: TestClient, mock_link: AsyncMock, viewer_headers: dict[str, str]
    ) -> None:
        resp = client.post("/disconnect", headers=viewer_headers)
        assert resp.status_code == 200
        assert resp.json()["connected"] is False
        mock_link.disconnect.assert_awaited_once()

    def test_disconnect_error(
        self, client: TestClient, mock_link: AsyncMock, viewer_headers: dict[str, str]
    ) -> None:
        mock_link.disconnect.side_effect = LinkError("Error closing matrix connection")
        assert client.post("/disconnect", headers=viewer_headers).status_code == 500


class TestAuthDisabled:
    def test_routes_open_without_session(
        self, credentials: CredentialStore, mock_link: AsyncMock
    ) -> None:
        acl = AccessControl(
            credentials=credentials,
            attempts=AttemptTracker(),
            sessions=SessionStore(),
            enabled=False,
        )
        client = build_client(acl, mock_link)
        assert client.get("/status").json()["user"] is None
        resp = client.post("/switch", json={"input": 2, "output": 3})
        assert resp.status_code == 200
        mock_link.send.assert_awaited_once_with("SET SW in2 out3\r\n")


class TestLifespan:
    def test_startup_connects_and_shutdown_disconnects(
        self, access: AccessControl, mock_link: AsyncMock
    ) -> None:
        app = create_app(settings=Settings(), access=access, link=mock_link)
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            mock_link.ensure_connected.assert_awaited_once()
        mock_link.shutdown.assert_awaited_once()


class TestRateLimit:
    def test_excess_requests_refused(self, access: AccessControl, mock_link: AsyncMock) -> None:
        app = create_app(
            settings=Settings(),
            access=access,
            link=mock_link,
            limiter=RequestRateLimiter(max_requests=3, window_seconds=60.0),
            connect_on_startup=False,
        )
        client = TestClient(app)
        for remaining in (2, 1, 0):
            resp = client.get("/status")
            assert resp.status_code == 401
            assert resp.headers["RateLimit-Remaining"] == str(remaining)

        resp = client.post("/login", json={"username": "admin", "password": ADMIN_PASSWORD})
        assert resp.status_code == 429
        assert resp.json() == {"detail": "Too many requests, please try again later"}
        assert resp.headers["Retry-After"] == "60"

    def test_health_is_exempt(self, access: AccessControl, mock_link: AsyncMock) -> None:
        app = create_app(
            access=access,
            link=mock_link,
            limiter=RequestRateLimiter(max_requests=1, window_seconds=60.0),
            connect_on_startup=False,
        )
        client = TestClient(app)
        for _ in range(5):
            assert client.get("/health").status_code == 200

    def test_built_from_settings(self, access: AccessControl, mock_link: AsyncMock) -> None:
        settings = Settings(security=SecurityConfig(rate_limit_max=2, rate_limit_window=30.0))
        client = TestClient(
            create_app(settings=settings, access=access, link=mock_link, connect_on_startup=False)
        )
        assert client.get("/status").headers["RateLimit-Limit"] == "2"
        client.get("/status")
        assert client.get("/status").status_code == 429

    def test_disabled_with_zero_max(self, access: AccessControl, mock_link: AsyncMock) -> None:
        settings = Settings(security=SecurityConfig(rate_limit_max=0))
        client = TestClient(
            create_app(settings=settings, access=access, link=mock_link, connect_on_startup=False)
        )
        resp = client.get("/status")
        assert resp.status_code == 401
        assert "RateLimit-Limit" not in resp.headers
