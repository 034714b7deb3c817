"""
tests/test_rate_limit.py -- Per-IP limits on the credential routes.

conftest.py sets LOGIN_RATE_LIMIT=5/minute and starts with the limiter
disabled; each test here switches it on and clears its counters.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter


@pytest.fixture
def limited(api_client: tuple[TestClient, str], monkeypatch) -> Generator[TestClient, None, None]:
    client, _ = api_client
    monkeypatch.setattr(limiter, "enabled", True)
    limiter.reset()
    yield client
    limiter.reset()


class TestCredentialRouteLimits:
    def test_login_is_limited_per_ip(self, limited: TestClient) -> None:
        statuses = [
            limited.post("/api/v1/auth/login", json={"username": "testadmin", "password": "wrong-pw"}).status_code
            for _ in range(6)
        ]
        assert statuses == [400, 400, 400, 400, 400, 429]

    def test_limited_response_uses_envelope(self, limited: TestClient) -> None:
        for _ in range(5):
            limited.post("/api/v1/auth/login/email-code", json={"email": "x@example.com", "code": "123456"})
        resp = limited.post("/api/v1/auth/login/email-code", json={"email": "x@example.com", "code": "123456"})
        assert resp.status_code == 429
        body = resp.json()
        assert body["code"] == 429
        assert body["data"] is None
        assert body["error"] == "rate_limited"
        assert "retry-after" in resp.headers

    def test_register_is_not_limited(self, limited: TestClient) -> None:
        for i in range(7):
            resp = limited.post("/api/v1/auth/register", json={"username": f"bulk{i}", "password": "p@ss1234"})
            assert resp.status_code == 201

    def test_disabled_limiter_lets_requests_through(self, api_client: tuple[TestClient, str]) -> None:
        client, _ = api_client
        limiter.reset()
        statuses = {
            client.post("/api/v1/auth/login", json={"username": "testadmin", "password": "wrong-pw"}).status_code
            for _ in range(7)
        }
        assert statuses == {400}
