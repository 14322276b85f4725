"""
tests/test_health.py -- Integration tests for GET /api/v1/health and GET /api/v1/ping.

Covers:
  - health: 200 with status and version, no authentication required
  - ping: fixed Basic credentials accepted; wrong, missing and Bearer credentials 401
"""

from __future__ import annotations

from conftest import basic_header


def test_health_returns_200(api_client):
    """Health endpoint returns 200 with status and version."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert "version" in data


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_ping_with_basic_credentials(api_client):
    """The configured pair (secret contains a colon) is accepted."""
    client, _, _ = api_client
    resp = client.get("/api/v1/ping", headers={"Authorization": basic_header("monitor", "monitor:secret")})
    assert resp.status_code == 200
    assert resp.json() == {"message": "pong", "username": "monitor"}


def test_ping_wrong_password(api_client):
    client, _, _ = api_client
    resp = client.get("/api/v1/ping", headers={"Authorization": basic_header("monitor", "nope")})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_credential"
    assert resp.headers["WWW-Authenticate"] == "Basic"


def test_ping_without_credentials(api_client):
    client, _, _ = api_client
    resp = client.get("/api/v1/ping")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "malformed"


def test_ping_rejects_bearer_token(api_client):
    """An access token is not a substitute for the fixed credentials."""
    client, token, _ = api_client
    resp = client.get("/api/v1/ping", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
