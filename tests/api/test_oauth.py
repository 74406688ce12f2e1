"""Tests for the OAuth connect flow endpoints."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from calwatch.api.routers.oauth import (
    GOOGLE_AUTH_URL,
    _state_store,
    _store_state,
    _validate_and_consume_state,
)
from calwatch.errors import TransientError

pytestmark = pytest.mark.unit

TOKEN_RESPONSE = {
    "access_token": "ya29.access",
    "refresh_token": "1//refresh",
    "expires_in": 3599,
    "token_type": "Bearer",
}


async def _start_flow(client, user_id: str = "u1") -> str:
    resp = await client.get("/oauth/connect", headers={"Mattermost-User-ID": user_id})
    assert resp.status_code == 307
    return parse_qs(urlparse(resp.headers["location"]).query)["state"][0]


class TestStateStore:
    def test_state_is_single_use(self):
        _store_state("abc123_u1")

        assert _validate_and_consume_state("abc123_u1") == "u1"
        assert _validate_and_consume_state("abc123_u1") is None

    def test_user_id_may_contain_underscores(self):
        _store_state("abc123_user_with_underscores")

        assert _validate_and_consume_state("abc123_user_with_underscores") == (
            "user_with_underscores"
        )

    def test_unknown_state(self):
        assert _validate_and_consume_state("never-issued_u1") is None


class TestConnect:
    async def test_requires_user_header(self, client):
        resp = await client.get("/oauth/connect")

        assert resp.status_code == 401

    async def test_redirects_to_google_consent(self, client, config):
        resp = await client.get("/oauth/connect", headers={"Mattermost-User-ID": "u1"})

        assert resp.status_code == 307
        location = resp.headers["location"]
        assert location.startswith(GOOGLE_AUTH_URL)
        params = parse_qs(urlparse(location).query)
        assert params["client_id"] == ["client-id"]
        assert params["redirect_uri"] == [config.oauth_redirect_url]
        assert params["access_type"] == ["offline"]
        assert params["prompt"] == ["consent"]
        assert "calendar.readonly" in params["scope"][0]
        state = params["state"][0]
        assert state.endswith("_u1")
        assert state in _state_store


class TestComplete:
    async def test_success_connects_user(self, client, http_client, records, sink):
        state = await _start_flow(client)
        http_client.post.return_value = httpx.Response(200, json=TOKEN_RESPONSE)

        resp = await client.get("/oauth/complete", params={"code": "auth-code", "state": state})

        assert resp.status_code == 200
        assert "window.close()" in resp.text
        assert await records.connected_users() == ["u1"]
        data = http_client.post.call_args.kwargs["data"]
        assert data["code"] == "auth-code"
        assert data["grant_type"] == "authorization_code"
        assert data["redirect_uri"].endswith("/oauth/complete")
        assert sink.sent

    async def test_state_cannot_be_replayed(self, client, http_client):
        state = await _start_flow(client)
        http_client.post.return_value = httpx.Response(200, json=TOKEN_RESPONSE)
        await client.get("/oauth/complete", params={"code": "auth-code", "state": state})

        resp = await client.get("/oauth/complete", params={"code": "auth-code", "state": state})

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_state"

    async def test_missing_state(self, client):
        resp = await client.get("/oauth/complete", params={"code": "auth-code"})

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "missing_state"

    async def test_missing_code(self, client):
        state = await _start_flow(client)

        resp = await client.get("/oauth/complete", params={"state": state})

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "missing_code"

    async def test_provider_error_is_sanitized(self, client):
        state = await _start_flow(client)

        resp = await client.get(
            "/oauth/complete", params={"error": "access_denied", "state": state}
        )

        assert resp.status_code == 400
        body = resp.json()
        assert body["error_code"] == "provider_error"
        assert "denied" in body["message"]
        assert state not in _state_store

    async def test_token_exchange_failure(self, client, http_client, records):
        state = await _start_flow(client)
        http_client.post.return_value = httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Bad code"}
        )

        resp = await client.get("/oauth/complete", params={"code": "bad", "state": state})

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "token_exchange_failed"
        assert await records.connected_users() == []

    async def test_first_sync_failure_reports_connect_failed(
        self, client, http_client, provider, records
    ):
        state = await _start_flow(client)
        http_client.post.return_value = httpx.Response(200, json=TOKEN_RESPONSE)
        provider.list_error = TransientError("Google Calendar events.list failed (503)")

        resp = await client.get("/oauth/complete", params={"code": "auth-code", "state": state})

        assert resp.status_code == 502
        assert resp.json()["error_code"] == "connect_failed"
        assert await records.connected_users() == ["u1"]
