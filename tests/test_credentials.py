"""Tests for credential persistence and token refresh."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from calwatch.credentials import (
    GOOGLE_OAUTH_TOKEN_URL,
    CredentialStore,
    credential_from_token_response,
    safe_token_error_message,
)
from calwatch.errors import (
    CredentialNotFoundError,
    ProtocolError,
    StoreError,
    TransientError,
    UnauthorizedError,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def store(kv, http_client, config, clock):
    return CredentialStore(kv, http_client, config.oauth, clock=clock)


@pytest.fixture
def expiring(make_credential):
    return make_credential("u1", expires_in=timedelta(seconds=30))


# ---------------------------------------------------------------------------
# credential_from_token_response
# ---------------------------------------------------------------------------


class TestCredentialFromTokenResponse:
    def test_builds_credential(self, clock):
        response = httpx.Response(
            200,
            json={
                "access_token": "ya29.new",
                "refresh_token": "1//refresh",
                "expires_in": 3599,
                "token_type": "Bearer",
            },
        )

        credential = credential_from_token_response("u1", response, now=clock.now)

        assert credential.access_token == "ya29.new"
        assert credential.refresh_token == "1//refresh"
        assert credential.expiry == clock.now + timedelta(seconds=3599)

    def test_keeps_previous_refresh_token(self, clock):
        response = httpx.Response(200, json={"access_token": "ya29.new", "expires_in": "120"})

        credential = credential_from_token_response(
            "u1", response, now=clock.now, previous_refresh_token="1//old"
        )

        assert credential.refresh_token == "1//old"
        assert credential.expiry == clock.now + timedelta(seconds=120)

    def test_missing_refresh_token_is_protocol_error(self, clock):
        response = httpx.Response(200, json={"access_token": "ya29.new"})

        with pytest.raises(ProtocolError, match="refresh_token"):
            credential_from_token_response("u1", response, now=clock.now)

    def test_missing_access_token_is_protocol_error(self, clock):
        response = httpx.Response(200, json={"refresh_token": "1//r"})

        with pytest.raises(ProtocolError, match="access_token"):
            credential_from_token_response("u1", response, now=clock.now)

    def test_invalid_json_is_protocol_error(self, clock):
        response = httpx.Response(200, content=b"<html>oops</html>")

        with pytest.raises(ProtocolError, match="invalid JSON"):
            credential_from_token_response("u1", response, now=clock.now)

    def test_invalid_grant_is_unauthorized(self, clock):
        response = httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Token has been revoked."}
        )

        with pytest.raises(UnauthorizedError, match="revoked"):
            credential_from_token_response("u1", response, now=clock.now)

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_rate_limit_and_server_errors_are_transient(self, clock, status):
        response = httpx.Response(status, json={"error": "backendError"})

        with pytest.raises(TransientError) as exc_info:
            credential_from_token_response("u1", response, now=clock.now)
        assert exc_info.value.status_code == status

    def test_unexpected_status_is_protocol_error(self, clock):
        with pytest.raises(ProtocolError):
            credential_from_token_response("u1", httpx.Response(404), now=clock.now)


class TestSafeTokenErrorMessage:
    def test_redacts_secrets_in_body(self):
        response = httpx.Response(400, text="bad request refresh_token=1//secret-value")

        message = safe_token_error_message(response)

        assert "secret-value" not in message
        assert "[REDACTED]" in message

    def test_empty_body(self):
        assert safe_token_error_message(httpx.Response(500)) == (
            "Request failed without an error payload"
        )


# ---------------------------------------------------------------------------
# CredentialStore
# ---------------------------------------------------------------------------


class TestCredentialStore:
    async def test_get_missing_raises(self, store):
        with pytest.raises(CredentialNotFoundError) as exc_info:
            await store.get("u1")
        assert exc_info.value.user_id == "u1"

    async def test_put_get_delete(self, store, make_credential):
        credential = make_credential("u1")

        await store.put(credential)
        assert await store.get("u1") == credential

        await store.delete("u1")
        with pytest.raises(CredentialNotFoundError):
            await store.get("u1")

    async def test_corrupt_record_is_store_error(self, store, kv):
        await kv.set("u1_usertoken", b"{not json")

        with pytest.raises(StoreError, match="u1_usertoken"):
            await store.get("u1")

    def test_repr_redacts_tokens(self, make_credential):
        text = repr(make_credential("u1"))

        assert "access-u1" not in text
        assert "refresh-u1" not in text


class TestEnsureFresh:
    async def test_fresh_credential_is_returned_unchanged(
        self, store, http_client, make_credential
    ):
        credential = make_credential("u1")

        assert await store.ensure_fresh(credential) is credential
        http_client.post.assert_not_awaited()

    async def test_refreshes_and_persists(self, store, http_client, clock, expiring):
        await store.put(expiring)
        http_client.post.return_value = httpx.Response(
            200, json={"access_token": "ya29.fresh", "expires_in": 3600}
        )

        refreshed = await store.ensure_fresh(expiring)

        assert refreshed.access_token == "ya29.fresh"
        assert refreshed.refresh_token == expiring.refresh_token
        assert refreshed.expiry == clock.now + timedelta(hours=1)
        assert await store.get("u1") == refreshed

        args, kwargs = http_client.post.call_args
        assert args[0] == GOOGLE_OAUTH_TOKEN_URL
        assert kwargs["data"]["grant_type"] == "refresh_token"
        assert kwargs["data"]["refresh_token"] == expiring.refresh_token
        assert kwargs["data"]["client_secret"] == "client-secret"

    async def test_rotated_refresh_token_is_stored(self, store, http_client, expiring):
        await store.put(expiring)
        http_client.post.return_value = httpx.Response(
            200, json={"access_token": "ya29.fresh", "refresh_token": "1//rotated"}
        )

        await store.ensure_fresh(expiring)

        assert (await store.get("u1")).refresh_token == "1//rotated"

    async def test_revoked_refresh_token_leaves_store_untouched(
        self, store, http_client, expiring
    ):
        await store.put(expiring)
        http_client.post.return_value = httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(UnauthorizedError):
            await store.ensure_fresh(expiring)

        assert await store.get("u1") == expiring

    async def test_network_error_is_transient(self, store, http_client, expiring):
        await store.put(expiring)
        http_client.post.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(TransientError, match="ConnectError"):
            await store.ensure_fresh(expiring)

    async def test_concurrent_refreshes_hit_endpoint_once(self, store, http_client, expiring):
        await store.put(expiring)

        async def slow_post(*args, **kwargs):
            await asyncio.sleep(0)
            return httpx.Response(200, json={"access_token": "ya29.fresh", "expires_in": 3600})

        http_client.post.side_effect = slow_post

        results = await asyncio.gather(store.ensure_fresh(expiring), store.ensure_fresh(expiring))

        assert http_client.post.await_count == 1
        assert {r.access_token for r in results} == {"ya29.fresh"}
