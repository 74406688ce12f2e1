"""Per-user OAuth credential persistence and refresh.

A credential is refreshed against Google's token endpoint when its access
token is within the configured expiry margin. The refreshed token is
persisted before it is handed back, and a failed refresh never touches the
stored refresh token: the next pass will try again with the same one.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from calwatch.config import OAuthConfig
from calwatch.core.locks import KeyedLocks
from calwatch.errors import (
    CredentialNotFoundError,
    ProtocolError,
    TransientError,
    UnauthorizedError,
    redact_credential_values,
)
from calwatch.models import Credential
from calwatch.storage.kv import KVStore
from calwatch.storage.records import USER_TOKEN_SUFFIX, decode_record, encode_record

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

_DEFAULT_EXPIRES_IN_SECONDS = 3600
_UNAUTHORIZED_STATUS_CODES = frozenset({400, 401, 403})


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or _DEFAULT_EXPIRES_IN_SECONDS
    return _DEFAULT_EXPIRES_IN_SECONDS


def safe_token_error_message(response: httpx.Response) -> str:
    """Extract a short, redacted error description from a token endpoint response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        description = payload.get("error_description")
        error = payload.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        parts = [str(p) for p in (error, description) if isinstance(p, str) and p.strip()]
        if parts:
            return redact_credential_values(" ".join(" - ".join(parts).split()))[:200]

    raw_text = response.text.strip()
    if raw_text:
        return redact_credential_values(" ".join(raw_text.split()))[:200]
    return "Request failed without an error payload"


def _token_error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return None


def credential_from_token_response(
    user_id: str,
    response: httpx.Response,
    *,
    now: datetime,
    previous_refresh_token: str | None = None,
) -> Credential:
    """Build a :class:`Credential` from a token endpoint response.

    Shared by the authorization-code exchange and refresh-token grant.
    When the provider does not rotate the refresh token, *previous_refresh_token*
    is carried over.

    Raises:
        UnauthorizedError: The grant was rejected.
        TransientError: Rate limit or provider-side failure.
        ProtocolError: The response body is not a usable token payload.
    """
    status = response.status_code
    if status < 200 or status >= 300:
        message = safe_token_error_message(response)
        if _token_error_code(response) == "invalid_grant" or status in _UNAUTHORIZED_STATUS_CODES:
            raise UnauthorizedError(f"Google OAuth token request rejected ({status}): {message}")
        if status == 429 or status >= 500:
            raise TransientError(
                f"Google OAuth token endpoint unavailable ({status}): {message}",
                status_code=status,
            )
        raise ProtocolError(f"Google OAuth token endpoint returned {status}: {message}")

    try:
        payload = response.json()
    except ValueError as exc:
        raise ProtocolError("Google OAuth token endpoint returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("Google OAuth token response has unexpected payload shape")

    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise ProtocolError("Google OAuth token response is missing a non-empty access_token")

    refresh_token = payload.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token.strip():
        refresh_token = previous_refresh_token
    if not refresh_token:
        raise ProtocolError(
            "Google OAuth token response has no refresh_token; "
            "ensure access_type=offline and prompt=consent"
        )

    token_type = payload.get("token_type")
    expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
    return Credential(
        user_id=user_id,
        access_token=access_token.strip(),
        refresh_token=refresh_token.strip(),
        token_type=token_type if isinstance(token_type, str) and token_type else "Bearer",
        expiry=now + timedelta(seconds=expires_in),
    )


class CredentialStore:
    """Stores one :class:`Credential` per user and keeps it fresh.

    Parameters
    ----------
    kv:
        Backing key-value store.
    http_client:
        Client used for the refresh-token grant.
    oauth:
        Google OAuth client id/secret.
    expiry_margin:
        Refresh when the access token expires within this margin.
    clock:
        Returns the current UTC time; injected for tests.
    """

    def __init__(
        self,
        kv: KVStore,
        http_client: httpx.AsyncClient,
        oauth: OAuthConfig,
        *,
        expiry_margin: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._kv = kv
        self._http_client = http_client
        self._oauth = oauth
        self._expiry_margin = expiry_margin
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks = KeyedLocks()

    @staticmethod
    def _key(user_id: str) -> str:
        return f"{user_id}{USER_TOKEN_SUFFIX}"

    async def get(self, user_id: str) -> Credential:
        key = self._key(user_id)
        raw = await self._kv.get(key)
        if raw is None:
            raise CredentialNotFoundError(user_id)
        return decode_record(raw, Credential, key=key)

    async def put(self, credential: Credential) -> None:
        await self._kv.set(self._key(credential.user_id), encode_record(credential))

    async def delete(self, user_id: str) -> None:
        await self._kv.delete(self._key(user_id))
        self._locks.discard(user_id)

    async def ensure_fresh(self, credential: Credential) -> Credential:
        """Return a credential whose access token is outside the expiry margin.

        Refreshes are serialized per user. The stored record is re-read under
        the lock so that a refresh completed by a concurrent caller is reused
        rather than repeated.
        """
        if not credential.expires_within(self._expiry_margin, self._clock()):
            return credential

        async with self._locks.get(credential.user_id):
            try:
                current = await self.get(credential.user_id)
            except CredentialNotFoundError:
                current = credential
            now = self._clock()
            if not current.expires_within(self._expiry_margin, now):
                return current

            refreshed = await self._refresh(current, now=now)
            await self.put(refreshed)
            logger.info(
                "Refreshed access token for user %s (expires %s)",
                refreshed.user_id,
                refreshed.expiry.isoformat() if refreshed.expiry else "never",
            )
            return refreshed

    async def _refresh(self, credential: Credential, *, now: datetime) -> Credential:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._oauth.client_id,
                    "client_secret": self._oauth.client_secret,
                    "refresh_token": credential.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransientError(
                f"Google OAuth token refresh request failed: {type(exc).__name__}"
            ) from exc

        return credential_from_token_response(
            credential.user_id,
            response,
            now=now,
            previous_refresh_token=credential.refresh_token,
        )
