"""Google OAuth connect flow for chat users.

  1. GET /oauth/connect
     - Requires the ``Mattermost-User-ID`` header.
     - Generates a state token ``<random>_<userID>`` and stores it one-time-use
       with a 10 minute TTL.
     - Redirects to Google with offline access and forced consent so a
       refresh token is always issued.

  2. GET /oauth/complete?code=...&state=...
     - Validates and consumes the state token and recovers the user id.
     - Exchanges the authorization code at Google's token endpoint.
     - Hands the credential to :meth:`CalendarSyncEngine.connect`.
     - Returns a small HTML page that closes the popup.

Security notes:
  - State tokens are one-time-use and expire after 10 minutes.
  - Tokens and the client secret are never logged or echoed back.
  - Provider error strings are mapped to fixed messages.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import UTC, datetime
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from calwatch.api.deps import get_engine, require_user_id
from calwatch.api.models.oauth import OAuthCallbackError
from calwatch.config import OAuthConfig
from calwatch.credentials import GOOGLE_OAUTH_TOKEN_URL, credential_from_token_response
from calwatch.engine import CalendarSyncEngine
from calwatch.errors import CalwatchError, UnauthorizedError, sanitize_error
from calwatch.models import Credential

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
CALENDAR_SCOPES = " ".join(
    [
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/calendar.events.readonly",
    ]
)

COMPLETE_HTML = """<!DOCTYPE html>
<html>
  <head>
    <script>
      window.close();
    </script>
  </head>
  <body>
    <p>Completed connecting to Google Calendar. Please close this window.</p>
  </body>
</html>
"""

# ---------------------------------------------------------------------------
# In-memory CSRF state store
# ---------------------------------------------------------------------------

_STATE_TTL_SECONDS = 600

# Maps state token → expiry timestamp (monotonic).
# NOTE: process-local; run a single worker process.
_state_store: dict[str, float] = {}


def _generate_state(user_id: str) -> str:
    """Generate ``<random>_<userID>``; the random part never contains ``_``."""
    return f"{secrets.token_hex(16)}_{user_id}"


def _store_state(state: str) -> None:
    _state_store[state] = time.monotonic() + _STATE_TTL_SECONDS
    _evict_expired_states()


def _validate_and_consume_state(state: str) -> str | None:
    """Consume *state* and return the user id it was issued for, or ``None``."""
    _evict_expired_states()
    expiry = _state_store.pop(state, None)
    if expiry is None or time.monotonic() >= expiry:
        return None
    _, sep, user_id = state.partition("_")
    if not sep or not user_id:
        return None
    return user_id


def _evict_expired_states() -> None:
    now = time.monotonic()
    expired = [k for k, exp in _state_store.items() if now >= exp]
    for k in expired:
        del _state_store[k]


def _clear_state_store() -> None:
    """Clear all state entries. Used in tests."""
    _state_store.clear()


# ---------------------------------------------------------------------------
# Code exchange
# ---------------------------------------------------------------------------


class _TokenExchangeError(Exception):
    """Raised when the authorization code → token exchange fails."""


async def _exchange_code_for_credential(
    http_client: httpx.AsyncClient,
    *,
    user_id: str,
    code: str,
    oauth: OAuthConfig,
    redirect_uri: str,
) -> Credential:
    """Exchange an authorization code for a :class:`Credential`.

    Raises
    ------
    _TokenExchangeError
        If the exchange fails for any reason (HTTP error, invalid code,
        network error, response without a refresh token).
    """
    payload = {
        "code": code,
        "client_id": oauth.client_id,
        "client_secret": oauth.client_secret,
        "redirect_uri": redirect_uri,
        "grant_type": "authorization_code",
    }
    try:
        response = await http_client.post(
            GOOGLE_OAUTH_TOKEN_URL, data=payload, headers={"Accept": "application/json"}
        )
    except httpx.HTTPError as exc:
        raise _TokenExchangeError(f"Network error during token exchange: {exc}") from exc

    try:
        return credential_from_token_response(user_id, response, now=datetime.now(UTC))
    except CalwatchError as exc:
        raise _TokenExchangeError(sanitize_error(exc)) from exc


_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "The user denied access. OAuth flow cancelled.",
    "invalid_request": "The OAuth request was malformed. Please restart the flow.",
    "unauthorized_client": "This application is not authorized to use Google OAuth.",
    "invalid_scope": "One or more requested OAuth scopes are invalid or not permitted.",
    "server_error": "Google encountered an internal error. Please try again.",
    "temporarily_unavailable": "Google OAuth is temporarily unavailable. Please try again later.",
}


def _sanitize_provider_error(error: str) -> str:
    return _KNOWN_PROVIDER_ERRORS.get(
        error, "Google returned an unexpected error. Please restart the flow."
    )


def _error(status_code: int, error_code: str, message: str) -> JSONResponse:
    payload = OAuthCallbackError(error_code=error_code, message=message)
    return JSONResponse(status_code=status_code, content=payload.model_dump())


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/connect")
async def oauth_connect(
    user_id: str = Depends(require_user_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> Response:
    """Redirect the user to Google's consent screen."""
    state = _generate_state(user_id)
    _store_state(state)

    params = {
        "client_id": engine.config.oauth.client_id,
        "redirect_uri": engine.config.oauth_redirect_url,
        "response_type": "code",
        "scope": CALENDAR_SCOPES,
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    logger.info("OAuth connect started for user %s", user_id)
    return RedirectResponse(url=f"{GOOGLE_AUTH_URL}?{urlencode(params)}", status_code=307)


@router.get("/complete")
async def oauth_complete(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> Response:
    """Finish the OAuth flow and connect the user's calendar."""
    if error:
        logger.warning("Google OAuth provider error: %s", error)
        if state:
            _validate_and_consume_state(state)
        return _error(400, "provider_error", _sanitize_provider_error(error))

    if not state:
        return _error(400, "missing_state", "State parameter is missing from the callback.")

    user_id = _validate_and_consume_state(state)
    if user_id is None:
        logger.warning("OAuth callback received invalid or expired state token")
        return _error(
            400, "invalid_state", "State parameter is invalid or expired. Please reconnect."
        )

    if not code:
        return _error(400, "missing_code", "Authorization code is missing from the callback.")

    try:
        credential = await _exchange_code_for_credential(
            engine.http_client,
            user_id=user_id,
            code=code,
            oauth=engine.config.oauth,
            redirect_uri=engine.config.oauth_redirect_url,
        )
    except _TokenExchangeError as exc:
        logger.warning("Google OAuth token exchange failed for user %s: %s", user_id, exc)
        return _error(
            400,
            "token_exchange_failed",
            "Failed to exchange authorization code for tokens. Please reconnect.",
        )

    try:
        await engine.connect(user_id, credential)
    except UnauthorizedError as exc:
        logger.warning("Calendar rejected new credential for user %s: %s", user_id, exc)
        return _error(401, "unauthorized", "Google Calendar rejected access. Please reconnect.")
    except CalwatchError as exc:
        logger.error("Connecting user %s failed: %s", user_id, sanitize_error(exc))
        return _error(
            502,
            "connect_failed",
            "Connected, but the first calendar sync failed. It will be retried shortly.",
        )

    return HTMLResponse(content=COMPLETE_HTML)
