"""Error taxonomy for the calendar sync engine.

Every failure that crosses a component boundary is one of:

- ``UnauthorizedError``: the credential is invalid or revoked. The user has
  to reconnect; nothing retries it.
- ``TransientError``: network failure, timeout, rate limit or provider 5xx.
  The next scheduled pass is the retry.
- ``ProtocolError``: the provider answered with something we cannot parse.
  The pass is abandoned and the cache left untouched.
- ``StoreError``: the key-value store failed. Nothing from the pass counts
  as committed.
"""

from __future__ import annotations

import re


class CalwatchError(RuntimeError):
    """Base error for the calendar sync engine."""


class UnauthorizedError(CalwatchError):
    """Raised when the provider rejects the user's credential."""


class TransientError(CalwatchError):
    """Raised for failures that are expected to clear up on their own."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ProtocolError(CalwatchError):
    """Raised when a provider response has an unexpected shape."""


class StoreError(CalwatchError):
    """Raised when reading or writing the key-value store fails."""


class CredentialNotFoundError(CalwatchError):
    """Raised when no credential is stored for a user."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No calendar credential stored for user {user_id!r}")


_SECRET_KEYS = r"client_secret|refresh_token|access_token|token|code"


def redact_credential_values(message: str) -> str:
    """Redact token-like values from an error message before it is logged."""
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\b(Bearer)\s+[A-Za-z0-9._\-]+", r"\1 [REDACTED]", redacted)
    return redacted


def sanitize_error(exc: BaseException) -> str:
    """Return a single-line, redacted, truncated description of *exc*."""
    redacted = redact_credential_values(str(exc))
    return " ".join(redacted.split())[:200] or type(exc).__name__
