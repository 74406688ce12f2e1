"""Pydantic models for the Google OAuth connect flow."""

from __future__ import annotations

from pydantic import BaseModel


class OAuthCallbackError(BaseModel):
    """Error payload returned when the OAuth callback fails.

    Messages are actionable but never echo provider error bodies or secrets.
    """

    success: bool = False
    error_code: str
    message: str
    provider: str = "google"
