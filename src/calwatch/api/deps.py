"""FastAPI dependencies for the calwatch HTTP surface."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request

from calwatch.engine import CalendarSyncEngine

USER_ID_HEADER = "Mattermost-User-ID"


def get_engine(request: Request) -> CalendarSyncEngine:
    """Return the engine attached to the app by :func:`calwatch.api.app.create_app`."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Calendar sync engine is not initialized.")
    return engine


def require_user_id(
    user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
) -> str:
    """The authenticated chat user, injected by the platform as a header."""
    if user_id is None or not user_id.strip():
        raise HTTPException(status_code=401, detail="Not authorized")
    return user_id.strip()
