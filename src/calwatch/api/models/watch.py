"""Pydantic models for the push-notification webhook."""

from __future__ import annotations

from pydantic import BaseModel


class WatchAck(BaseModel):
    """Body returned to the provider for every push."""

    status: str = "ok"
    verdict: str | None = None
    reconciled: bool = False
