"""Pydantic models for the slash command endpoint."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class CommandRequest(BaseModel):
    """Slash-command invocation forwarded by the chat platform."""

    model_config = ConfigDict(extra="ignore")

    command: str
    user_id: str
    channel_id: str | None = None


class CommandResponse(BaseModel):
    response_type: str = "ephemeral"
    text: str
    username: str | None = None
