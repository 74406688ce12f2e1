"""``/google-calendar`` slash command."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from calwatch.api.deps import get_engine, require_user_id
from calwatch.api.models.command import CommandRequest, CommandResponse
from calwatch.engine import CalendarSyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["command"])

COMMAND_TRIGGER = "/google-calendar"
HELP_TEXT = "Available commands: connect, disconnect"


@router.post("/command", response_model=CommandResponse)
async def execute_command(
    body: CommandRequest,
    user_id: str = Depends(require_user_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> CommandResponse:
    if body.user_id != user_id:
        logger.warning("Rejected command for user %s issued by user %s", body.user_id, user_id)
        raise HTTPException(status_code=403, detail="Command user does not match caller")

    parts = body.command.split()
    username = engine.config.bot_username
    if not parts or parts[0] != COMMAND_TRIGGER:
        return CommandResponse(text=f"Unknown command. {HELP_TEXT}", username=username)

    action = parts[1].lower() if len(parts) > 1 else ""
    if action == "connect":
        return CommandResponse(
            text=f"[Click here to link your Google Calendar.]({engine.config.connect_url})",
            username=username,
        )
    if action == "disconnect":
        await engine.disconnect(user_id)
        logger.info("User %s disconnected via slash command", user_id)
        return CommandResponse(text="Disconnected your Google Calendar.", username=username)

    return CommandResponse(text=HELP_TEXT, username=username)
