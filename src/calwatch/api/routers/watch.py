"""Inbound Google Calendar push notifications.

Google posts to ``/watch?userID=<id>`` with the channel identity in headers.
The endpoint always answers 200, including for stale or unknown channels.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request

from calwatch.api.deps import get_engine
from calwatch.api.models.watch import WatchAck
from calwatch.engine import CalendarSyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["watch"])

_CHANNEL_HEADERS = ("X-Goog-Channel-ID", "X-Channel-ID")
_RESOURCE_HEADERS = ("X-Goog-Resource-ID", "X-Resource-ID")
_STATE_HEADERS = ("X-Goog-Resource-State", "X-Resource-State")


def _first_header(request: Request, names: tuple[str, ...]) -> str:
    for name in names:
        value = request.headers.get(name)
        if value:
            return value.strip()
    return ""


@router.post("/watch", response_model=WatchAck)
async def watch_push(
    request: Request,
    user_id: str = Query(default="", alias="userID"),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> WatchAck:
    channel_id = _first_header(request, _CHANNEL_HEADERS)
    resource_id = _first_header(request, _RESOURCE_HEADERS)
    resource_state = _first_header(request, _STATE_HEADERS)

    if not user_id or not channel_id:
        logger.info("Ignoring push without userID or channel id")
        return WatchAck(status="ignored")

    outcome = await engine.handle_push(user_id, channel_id, resource_id, resource_state)
    return WatchAck(
        verdict=outcome.verdict.value if outcome.verdict is not None else None,
        reconciled=outcome.reconciled,
    )
