"""Typed per-user records on top of a :class:`~calwatch.storage.kv.KVStore`.

Key layout (one key per entity, no cross-key transactions)::

    <user_id>_usertoken        Credential
    <user_id>_calendarwatch    CalendarInfo (watch subscription + orphans)
    <user_id>_calendarevents   EventCache
    calwatch_connected_users   JSON list of connected user IDs
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from calwatch.errors import StoreError
from calwatch.models import CalendarInfo, EventCache
from calwatch.storage.kv import KVStore

logger = logging.getLogger(__name__)

USER_TOKEN_SUFFIX = "_usertoken"
CALENDAR_WATCH_SUFFIX = "_calendarwatch"
CALENDAR_EVENTS_SUFFIX = "_calendarevents"
CONNECTED_USERS_KEY = "calwatch_connected_users"

ModelT = TypeVar("ModelT", bound=BaseModel)


def encode_record(record: BaseModel) -> bytes:
    return record.model_dump_json().encode("utf-8")


def decode_record(raw: bytes, model: type[ModelT], *, key: str) -> ModelT:
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        raise StoreError(f"Stored record under {key!r} is not a valid {model.__name__}") from exc


class UserRecordStore:
    """Load and save the watch info, event cache, and connected-user registry."""

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv
        self._registry_lock = asyncio.Lock()

    # -- CalendarInfo ----------------------------------------------------

    async def load_calendar_info(self, user_id: str) -> CalendarInfo:
        key = f"{user_id}{CALENDAR_WATCH_SUFFIX}"
        raw = await self.kv.get(key)
        if raw is None:
            return CalendarInfo(owner_user_id=user_id)
        return decode_record(raw, CalendarInfo, key=key)

    async def save_calendar_info(self, info: CalendarInfo) -> None:
        await self.kv.set(f"{info.owner_user_id}{CALENDAR_WATCH_SUFFIX}", encode_record(info))

    # -- EventCache ------------------------------------------------------

    async def load_event_cache(self, user_id: str) -> EventCache:
        key = f"{user_id}{CALENDAR_EVENTS_SUFFIX}"
        raw = await self.kv.get(key)
        if raw is None:
            return EventCache(owner_user_id=user_id)
        return decode_record(raw, EventCache, key=key)

    async def save_event_cache(self, cache: EventCache) -> None:
        await self.kv.set(f"{cache.owner_user_id}{CALENDAR_EVENTS_SUFFIX}", encode_record(cache))

    # -- Connected-user registry ----------------------------------------

    async def connected_users(self) -> list[str]:
        raw = await self.kv.get(CONNECTED_USERS_KEY)
        if raw is None:
            return []
        try:
            users = json.loads(raw)
        except ValueError as exc:
            raise StoreError("Connected-user registry is not valid JSON") from exc
        if not isinstance(users, list):
            raise StoreError("Connected-user registry must be a JSON list")
        return [str(u) for u in users]

    async def add_connected_user(self, user_id: str) -> None:
        async with self._registry_lock:
            users = await self.connected_users()
            if user_id in users:
                return
            users.append(user_id)
            await self.kv.set(CONNECTED_USERS_KEY, json.dumps(users).encode("utf-8"))
        logger.info("Registered connected user %s", user_id)

    async def remove_connected_user(self, user_id: str) -> None:
        async with self._registry_lock:
            users = await self.connected_users()
            if user_id not in users:
                return
            users.remove(user_id)
            await self.kv.set(CONNECTED_USERS_KEY, json.dumps(users).encode("utf-8"))
        logger.info("Removed connected user %s", user_id)

    async def delete_user(self, user_id: str) -> None:
        """Remove the watch info and event cache for *user_id*."""
        await self.kv.delete(f"{user_id}{CALENDAR_WATCH_SUFFIX}")
        await self.kv.delete(f"{user_id}{CALENDAR_EVENTS_SUFFIX}")
