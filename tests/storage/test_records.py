"""Tests for typed per-user records and the key-value backends."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from calwatch.errors import StoreError
from calwatch.models import (
    MAX_ORPHANED_CHANNELS,
    CalendarInfo,
    Event,
    EventCache,
    WatchSubscription,
)
from calwatch.storage import MemoryKVStore, PostgresKVStore, UserRecordStore
from calwatch.storage.records import CONNECTED_USERS_KEY

pytestmark = pytest.mark.unit


class TestMemoryKVStore:
    async def test_get_set_delete(self):
        kv = MemoryKVStore()

        assert await kv.get("k") is None
        await kv.set("k", b"v")
        assert await kv.get("k") == b"v"
        await kv.delete("k")
        await kv.delete("k")
        assert await kv.get("k") is None


class TestUserRecordStore:
    async def test_missing_records_load_as_empty(self, records):
        info = await records.load_calendar_info("u1")
        cache = await records.load_event_cache("u1")

        assert info == CalendarInfo(owner_user_id="u1")
        assert cache == EventCache(owner_user_id="u1")

    async def test_event_cache_round_trip(self, records, clock):
        cache = EventCache(
            owner_user_id="u1",
            last_sync_cursor="2024-03-04T09:50:00Z",
            last_window_refresh=clock.now,
            events=[
                Event(id="e1", start_time=clock.now, end_time=clock.now + timedelta(minutes=30))
            ],
            notified_event_ids=["e1"],
        )

        await records.save_event_cache(cache)

        assert await records.load_event_cache("u1") == cache

    async def test_calendar_info_uses_watch_key(self, records, kv, clock):
        info = CalendarInfo(
            owner_user_id="u1",
            subscription=WatchSubscription(
                owner_user_id="u1", channel_id="c1", resource_id="r1", expiry=clock.now
            ),
        )

        await records.save_calendar_info(info)

        assert kv.keys() == ["u1_calendarwatch"]
        assert await records.load_calendar_info("u1") == info

    async def test_corrupt_cache_is_store_error(self, records, kv):
        await kv.set("u1_calendarevents", b'{"owner_user_id": 5, "events": "x"}')

        with pytest.raises(StoreError, match="EventCache"):
            await records.load_event_cache("u1")

    async def test_connected_user_registry(self, records):
        await records.add_connected_user("u1")
        await records.add_connected_user("u2")
        await records.add_connected_user("u1")

        assert await records.connected_users() == ["u1", "u2"]

        await records.remove_connected_user("u1")
        await records.remove_connected_user("missing")

        assert await records.connected_users() == ["u2"]

    async def test_concurrent_registration_keeps_every_user(self, records):
        await asyncio.gather(*(records.add_connected_user(f"u{i}") for i in range(10)))

        assert sorted(await records.connected_users()) == sorted(f"u{i}" for i in range(10))

    async def test_corrupt_registry_is_store_error(self, records, kv):
        await kv.set(CONNECTED_USERS_KEY, b'{"u1": true}')

        with pytest.raises(StoreError, match="JSON list"):
            await records.connected_users()

    async def test_delete_user_keeps_credential(self, records, kv):
        await kv.set("u1_usertoken", b"{}")
        await records.save_event_cache(EventCache(owner_user_id="u1"))
        await records.save_calendar_info(CalendarInfo(owner_user_id="u1"))

        await records.delete_user("u1")

        assert kv.keys() == ["u1_usertoken"]


class TestOrphanedChannels:
    def test_record_orphan_is_deduplicated(self, clock):
        info = CalendarInfo(owner_user_id="u1")

        info.record_orphan(channel_id="c1", resource_id="r1", reason="stop_failed", now=clock.now)
        info.record_orphan(channel_id="c1", resource_id="r1", reason="stale_push", now=clock.now)

        assert len(info.orphaned_channels) == 1

    def test_orphan_list_is_bounded(self, clock):
        info = CalendarInfo(owner_user_id="u1")

        for i in range(MAX_ORPHANED_CHANNELS + 5):
            info.record_orphan(
                channel_id=f"c{i}", resource_id="r", reason="stop_failed", now=clock.now
            )

        assert len(info.orphaned_channels) == MAX_ORPHANED_CHANNELS
        assert info.orphaned_channels[0].channel_id == "c5"


class TestPostgresKVStore:
    @pytest.fixture
    def pool(self):
        pool = MagicMock()
        pool.fetchval = AsyncMock(return_value=None)
        pool.execute = AsyncMock(return_value="INSERT 0 1")
        pool.close = AsyncMock()
        return pool

    async def test_get_returns_bytes(self, pool):
        pool.fetchval.return_value = memoryview(b"payload")
        store = PostgresKVStore(pool)

        assert await store.get("k") == b"payload"
        sql, key = pool.fetchval.call_args.args
        assert "calwatch_kv" in sql
        assert key == "k"

    async def test_get_missing(self, pool):
        assert await PostgresKVStore(pool).get("k") is None

    async def test_set_is_upsert(self, pool):
        await PostgresKVStore(pool).set("k", b"v")

        sql, key, value = pool.execute.call_args.args
        assert "ON CONFLICT (key) DO UPDATE" in sql
        assert (key, value) == ("k", b"v")

    async def test_backend_failure_is_store_error(self, pool):
        pool.execute.side_effect = ConnectionResetError("connection lost")

        with pytest.raises(StoreError, match="Failed to write key 'k'"):
            await PostgresKVStore(pool).set("k", b"v")

    async def test_close_only_when_owned(self, pool):
        await PostgresKVStore(pool).close()
        pool.close.assert_not_awaited()

        await PostgresKVStore(pool, owns_pool=True).close()
        pool.close.assert_awaited_once()
