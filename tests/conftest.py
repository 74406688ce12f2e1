"""Shared fixtures for the calwatch test suite.

Everything here runs in-process: a :class:`MemoryKVStore`, a scripted
calendar provider, a logging sink, and a controllable clock.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from calwatch.config import CalwatchConfig, OAuthConfig
from calwatch.engine import CalendarSyncEngine
from calwatch.models import Credential, EventStatus, RawEvent
from calwatch.provider import CalendarProvider, WatchResult
from calwatch.sink import LoggingSink
from calwatch.storage.kv import MemoryKVStore
from calwatch.storage.records import UserRecordStore

FIXED_NOW = datetime(2024, 3, 4, 9, 50, tzinfo=UTC)
SITE_URL = "https://chat.example.com/plugins/calwatch"


class FakeClock:
    """Callable clock whose time only moves when a test moves it."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProvider(CalendarProvider):
    """Scripted provider that records every call it receives."""

    def __init__(self) -> None:
        self.bootstrap_events: list[RawEvent] = []
        self.changes: list[RawEvent] = []
        self.list_calls: list[dict[str, Any]] = []
        self.watch_calls: list[tuple[str, str, str]] = []
        self.stop_calls: list[tuple[str, str]] = []
        self.list_error: Exception | None = None
        self.watch_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.watch_expiry = FIXED_NOW + timedelta(days=7)
        self._resources = 0

    @property
    def name(self) -> str:
        return "fake"

    async def list_events(
        self, credential: Credential, *, now: datetime, since: str | None = None
    ) -> list[RawEvent]:
        self.list_calls.append({"user_id": credential.user_id, "now": now, "since": since})
        if self.list_error is not None:
            raise self.list_error
        return list(self.bootstrap_events if since is None else self.changes)

    async def watch(
        self, credential: Credential, callback_url: str, channel_id: str
    ) -> WatchResult:
        self.watch_calls.append((credential.user_id, callback_url, channel_id))
        if self.watch_error is not None:
            raise self.watch_error
        self._resources += 1
        return WatchResult(resource_id=f"resource-{self._resources}", expiry=self.watch_expiry)

    async def stop_watch(self, credential: Credential, channel_id: str, resource_id: str) -> None:
        self.stop_calls.append((channel_id, resource_id))
        if self.stop_error is not None:
            raise self.stop_error


def make_raw_event(
    event_id: str,
    start: datetime | None,
    *,
    minutes: int = 30,
    status: EventStatus = EventStatus.confirmed,
    summary: str = "Standup",
) -> RawEvent:
    end = start + timedelta(minutes=minutes) if start is not None else None
    return RawEvent(
        id=event_id,
        status=status,
        html_link=f"https://calendar.google.com/event?eid={event_id}",
        start_time=start,
        end_time=end,
        summary=summary,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> CalwatchConfig:
    return CalwatchConfig(
        site_url=SITE_URL,
        oauth=OAuthConfig(client_id="client-id", client_secret="client-secret"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv() -> MemoryKVStore:
    return MemoryKVStore()


@pytest.fixture
def records(kv: MemoryKVStore) -> UserRecordStore:
    return UserRecordStore(kv)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sink() -> LoggingSink:
    return LoggingSink()


@pytest.fixture
def http_client() -> AsyncMock:
    return AsyncMock(spec=httpx.AsyncClient)


@pytest.fixture
def raw_event():
    """Factory for provider-shaped events."""
    return make_raw_event


@pytest.fixture
def make_credential(clock: FakeClock):
    """Factory for credentials that stay fresh for an hour by default."""

    def _make(user_id: str = "user-1", *, expires_in: timedelta = timedelta(hours=1)):
        return Credential(
            user_id=user_id,
            access_token=f"access-{user_id}",
            refresh_token=f"refresh-{user_id}",
            expiry=clock.now + expires_in,
        )

    return _make


@pytest.fixture
def engine(
    config: CalwatchConfig,
    kv: MemoryKVStore,
    http_client: AsyncMock,
    sink: LoggingSink,
    provider: FakeProvider,
    clock: FakeClock,
) -> CalendarSyncEngine:
    return CalendarSyncEngine(
        config,
        kv=kv,
        http_client=http_client,
        sink=sink,
        provider=provider,
        clock=clock,
    )
