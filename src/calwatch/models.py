"""Records persisted per user: credential, watch subscription, event cache.

All timestamps are timezone-aware UTC datetimes. Records are stored as JSON
through :mod:`calwatch.storage`.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from calwatch.errors import ProtocolError

MAX_ORPHANED_CHANNELS = 20


def to_rfc3339(value: datetime) -> str:
    """Format *value* as an RFC 3339 UTC timestamp with a ``Z`` suffix."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    """Delegated OAuth access for one chat user."""

    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    token_type: str = "Bearer"
    expiry: datetime | None = None

    @field_validator("expiry")
    @classmethod
    def _normalize_expiry(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        """Whether the access token is expired or will be within *margin*."""
        if self.expiry is None:
            return False
        return self.expiry - now <= margin

    def __repr__(self) -> str:
        return (
            f"Credential(user_id={self.user_id!r}, access_token=<REDACTED>, "
            f"refresh_token=<REDACTED>, expiry={self.expiry!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Watch subscription
# ---------------------------------------------------------------------------


class WatchState(StrEnum):
    active = "active"
    stopped = "stopped"


class WatchSubscription(BaseModel):
    """A provider push channel owned by one user."""

    model_config = ConfigDict(extra="ignore")

    owner_user_id: str
    channel_id: str
    resource_id: str
    expiry: datetime
    state: WatchState = WatchState.active
    created_at: datetime | None = None

    @field_validator("expiry", "created_at")
    @classmethod
    def _normalize_times(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)

    @property
    def is_active(self) -> bool:
        return self.state == WatchState.active


class OrphanedChannel(BaseModel):
    """A provider channel we asked to stop but could not confirm stopped."""

    model_config = ConfigDict(extra="ignore")

    channel_id: str
    resource_id: str
    reason: str
    recorded_at: datetime


class CalendarInfo(BaseModel):
    """Watch state for a user: the current subscription plus orphan diagnostics."""

    model_config = ConfigDict(extra="ignore")

    owner_user_id: str
    subscription: WatchSubscription | None = None
    orphaned_channels: list[OrphanedChannel] = Field(default_factory=list)

    def record_orphan(
        self, *, channel_id: str, resource_id: str, reason: str, now: datetime
    ) -> None:
        if any(o.channel_id == channel_id for o in self.orphaned_channels):
            return
        self.orphaned_channels.append(
            OrphanedChannel(
                channel_id=channel_id,
                resource_id=resource_id,
                reason=reason,
                recorded_at=now,
            )
        )
        del self.orphaned_channels[:-MAX_ORPHANED_CHANNELS]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventStatus(StrEnum):
    """Event lifecycle states as reported by the provider."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class Event(BaseModel):
    """A cached, non-cancelled calendar event."""

    model_config = ConfigDict(extra="ignore")

    id: str
    html_link: str | None = None
    start_time: datetime
    end_time: datetime
    summary: str = "(untitled)"
    status: EventStatus = EventStatus.confirmed

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_times(cls, value: datetime) -> datetime | None:
        return _ensure_utc(value)


class RawEvent(BaseModel):
    """An event exactly as fetched; cancelled tombstones may lack start/end."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: EventStatus = EventStatus.confirmed
    html_link: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    summary: str = "(untitled)"
    updated: datetime | None = None

    @field_validator("start_time", "end_time", "updated")
    @classmethod
    def _normalize_times(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.cancelled

    def to_event(self) -> Event:
        if self.start_time is None or self.end_time is None:
            raise ProtocolError(f"Event {self.id!r} is missing start/end times")
        return Event(
            id=self.id,
            html_link=self.html_link,
            start_time=self.start_time,
            end_time=self.end_time,
            summary=self.summary,
            status=self.status,
        )


class EventCache(BaseModel):
    """The locally cached event set for one user."""

    model_config = ConfigDict(extra="ignore")

    owner_user_id: str
    last_sync_cursor: str | None = None  # RFC 3339, provider updatedMin watermark
    last_window_refresh: datetime | None = None
    events: list[Event] = Field(default_factory=list)
    notified_event_ids: list[str] = Field(default_factory=list)

    @field_validator("last_window_refresh")
    @classmethod
    def _normalize_refresh(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)

    def event_ids(self) -> list[str]:
        return [event.id for event in self.events]
