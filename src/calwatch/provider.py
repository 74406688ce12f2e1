"""Google Calendar call surface: event listing, watch channels, channel stop.

Every call first runs :meth:`CredentialStore.ensure_fresh` so a refreshed
access token is persisted before it is used. There is no retry loop here;
the next scheduled pass is the retry.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

import httpx

from calwatch.credentials import CredentialStore
from calwatch.errors import ProtocolError, TransientError, UnauthorizedError
from calwatch.models import Credential, EventStatus, RawEvent, parse_rfc3339, to_rfc3339

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
PRIMARY_CALENDAR_ID = "primary"
DEFAULT_FETCH_WINDOW = timedelta(hours=1)

# Guard against a provider that keeps returning nextPageToken.
_MAX_PAGES = 50
_PAGE_SIZE = 250


@dataclass(frozen=True)
class WatchResult:
    """Provider-assigned identity and expiry of a new watch channel."""

    resource_id: str
    expiry: datetime


class CalendarProvider(abc.ABC):
    """Abstract interface for calendar providers."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (for example, ``google``)."""

    @abc.abstractmethod
    async def list_events(
        self,
        credential: Credential,
        *,
        now: datetime,
        since: str | None = None,
    ) -> list[RawEvent]:
        """List events for the primary calendar.

        With ``since`` unset this is a bootstrap fetch of events starting in
        ``[now, now + window]``. With ``since`` set it is an incremental fetch
        of every event modified at or after ``since`` (cancellations
        included), bounded above by ``now + window``.
        """

    @abc.abstractmethod
    async def watch(
        self, credential: Credential, callback_url: str, channel_id: str
    ) -> WatchResult:
        """Open a push channel that posts change notices to *callback_url*."""

    @abc.abstractmethod
    async def stop_watch(self, credential: Credential, channel_id: str, resource_id: str) -> None:
        """Ask the provider to stop delivering on a channel."""


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _raise_for_status(response: httpx.Response, operation: str) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    message = _safe_google_error_message(response)
    if status in (401, 403):
        raise UnauthorizedError(f"Google Calendar {operation} rejected credential ({status})")
    if status == 429 or status >= 500:
        raise TransientError(
            f"Google Calendar {operation} failed ({status}): {message}",
            status_code=status,
        )
    raise ProtocolError(f"Google Calendar {operation} failed ({status}): {message}")


def _parse_google_event_boundary(payload: Any, field_name: str, event_id: str) -> datetime:
    if not isinstance(payload, dict):
        raise ProtocolError(f"Google Calendar event {event_id!r} has no {field_name} object")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        try:
            return parse_rfc3339(date_time)
        except ValueError as exc:
            raise ProtocolError(
                f"Google Calendar event {event_id!r} has invalid {field_name}.dateTime"
            ) from exc

    # All-day events carry a bare date; treat it as midnight UTC.
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ProtocolError(
                f"Google Calendar event {event_id!r} has invalid {field_name}.date"
            ) from exc
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC)

    raise ProtocolError(f"Google Calendar event {event_id!r} is missing {field_name} values")


def _parse_google_event_status(value: Any) -> EventStatus:
    if not isinstance(value, str):
        return EventStatus.confirmed
    try:
        return EventStatus(value.strip().lower())
    except ValueError:
        return EventStatus.confirmed


def google_event_to_raw_event(item: dict[str, Any]) -> RawEvent:
    """Convert one Google ``Event`` resource into a :class:`RawEvent`."""
    event_id = item.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        raise ProtocolError("Google Calendar event is missing an id")
    event_id = event_id.strip()

    status = _parse_google_event_status(item.get("status"))
    summary = item.get("summary")
    html_link = item.get("htmlLink")
    updated_raw = item.get("updated")
    updated = None
    if isinstance(updated_raw, str) and updated_raw.strip():
        try:
            updated = parse_rfc3339(updated_raw)
        except ValueError:
            updated = None

    if status == EventStatus.cancelled:
        # Tombstones usually carry only id/status.
        start = end = None
        if isinstance(item.get("start"), dict) and isinstance(item.get("end"), dict):
            try:
                start = _parse_google_event_boundary(item["start"], "start", event_id)
                end = _parse_google_event_boundary(item["end"], "end", event_id)
            except ProtocolError:
                start = end = None
    else:
        start = _parse_google_event_boundary(item.get("start"), "start", event_id)
        end = _parse_google_event_boundary(item.get("end"), "end", event_id)

    return RawEvent(
        id=event_id,
        status=status,
        html_link=html_link if isinstance(html_link, str) and html_link else None,
        start_time=start,
        end_time=end,
        summary=summary.strip() if isinstance(summary, str) and summary.strip() else "(untitled)",
        updated=updated,
    )


def _parse_channel_expiration(value: Any) -> datetime:
    # The watch response reports expiration as Unix epoch milliseconds.
    if isinstance(value, bool):
        raise ProtocolError("Google Calendar watch response has invalid expiration")
    try:
        millis = int(value)
    except (TypeError, ValueError) as exc:
        raise ProtocolError("Google Calendar watch response has invalid expiration") from exc
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 provider over a shared :class:`httpx.AsyncClient`."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        credentials: CredentialStore,
        *,
        fetch_window: timedelta = DEFAULT_FETCH_WINDOW,
        calendar_id: str = PRIMARY_CALENDAR_ID,
    ) -> None:
        self._http_client = http_client
        self._credentials = credentials
        self._fetch_window = fetch_window
        self._calendar_id = calendar_id

    @property
    def name(self) -> str:
        return "google"

    async def _request(
        self,
        credential: Credential,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        fresh = await self._credentials.ensure_fresh(credential)
        headers = {"Authorization": f"{fresh.token_type or 'Bearer'} {fresh.access_token}"}
        try:
            response = await self._http_client.request(
                method,
                f"{GOOGLE_CALENDAR_API_BASE_URL}{path}",
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise TransientError(
                f"Google Calendar {operation} request failed: {type(exc).__name__}"
            ) from exc
        _raise_for_status(response, operation)
        return response

    @staticmethod
    def _json_object(response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProtocolError(f"Google Calendar {operation} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ProtocolError(f"Google Calendar {operation} returned unexpected payload shape")
        return payload

    async def list_events(
        self,
        credential: Credential,
        *,
        now: datetime,
        since: str | None = None,
    ) -> list[RawEvent]:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "timeMax": to_rfc3339(now + self._fetch_window),
            "maxResults": _PAGE_SIZE,
        }
        if since is None:
            params["timeMin"] = to_rfc3339(now)
            params["orderBy"] = "startTime"
        else:
            params["updatedMin"] = since
            params["showDeleted"] = "true"

        events: list[RawEvent] = []
        next_page_token: str | None = None
        for _ in range(_MAX_PAGES):
            if next_page_token is not None:
                params["pageToken"] = next_page_token

            response = await self._request(
                credential,
                "GET",
                f"/calendars/{self._calendar_id}/events",
                operation="events.list",
                params=params,
            )
            payload = self._json_object(response, "events.list")

            items = payload.get("items", [])
            if not isinstance(items, list):
                raise ProtocolError("Google Calendar events.list response has non-list items")
            for item in items:
                if not isinstance(item, dict):
                    raise ProtocolError("Google Calendar events.list item is not an object")
                events.append(google_event_to_raw_event(item))

            candidate = payload.get("nextPageToken")
            next_page_token = candidate if isinstance(candidate, str) and candidate else None
            if next_page_token is None:
                break
        else:
            raise ProtocolError(
                f"Google Calendar events.list still paginating after {_MAX_PAGES} pages"
            )

        logger.debug(
            "Fetched %d event(s) for user %s (mode=%s)",
            len(events),
            credential.user_id,
            "bootstrap" if since is None else "incremental",
        )
        return events

    async def watch(
        self, credential: Credential, callback_url: str, channel_id: str
    ) -> WatchResult:
        response = await self._request(
            credential,
            "POST",
            f"/calendars/{self._calendar_id}/events/watch",
            operation="events.watch",
            json_body={"id": channel_id, "type": "web_hook", "address": callback_url},
        )
        payload = self._json_object(response, "events.watch")

        resource_id = payload.get("resourceId")
        if not isinstance(resource_id, str) or not resource_id.strip():
            raise ProtocolError("Google Calendar watch response is missing resourceId")
        return WatchResult(
            resource_id=resource_id.strip(),
            expiry=_parse_channel_expiration(payload.get("expiration")),
        )

    async def stop_watch(self, credential: Credential, channel_id: str, resource_id: str) -> None:
        await self._request(
            credential,
            "POST",
            "/channels/stop",
            operation="channels.stop",
            json_body={"id": channel_id, "resourceId": resource_id},
        )
