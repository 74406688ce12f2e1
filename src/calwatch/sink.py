"""One-way notification delivery to chat users.

The engine hands a :class:`Notification` to a :class:`NotificationSink`.
Two sinks exist: a Mattermost-compatible REST sink that posts into the
bot's direct channel with the user, and a logging sink for development.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx

from calwatch.errors import ProtocolError, TransientError, UnauthorizedError
from calwatch.models import Event

logger = logging.getLogger(__name__)

EVENT_PRETEXT = "Event starting in 10 min"
EVENT_COLOR = "#7FC1EE"
WELCOME_MESSAGE = "Welcome to Google Calendar Plugin"
RECONNECT_MESSAGE = (
    "Your Google Calendar connection has expired or was revoked. "
    "[Click here to reconnect your Google Calendar.]({connect_url})"
)


@dataclass(frozen=True)
class Notification:
    """A bot post: optional plain message plus an optional attachment."""

    message: str = ""
    pretext: str | None = None
    title: str | None = None
    title_link: str | None = None
    text: str | None = None
    color: str | None = None

    @property
    def has_attachment(self) -> bool:
        return any((self.pretext, self.title, self.text))

    def attachment(self) -> dict[str, Any]:
        """Slack-style attachment payload."""
        attachment: dict[str, Any] = {}
        for key in ("pretext", "title", "title_link", "text", "color"):
            value = getattr(self, key)
            if value:
                attachment[key] = value
        return attachment


def format_clock(value: datetime) -> str:
    """Format *value* as ``3:04PM``."""
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d}{suffix}"


def build_event_notification(event: Event, *, lead_minutes: int = 10) -> Notification:
    pretext = (
        EVENT_PRETEXT if lead_minutes == 10 else f"Event starting in {lead_minutes} min"
    )
    return Notification(
        pretext=pretext,
        title=event.summary,
        title_link=event.html_link,
        text=f"Today from {format_clock(event.start_time)} to {format_clock(event.end_time)}",
        color=EVENT_COLOR,
    )


def build_welcome_notification() -> Notification:
    return Notification(message=WELCOME_MESSAGE)


def build_reconnect_notification(connect_url: str) -> Notification:
    return Notification(message=RECONNECT_MESSAGE.format(connect_url=connect_url))


class NotificationSink(Protocol):
    """Delivers one notification to one user."""

    async def send(self, user_id: str, notification: Notification) -> None:
        """Deliver *notification* to *user_id*.

        Raises:
            TransientError: Delivery failed and may succeed later.
            UnauthorizedError: The bot credential was rejected.
        """
        ...

    async def close(self) -> None: ...


class LoggingSink:
    """Writes notifications to the log instead of a chat platform."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, Notification]] = []

    async def send(self, user_id: str, notification: Notification) -> None:
        self.sent.append((user_id, notification))
        logger.info(
            "Notification for user %s: %s",
            user_id,
            notification.title or notification.message,
            extra={"notification": notification.attachment() or notification.message},
        )

    async def close(self) -> None:
        return None


class MattermostSink:
    """Posts as the bot into its direct channel with each user.

    Direct channel ids are resolved through ``/api/v4/channels/direct`` and
    cached for the life of the sink.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        base_url: str,
        bot_token: str,
        bot_user_id: str,
    ) -> None:
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._bot_token = bot_token
        self._bot_user_id = bot_user_id
        self._direct_channels: dict[str, str] = {}

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._bot_token}"}

    async def _post(self, path: str, payload: Any) -> dict[str, Any]:
        try:
            response = await self._http_client.post(
                f"{self._base_url}{path}", json=payload, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise TransientError(
                f"Chat API request to {path} failed: {type(exc).__name__}"
            ) from exc

        status = response.status_code
        if status in (401, 403):
            raise UnauthorizedError(f"Chat API rejected bot token ({status}) for {path}")
        if status == 429 or status >= 500:
            raise TransientError(f"Chat API {path} failed ({status})", status_code=status)
        if status < 200 or status >= 300:
            raise ProtocolError(f"Chat API {path} failed ({status})")

        try:
            data = response.json()
        except ValueError as exc:
            raise ProtocolError(f"Chat API {path} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise ProtocolError(f"Chat API {path} returned unexpected payload shape")
        return data

    async def _direct_channel_id(self, user_id: str) -> str:
        channel_id = self._direct_channels.get(user_id)
        if channel_id is not None:
            return channel_id
        data = await self._post("/api/v4/channels/direct", [self._bot_user_id, user_id])
        channel_id = data.get("id")
        if not isinstance(channel_id, str) or not channel_id:
            raise ProtocolError("Chat API direct channel response is missing id")
        self._direct_channels[user_id] = channel_id
        return channel_id

    async def send(self, user_id: str, notification: Notification) -> None:
        channel_id = await self._direct_channel_id(user_id)
        post: dict[str, Any] = {
            "channel_id": channel_id,
            "user_id": self._bot_user_id,
            "message": notification.message,
        }
        if notification.has_attachment:
            post["props"] = {"attachments": [notification.attachment()]}
        await self._post("/api/v4/posts", post)
        logger.debug("Posted notification to user %s in channel %s", user_id, channel_id)

    async def close(self) -> None:
        return None
