"""Push-channel lifecycle per user: subscribe, renew, validate, stop.

State machine per user::

    Unsubscribed -> Active -> (renewing) -> Active -> Stopped

A new channel is always stored before the previous one is stopped, so there
is no window without a live channel. Channels that could not be confirmed
stopped are recorded on the user's :class:`CalendarInfo` for diagnostics.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from urllib.parse import urlencode

from calwatch.core.locks import InFlight, KeyedLocks
from calwatch.core.metrics import EngineMetrics
from calwatch.core.telemetry import get_tracer, tag_user_span
from calwatch.credentials import CredentialStore
from calwatch.errors import CalwatchError, CredentialNotFoundError, sanitize_error
from calwatch.models import WatchState, WatchSubscription
from calwatch.provider import CalendarProvider
from calwatch.storage.records import UserRecordStore

logger = logging.getLogger(__name__)


class PushVerdict(StrEnum):
    """How an inbound push relates to the user's stored channel."""

    current = "current"  # matches the stored, active channel
    pending = "pending"  # channel created but not yet stored; ignore
    stale = "stale"  # any other channel; stopped and recorded


class WatchSubscriptionManager:
    """Owns channel identity and expiry for every connected user."""

    def __init__(
        self,
        provider: CalendarProvider,
        credentials: CredentialStore,
        records: UserRecordStore,
        *,
        callback_base: str,
        renewal_margin: timedelta = timedelta(seconds=600),
        clock: Callable[[], datetime] | None = None,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._provider = provider
        self._credentials = credentials
        self._records = records
        self._callback_base = callback_base
        self._renewal_margin = renewal_margin
        self._clock = clock or (lambda: datetime.now(UTC))
        self._metrics = metrics or EngineMetrics()
        self._locks = KeyedLocks()
        self._in_flight = InFlight()
        self._pending_channels: set[str] = set()
        self._retiring_channels: set[str] = set()

    def callback_url(self, user_id: str) -> str:
        return f"{self._callback_base}?{urlencode({'userID': user_id})}"

    def should_renew(self, subscription: WatchSubscription, now: datetime) -> bool:
        return subscription.expiry - now <= self._renewal_margin

    async def subscribe(self, user_id: str) -> WatchSubscription | None:
        """Open a channel for *user_id*, replacing any active one."""
        return await self._replace(user_id, operation="subscribe")

    async def renew(self, user_id: str) -> WatchSubscription | None:
        """Replace the user's channel; a no-op returning ``None`` if one is in flight."""
        return await self._replace(user_id, operation="renew")

    async def _replace(self, user_id: str, *, operation: str) -> WatchSubscription | None:
        if not self._in_flight.claim(user_id):
            logger.info("Watch %s for user %s already in flight; skipping", operation, user_id)
            self._metrics.record_watch(operation, "suppressed")
            return None

        tracer = get_tracer()
        try:
            with tracer.start_as_current_span(f"calwatch.watch.{operation}") as span:
                tag_user_span(span, user_id)
                credential = await self._credentials.get(user_id)

                async with self._locks.get(user_id):
                    info = await self._records.load_calendar_info(user_id)
                    previous = info.subscription
                    if previous is not None and not previous.is_active:
                        previous = None

                    channel_id = str(uuid.uuid4())
                    self._pending_channels.add(channel_id)
                    try:
                        result = await self._provider.watch(
                            credential, self.callback_url(user_id), channel_id
                        )
                        subscription = WatchSubscription(
                            owner_user_id=user_id,
                            channel_id=channel_id,
                            resource_id=result.resource_id,
                            expiry=result.expiry,
                            state=WatchState.active,
                            created_at=self._clock(),
                        )
                        info.subscription = subscription
                        await self._records.save_calendar_info(info)
                    finally:
                        self._pending_channels.discard(channel_id)

                logger.info(
                    "Watch channel %s active for user %s until %s",
                    channel_id,
                    user_id,
                    subscription.expiry.isoformat(),
                )

                if previous is not None:
                    await self._retire(user_id, previous, reason=f"{operation}_stop_failed")
        except CalwatchError:
            self._metrics.record_watch(operation, "error")
            raise
        finally:
            self._in_flight.release(user_id)

        self._metrics.record_watch(operation, "success")
        return subscription

    async def _retire(self, user_id: str, previous: WatchSubscription, *, reason: str) -> None:
        """Stop a replaced channel; failures are recorded, never raised."""
        self._retiring_channels.add(previous.channel_id)
        try:
            credential = await self._credentials.get(user_id)
            await self._provider.stop_watch(
                credential, previous.channel_id, previous.resource_id
            )
        except CalwatchError as exc:
            logger.warning(
                "Failed to stop replaced channel %s for user %s: %s",
                previous.channel_id,
                user_id,
                sanitize_error(exc),
            )
            self._metrics.record_watch("stop", "error")
            await self._record_orphan(
                user_id, previous.channel_id, previous.resource_id, reason=reason
            )
        else:
            self._metrics.record_watch("stop", "success")
        finally:
            self._retiring_channels.discard(previous.channel_id)

    async def _record_orphan(
        self, user_id: str, channel_id: str, resource_id: str, *, reason: str
    ) -> None:
        try:
            async with self._locks.get(user_id):
                info = await self._records.load_calendar_info(user_id)
                info.record_orphan(
                    channel_id=channel_id,
                    resource_id=resource_id,
                    reason=reason,
                    now=self._clock(),
                )
                await self._records.save_calendar_info(info)
        except CalwatchError as exc:
            logger.error(
                "Could not record orphaned channel %s for user %s: %s",
                channel_id,
                user_id,
                sanitize_error(exc),
            )

    async def validate_push(self, user_id: str, channel_id: str, resource_id: str) -> PushVerdict:
        """Classify an inbound push; stale channels are stopped and recorded."""
        if channel_id in self._pending_channels:
            logger.debug("Push on pending channel %s for user %s ignored", channel_id, user_id)
            return PushVerdict.pending

        info = await self._records.load_calendar_info(user_id)
        subscription = info.subscription
        if subscription is not None and subscription.is_active:
            if subscription.channel_id == channel_id:
                return PushVerdict.current

        if channel_id in self._retiring_channels:
            return PushVerdict.stale

        logger.info("Push for user %s on stale channel %s; stopping it", user_id, channel_id)
        try:
            credential = await self._credentials.get(user_id)
        except CredentialNotFoundError:
            logger.info("User %s is not connected; cannot stop channel %s", user_id, channel_id)
            return PushVerdict.stale

        try:
            await self._provider.stop_watch(credential, channel_id, resource_id)
        except CalwatchError as exc:
            logger.warning(
                "Failed to stop stale channel %s for user %s: %s",
                channel_id,
                user_id,
                sanitize_error(exc),
            )
            self._metrics.record_watch("stop_stale", "error")
            reason = "stale_push_stop_failed"
        else:
            self._metrics.record_watch("stop_stale", "success")
            reason = "stale_push"

        await self._record_orphan(user_id, channel_id, resource_id, reason=reason)
        return PushVerdict.stale

    async def stop(self, user_id: str) -> None:
        """Stop the user's active channel with the provider and mark it stopped."""
        async with self._locks.get(user_id):
            info = await self._records.load_calendar_info(user_id)
            subscription = info.subscription
            if subscription is None or not subscription.is_active:
                return

            try:
                credential = await self._credentials.get(user_id)
                await self._provider.stop_watch(
                    credential, subscription.channel_id, subscription.resource_id
                )
            except CalwatchError as exc:
                logger.warning(
                    "Failed to stop channel %s for user %s: %s",
                    subscription.channel_id,
                    user_id,
                    sanitize_error(exc),
                )
                self._metrics.record_watch("stop", "error")
                info.record_orphan(
                    channel_id=subscription.channel_id,
                    resource_id=subscription.resource_id,
                    reason="stop_failed",
                    now=self._clock(),
                )
            else:
                self._metrics.record_watch("stop", "success")

            info.subscription = subscription.model_copy(update={"state": WatchState.stopped})
            await self._records.save_calendar_info(info)
            logger.info("Stopped watch channel %s for user %s", subscription.channel_id, user_id)
