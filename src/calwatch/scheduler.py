"""Periodic notification and watch-maintenance scheduler.

One task scans every connected user per tick. For each user it runs a
reconciliation pass, fires a one-time notification for every cached event
starting in ``[now + lead, now + lead + period)`` (opened back to where the
previous tick's window closed), and renews the watch channel when it nears
expiry. Failures are contained per user per tick.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from calwatch.core.locks import KeyedLocks
from calwatch.core.logging import user_context
from calwatch.core.metrics import EngineMetrics
from calwatch.core.telemetry import get_tracer, tag_user_span
from calwatch.errors import (
    CalwatchError,
    CredentialNotFoundError,
    ProtocolError,
    TransientError,
    UnauthorizedError,
    sanitize_error,
)
from calwatch.models import Event
from calwatch.reconciler import EventReconciler
from calwatch.sink import (
    NotificationSink,
    build_event_notification,
    build_reconnect_notification,
)
from calwatch.storage.records import UserRecordStore
from calwatch.watch import WatchSubscriptionManager

logger = logging.getLogger(__name__)


@dataclass
class UserTickResult:
    """What one tick did for one user."""

    user_id: str
    notified_event_ids: list[str] = field(default_factory=list)
    watch_action: str | None = None  # "subscribed", "renewed", or None
    error: str | None = None


class NotificationScheduler:
    """Drives notifications and watch renewal for all connected users."""

    def __init__(
        self,
        reconciler: EventReconciler,
        watch_manager: WatchSubscriptionManager,
        records: UserRecordStore,
        sink: NotificationSink,
        *,
        locks: KeyedLocks,
        connect_url: str,
        tick_period: timedelta = timedelta(seconds=60),
        notify_lead: timedelta = timedelta(minutes=10),
        sync_on_tick: bool = True,
        clock: Callable[[], datetime] | None = None,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._watch = watch_manager
        self._records = records
        self._sink = sink
        self._locks = locks
        self._connect_url = connect_url
        self._tick_period = tick_period
        self._notify_lead = notify_lead
        self._sync_on_tick = sync_on_tick
        self._clock = clock or (lambda: datetime.now(UTC))
        self._metrics = metrics or EngineMetrics()
        self._prompted_reconnect: set[str] = set()
        self._covered_until: datetime | None = None
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def eligibility_window(self, now: datetime) -> tuple[datetime, datetime]:
        """Return the half-open start-time window a tick at *now* notifies for.

        The window opens where the previous tick's window closed, so a late
        tick leaves no gap. It never reaches back past *now*.
        """
        start = now + self._notify_lead
        end = start + self._tick_period
        if self._covered_until is not None and self._covered_until < start:
            start = max(self._covered_until, now)
        return start, end

    def due_events(self, events: list[Event], notified: list[str], now: datetime) -> list[Event]:
        start, end = self.eligibility_window(now)
        already = set(notified)
        return [e for e in events if start <= e.start_time < end and e.id not in already]

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> list[UserTickResult]:
        """Run one pass over every connected user."""
        now = now or self._clock()
        started = time.monotonic()
        user_ids = await self._records.connected_users()
        self._metrics.set_connected_users(len(user_ids))

        results = await asyncio.gather(*(self._tick_user_contained(u, now) for u in user_ids))
        _, window_end = self.eligibility_window(now)
        if self._covered_until is None or window_end > self._covered_until:
            self._covered_until = window_end
        self._metrics.observe_tick(time.monotonic() - started)
        logger.debug("Scheduler tick at %s covered %d user(s)", now.isoformat(), len(user_ids))
        return list(results)

    async def _tick_user_contained(self, user_id: str, now: datetime) -> UserTickResult:
        try:
            return await self.tick_user(user_id, now)
        except Exception as exc:
            logger.error("Unexpected failure in tick for user %s", user_id, exc_info=True)
            return UserTickResult(user_id=user_id, error=type(exc).__name__)

    async def tick_user(self, user_id: str, now: datetime) -> UserTickResult:
        result = UserTickResult(user_id=user_id)
        tracer = get_tracer()
        with user_context(user_id), tracer.start_as_current_span("calwatch.tick") as span:
            tag_user_span(span, user_id)
            try:
                if self._sync_on_tick:
                    await self._sync(user_id, result)
                result.notified_event_ids = await self._notify_due(user_id, now)
                result.watch_action = await self._maintain_watch(user_id, now)
            except UnauthorizedError as exc:
                result.error = "unauthorized"
                self._metrics.record_error("unauthorized", "tick")
                logger.warning("Credential for user %s rejected: %s", user_id, sanitize_error(exc))
                await self._prompt_reconnect(user_id)
                return result
            except CredentialNotFoundError:
                result.error = "not_connected"
                logger.warning("User %s is registered but has no stored credential", user_id)
                return result
            except CalwatchError as exc:
                result.error = type(exc).__name__
                self._log_contained(user_id, exc, "tick")
                return result

        if result.error is None:
            self._prompted_reconnect.discard(user_id)
        return result

    async def _sync(self, user_id: str, result: UserTickResult) -> None:
        # A failed pass still lets the tick notify from the previous cache.
        try:
            await self._reconciler.sync(user_id)
        except (TransientError, ProtocolError) as exc:
            result.error = type(exc).__name__
            self._log_contained(user_id, exc, "reconcile")

    def _log_contained(self, user_id: str, exc: CalwatchError, operation: str) -> None:
        self._metrics.record_error(type(exc).__name__, operation)
        if isinstance(exc, TransientError):
            logger.info(
                "Transient failure during %s for user %s: %s",
                operation,
                user_id,
                sanitize_error(exc),
            )
        else:
            logger.error(
                "%s during %s for user %s: %s",
                type(exc).__name__,
                operation,
                user_id,
                sanitize_error(exc),
            )

    async def _notify_due(self, user_id: str, now: datetime) -> list[str]:
        # Mark and persist before sending: delivery is at-most-once.
        async with self._locks.get(user_id):
            cache = await self._records.load_event_cache(user_id)
            due = self.due_events(cache.events, cache.notified_event_ids, now)
            if not due:
                return []
            cache.notified_event_ids.extend(event.id for event in due)
            await self._records.save_event_cache(cache)

        lead_minutes = int(self._notify_lead.total_seconds() // 60)
        sent: list[str] = []
        for event in due:
            try:
                await self._sink.send(
                    user_id, build_event_notification(event, lead_minutes=lead_minutes)
                )
            except CalwatchError as exc:
                self._metrics.record_notification("event", "error")
                logger.error(
                    "Failed to deliver notification for event %s to user %s: %s",
                    event.id,
                    user_id,
                    sanitize_error(exc),
                )
                continue
            self._metrics.record_notification("event", "success")
            sent.append(event.id)
            logger.info("Notified user %s of event %s", user_id, event.id)
        return sent

    async def _maintain_watch(self, user_id: str, now: datetime) -> str | None:
        info = await self._records.load_calendar_info(user_id)
        subscription = info.subscription
        if subscription is None or not subscription.is_active:
            logger.info("User %s has no active watch channel; subscribing", user_id)
            renewed = await self._watch.subscribe(user_id)
            return "subscribed" if renewed is not None else None
        if self._watch.should_renew(subscription, now):
            renewed = await self._watch.renew(user_id)
            return "renewed" if renewed is not None else None
        return None

    async def _prompt_reconnect(self, user_id: str) -> None:
        if user_id in self._prompted_reconnect:
            return
        self._prompted_reconnect.add(user_id)
        try:
            await self._sink.send(user_id, build_reconnect_notification(self._connect_url))
        except CalwatchError as exc:
            self._metrics.record_notification("reconnect", "error")
            logger.error(
                "Failed to send reconnect prompt to user %s: %s", user_id, sanitize_error(exc)
            )
            return
        self._metrics.record_notification("reconnect", "success")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Tick every period until :meth:`stop` is called."""
        period = self._tick_period.total_seconds()
        logger.info("Notification scheduler started (period=%ds)", period)
        while not self._stopping.is_set():
            started = time.monotonic()
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Notification scheduler tick failed: %s", exc, exc_info=True)

            delay = max(0.0, period - (time.monotonic() - started))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except TimeoutError:
                pass
        logger.info("Notification scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self.run(), name="calwatch-scheduler")
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(self._task, timeout=self._tick_period.total_seconds())
            except TimeoutError:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
        self._task = None
