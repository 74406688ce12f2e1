"""Calendar sync engine: wires the components together for one process.

The HTTP layer and CLI talk only to :class:`CalendarSyncEngine`. It owns the
shared HTTP client, the key-value store, and the scheduler task.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from calwatch.config import CalwatchConfig
from calwatch.core.locks import KeyedLocks
from calwatch.core.logging import user_context
from calwatch.core.metrics import EngineMetrics
from calwatch.credentials import CredentialStore
from calwatch.errors import CalwatchError, TransientError, sanitize_error
from calwatch.models import Credential, EventCache
from calwatch.provider import CalendarProvider, GoogleCalendarProvider
from calwatch.reconciler import EventReconciler
from calwatch.scheduler import NotificationScheduler, UserTickResult
from calwatch.sink import (
    LoggingSink,
    MattermostSink,
    NotificationSink,
    build_welcome_notification,
)
from calwatch.storage.kv import KVStore, MemoryKVStore
from calwatch.storage.postgres import PostgresKVStore
from calwatch.storage.records import UserRecordStore
from calwatch.watch import PushVerdict, WatchSubscriptionManager

logger = logging.getLogger(__name__)

# Resource states that mean "something changed"; "sync" is the handshake.
_CHANGE_STATES = frozenset({"exists", "not_exists"})


@dataclass(frozen=True)
class PushOutcome:
    """Result of handling one inbound push."""

    verdict: PushVerdict | None
    reconciled: bool = False
    error: str | None = None


class CalendarSyncEngine:
    """Facade over credentials, provider, watch manager, reconciler and scheduler."""

    def __init__(
        self,
        config: CalwatchConfig,
        *,
        kv: KVStore,
        http_client: httpx.AsyncClient,
        sink: NotificationSink,
        provider: CalendarProvider | None = None,
        clock: Callable[[], datetime] | None = None,
        owns_http_client: bool = False,
    ) -> None:
        self.config = config
        self.kv = kv
        self.http_client = http_client
        self.sink = sink
        self._owns_http_client = owns_http_client
        self._clock = clock or (lambda: datetime.now(UTC))
        self.metrics = EngineMetrics()

        scheduler_config = config.scheduler
        self.records = UserRecordStore(kv)
        self.credentials = CredentialStore(
            kv,
            http_client,
            config.oauth,
            expiry_margin=scheduler_config.token_expiry_margin,
            clock=self._clock,
        )
        self.provider = provider or GoogleCalendarProvider(
            http_client,
            self.credentials,
            fetch_window=scheduler_config.fetch_window,
        )
        self.locks = KeyedLocks()
        self.watch = WatchSubscriptionManager(
            self.provider,
            self.credentials,
            self.records,
            callback_base=config.watch_callback_base,
            renewal_margin=scheduler_config.renewal_margin,
            clock=self._clock,
            metrics=self.metrics,
        )
        self.reconciler = EventReconciler(
            self.provider,
            self.credentials,
            self.records,
            locks=self.locks,
            window_refresh_interval=scheduler_config.window_refresh_interval,
            clock=self._clock,
            metrics=self.metrics,
        )
        self.scheduler = NotificationScheduler(
            self.reconciler,
            self.watch,
            self.records,
            sink,
            locks=self.locks,
            connect_url=config.connect_url,
            tick_period=scheduler_config.tick_period,
            notify_lead=scheduler_config.notify_lead,
            sync_on_tick=scheduler_config.sync_on_tick,
            clock=self._clock,
            metrics=self.metrics,
        )

    @classmethod
    async def from_config(cls, config: CalwatchConfig) -> CalendarSyncEngine:
        """Build an engine with the store and sink backends named in *config*."""
        if config.store.backend == "postgres":
            assert config.store.dsn is not None
            kv: KVStore = await PostgresKVStore.connect(config.store.dsn)
        else:
            kv = MemoryKVStore()

        http_client = httpx.AsyncClient(timeout=30.0)
        sink: NotificationSink
        if config.sink.backend == "mattermost":
            assert config.sink.base_url and config.sink.bot_token and config.sink.bot_user_id
            sink = MattermostSink(
                http_client,
                base_url=config.sink.base_url,
                bot_token=config.sink.bot_token,
                bot_user_id=config.sink.bot_user_id,
            )
        else:
            sink = LoggingSink()

        logger.info(
            "Calendar sync engine built (store=%s, sink=%s)",
            config.store.backend,
            config.sink.backend,
        )
        return cls(config, kv=kv, http_client=http_client, sink=sink, owns_http_client=True)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def connect(self, user_id: str, credential: Credential) -> None:
        """Entry point after a successful OAuth code exchange.

        Stores the credential, registers the user, runs a bootstrap fetch,
        subscribes to pushes, and sends the welcome message. The user stays
        registered if a later step fails, so the scheduler retries it.
        """
        with user_context(user_id):
            await self.credentials.put(credential)
            await self.records.add_connected_user(user_id)
            # A reconnect starts from a clean cache and a fresh bootstrap.
            async with self.locks.get(user_id):
                cache = await self.records.load_event_cache(user_id)
                if cache.last_sync_cursor is not None:
                    await self.records.save_event_cache(
                        EventCache(
                            owner_user_id=user_id,
                            notified_event_ids=cache.notified_event_ids,
                        )
                    )

            await self.reconciler.sync(user_id)
            await self.watch.subscribe(user_id)

            try:
                await self.sink.send(user_id, build_welcome_notification())
            except CalwatchError as exc:
                logger.warning(
                    "Failed to send welcome message to user %s: %s", user_id, sanitize_error(exc)
                )
            logger.info("User %s connected to Google Calendar", user_id)

    async def handle_push(
        self, user_id: str, channel_id: str, resource_id: str, resource_state: str
    ) -> PushOutcome:
        """Validate an inbound push and reconcile when it reports a change.

        Never raises: the provider must always get a success response.
        """
        state = resource_state.strip().lower()
        with user_context(user_id):
            try:
                verdict = await self.watch.validate_push(user_id, channel_id, resource_id)
            except CalwatchError as exc:
                logger.error(
                    "Could not validate push for user %s: %s", user_id, sanitize_error(exc)
                )
                return PushOutcome(verdict=None, error=type(exc).__name__)

            if verdict != PushVerdict.current:
                return PushOutcome(verdict=verdict)
            if state not in _CHANGE_STATES:
                logger.debug("Acknowledged %r push for user %s", state, user_id)
                return PushOutcome(verdict=verdict)

            try:
                await self.reconciler.sync(user_id)
            except CalwatchError as exc:
                self.metrics.record_error(type(exc).__name__, "push")
                log = logger.info if isinstance(exc, TransientError) else logger.error
                log("Push reconciliation failed for user %s: %s", user_id, sanitize_error(exc))
                return PushOutcome(verdict=verdict, error=type(exc).__name__)
            return PushOutcome(verdict=verdict, reconciled=True)

    async def disconnect(self, user_id: str) -> None:
        """Stop the watch (best effort) and delete every record for *user_id*."""
        with user_context(user_id):
            try:
                await self.watch.stop(user_id)
            except CalwatchError as exc:
                logger.warning(
                    "Could not stop watch while disconnecting user %s: %s",
                    user_id,
                    sanitize_error(exc),
                )
            async with self.locks.get(user_id):
                await self.records.delete_user(user_id)
                await self.credentials.delete(user_id)
            await self.records.remove_connected_user(user_id)
            logger.info("User %s disconnected from Google Calendar", user_id)

    async def tick(self, now: datetime | None = None) -> list[UserTickResult]:
        return await self.scheduler.tick(now)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.scheduler.start()

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.sink.close()
        await self.kv.close()
        if self._owns_http_client:
            await self.http_client.aclose()
