"""Event cache reconciliation.

:func:`reconcile` is the pure merge of one fetched batch into a cache.
:class:`EventReconciler` runs a full pass for one user (fetch, merge,
persist) under that user's lock.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

from calwatch.core.locks import KeyedLocks
from calwatch.core.logging import user_context
from calwatch.core.metrics import EngineMetrics
from calwatch.core.telemetry import get_tracer, tag_user_span
from calwatch.credentials import CredentialStore
from calwatch.errors import CalwatchError
from calwatch.models import Event, EventCache, RawEvent, to_rfc3339
from calwatch.provider import CalendarProvider
from calwatch.storage.records import UserRecordStore

logger = logging.getLogger(__name__)


def reconcile(cache: EventCache, fetched: Sequence[RawEvent], fetched_at: datetime) -> EventCache:
    """Merge *fetched* into *cache* and return the next cache.

    The input cache is not modified. Applying the same batch twice yields the
    same result.

    - cancelled events are removed (absent ids are a no-op)
    - known ids are replaced in place; a moved start time clears the
      notified flag so the rescheduled event fires again
    - unknown ids are appended
    - events that ended before *fetched_at* are pruned, and
      ``notified_event_ids`` is trimmed to ids still cached
    - ``last_sync_cursor`` becomes *fetched_at*

    Raises:
        ProtocolError: A non-cancelled event is missing its start or end.
    """
    events: list[Event] = [event.model_copy() for event in cache.events]
    positions = {event.id: index for index, event in enumerate(events)}
    notified = list(cache.notified_event_ids)
    removed: set[str] = set()

    for raw in fetched:
        if raw.is_cancelled:
            if raw.id in positions:
                removed.add(raw.id)
            continue

        event = raw.to_event()
        position = positions.get(event.id)
        if position is None:
            positions[event.id] = len(events)
            events.append(event)
            continue

        if event.id in removed:
            # Cancelled earlier in this batch, then re-listed as live.
            removed.discard(event.id)
        if events[position].start_time != event.start_time and event.id in notified:
            notified.remove(event.id)
        events[position] = event

    kept = [e for e in events if e.id not in removed and e.end_time >= fetched_at]
    kept_ids = {e.id for e in kept}

    return EventCache(
        owner_user_id=cache.owner_user_id,
        last_sync_cursor=to_rfc3339(fetched_at),
        last_window_refresh=cache.last_window_refresh,
        events=kept,
        notified_event_ids=[event_id for event_id in notified if event_id in kept_ids],
    )


class EventReconciler:
    """Runs reconciliation passes, at most one at a time per user.

    A pass fetches from the provider, merges with :func:`reconcile`, and
    writes the whole cache back. Any failure abandons the pass and leaves the
    stored cache and cursor as they were.
    """

    def __init__(
        self,
        provider: CalendarProvider,
        credentials: CredentialStore,
        records: UserRecordStore,
        *,
        locks: KeyedLocks | None = None,
        window_refresh_interval: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] | None = None,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._provider = provider
        self._credentials = credentials
        self._records = records
        self.locks = locks or KeyedLocks()
        self._window_refresh_interval = window_refresh_interval
        self._clock = clock or (lambda: datetime.now(UTC))
        self._metrics = metrics or EngineMetrics()

    def _window_refresh_due(self, cache: EventCache, now: datetime) -> bool:
        if cache.last_window_refresh is None:
            return True
        return now - cache.last_window_refresh >= self._window_refresh_interval

    async def sync(self, user_id: str) -> EventCache:
        """Run one reconciliation pass for *user_id* and return the stored cache."""
        tracer = get_tracer()
        async with self.locks.get(user_id):
            with user_context(user_id), tracer.start_as_current_span("calwatch.reconcile") as span:
                tag_user_span(span, user_id)
                mode = "bootstrap"
                try:
                    credential = await self._credentials.get(user_id)
                    cache = await self._records.load_event_cache(user_id)
                    now = self._clock()

                    if cache.last_sync_cursor is None:
                        fetched = await self._provider.list_events(credential, now=now)
                        window_refreshed = True
                    else:
                        mode = "incremental"
                        fetched = []
                        window_refreshed = self._window_refresh_due(cache, now)
                        if window_refreshed:
                            # Events created long ago enter the window without
                            # being modified, so the change feed never lists them.
                            fetched.extend(await self._provider.list_events(credential, now=now))
                        fetched.extend(
                            await self._provider.list_events(
                                credential, now=now, since=cache.last_sync_cursor
                            )
                        )

                    span.set_attribute("calwatch.reconcile.mode", mode)
                    span.set_attribute("calwatch.reconcile.fetched", len(fetched))

                    result = reconcile(cache, fetched, now)
                    if window_refreshed:
                        result.last_window_refresh = now
                    await self._records.save_event_cache(result)
                except CalwatchError:
                    self._metrics.record_reconcile(mode, "error")
                    raise

                self._metrics.record_reconcile(mode, "success")
                logger.info(
                    "Reconciled %d fetched event(s) for user %s (mode=%s, cached=%d)",
                    len(fetched),
                    user_id,
                    mode,
                    len(result.events),
                )
                return result
