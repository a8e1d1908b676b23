"""Locally cached, eventually-consistent view of server-side feature flags."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable, Mapping, Sequence

from loguru import logger

from flag_sync.observability import FLAG_FETCHES, FLAG_NOTIFICATIONS, FLAG_SNAPSHOT_SIZE
from flag_sync.services.flags.feed import ChangeFeed, FlagChangeEvent, Subscription
from flag_sync.services.flags.source import FlagSource

SnapshotListener = Callable[[Mapping[str, bool]], None]

DEFAULT_ERROR_MESSAGE = "Failed to load feature flags"
SUBSCRIPTION_ERROR_MESSAGE = "Feature flag subscription failed"


def build_snapshot(rows: Sequence[Any]) -> dict[str, bool]:
    """Turn fetched rows into a ``name -> enabled`` mapping.

    Rows without a non-empty string name or a strictly boolean ``enabled``
    are dropped.
    """

    snapshot: dict[str, bool] = {}
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        name = row.get("name")
        enabled = row.get("enabled")
        if isinstance(name, str) and name and isinstance(enabled, bool):
            snapshot[name] = enabled
        else:
            logger.debug("Dropping malformed feature flag row {!r}", row)
    return snapshot


class FlagStore:
    """Answer "is feature X enabled" from a snapshot kept fresh by a change feed.

    Lifecycle: ``start()`` runs the initial fetch and, after a settling delay,
    opens one subscription on ``feed``. Change events go through an internal
    queue to a single consumer which skips the first ``skip_events`` of every
    subscription and debounces the rest into one refetch per quiet period.
    A subscription reported dead by the feed is reopened after
    ``resubscribe_delay`` and followed by one refetch. ``dispose()`` cancels
    all of it. Instances are independent.
    """

    def __init__(
        self,
        source: FlagSource,
        feed: ChangeFeed | None = None,
        *,
        settle_delay: float = 0.2,
        debounce_delay: float = 0.5,
        resubscribe_delay: float = 1.0,
        skip_events: int = 1,
        channel_prefix: str = "feature-flags-changes",
    ) -> None:
        if skip_events < 0:
            raise ValueError("skip_events must not be negative")
        self._source = source
        self._feed = feed
        self._settle_delay = settle_delay
        self._debounce_delay = debounce_delay
        self._resubscribe_delay = resubscribe_delay
        self._skip_events = skip_events
        self._channel_prefix = channel_prefix

        self._flags: dict[str, bool] = {}
        self._loading = True
        self._error: str | None = None
        self._listeners: list[SnapshotListener] = []

        self._started = False
        self._disposed = False
        self._initial_load_pending = True
        self._in_flight = False

        self._refresh_timer: asyncio.TimerHandle | None = None
        self._settle_task: asyncio.Task[None] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._refresh_tasks: set[asyncio.Task[None]] = set()
        self._subscription: Subscription | None = None
        self._subscribed = asyncio.Event()
        self._events: asyncio.Queue[FlagChangeEvent] = asyncio.Queue()
        self._events_seen = 0

    # region: read API -----------------------------------------------------------

    @property
    def flags(self) -> Mapping[str, bool]:
        return self._flags

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def skip_events(self) -> int:
        return self._skip_events

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    def get_snapshot(self) -> Mapping[str, bool]:
        return self._flags

    def is_enabled(self, name: str) -> bool:
        """Return ``True`` only for a loaded flag set to exactly ``True``."""

        if self._loading or not isinstance(name, str):
            return False
        return self._flags.get(name) is True

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call ``listener`` with every new snapshot; returns the unsubscriber."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # region: lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Run the initial fetch, then schedule opening the subscription."""

        if self._started:
            raise RuntimeError("flag_store_already_started")
        self._started = True
        await self.refetch(is_initial=True)
        if self._disposed or self._feed is None:
            return
        self._settle_task = asyncio.create_task(self._open_subscription())

    async def wait_until_subscribed(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._subscribed.wait(), timeout)

    async def dispose(self) -> None:
        """Cancel pending work, close the subscription and drop the snapshot."""

        if self._disposed:
            return
        self._disposed = True
        self.cancel_scheduled_refresh()

        tasks = [task for task in (self._settle_task, self._consumer_task) if task is not None]
        tasks.extend(self._refresh_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._settle_task = None
        self._consumer_task = None
        self._refresh_tasks.clear()

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                await subscription.close()
            except Exception as exc:
                logger.warning("Failed to close flag subscription {}: {}", subscription.channel_name, exc)
        self._subscribed.clear()
        self._listeners.clear()
        self._flags = {}
        logger.debug("Flag store disposed")

    async def __aenter__(self) -> "FlagStore":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()

    # region: fetching -----------------------------------------------------------

    async def refetch(self, is_initial: bool = False) -> None:
        """Fetch every flag and replace the snapshot when it changed."""

        if self._in_flight and not is_initial:
            FLAG_FETCHES.labels(outcome="skipped").inc()
            logger.debug("Skipping flag refresh, a fetch is already in flight")
            return

        self._in_flight = True
        if is_initial:
            self._loading = True
        try:
            rows = await self._source.fetch_rows()
        except Exception as exc:
            if not self._disposed:
                self._record_failure(exc, is_initial)
        else:
            if not self._disposed:
                self._apply(rows, is_initial)
        finally:
            self._in_flight = False
            if is_initial and not self._disposed:
                self._loading = False
                self._initial_load_pending = False

    def _apply(self, rows: Sequence[Any], is_initial: bool) -> None:
        fresh = build_snapshot(rows)
        self._error = None
        if fresh == self._flags:
            FLAG_FETCHES.labels(outcome="unchanged").inc()
            return
        if not fresh and not is_initial:
            FLAG_FETCHES.labels(outcome="ignored_empty").inc()
            logger.warning("Ignoring empty flag refresh, keeping {} cached flags", len(self._flags))
            return
        FLAG_FETCHES.labels(outcome="replaced").inc()
        self._replace(fresh)

    def _record_failure(self, exc: Exception, is_initial: bool) -> None:
        FLAG_FETCHES.labels(outcome="failed").inc()
        self._error = str(exc) or DEFAULT_ERROR_MESSAGE
        logger.error("Failed to fetch feature flags: {}", self._error)
        if is_initial and self._flags:
            self._replace({})

    def _replace(self, snapshot: dict[str, bool]) -> None:
        self._flags = snapshot
        FLAG_SNAPSHOT_SIZE.set(len(snapshot))
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Flag snapshot listener failed")

    # region: change notifications -----------------------------------------------

    async def _open_subscription(self, delay: float | None = None, resumed: bool = False) -> None:
        await asyncio.sleep(self._settle_delay if delay is None else delay)
        if self._disposed or self._feed is None:
            return
        channel_name = f"{self._channel_prefix}-{uuid.uuid4().hex}"
        self._events = asyncio.Queue()
        self._events_seen = 0
        self._consumer_task = asyncio.create_task(self._consume_changes())
        try:
            subscription = await self._feed.subscribe(
                channel_name,
                self._events.put_nowait,
                self._on_subscription_error,
            )
        except Exception as exc:
            self._error = str(exc) or SUBSCRIPTION_ERROR_MESSAGE
            logger.error("Failed to subscribe {} to flag changes: {}", channel_name, self._error)
            self._consumer_task.cancel()
            self._consumer_task = None
            if not self._disposed:
                self._settle_task = asyncio.create_task(
                    self._open_subscription(self._resubscribe_delay, resumed=True),
                )
            return
        if self._disposed:
            await subscription.close()
            return
        self._subscription = subscription
        self._subscribed.set()
        logger.info("Listening for feature flag changes on {}", channel_name)
        if resumed:
            # Changes made while the subscription was down were never announced
            self.schedule_refresh()

    def _on_subscription_error(self, exc: Exception) -> None:
        if self._disposed:
            return
        FLAG_NOTIFICATIONS.labels(outcome="subscription_lost").inc()
        self._error = str(exc) or SUBSCRIPTION_ERROR_MESSAGE
        logger.error("Lost feature flag subscription: {}", self._error)
        if self._settle_task is not None and not self._settle_task.done():
            return
        self._settle_task = asyncio.create_task(self._resubscribe())

    async def _resubscribe(self) -> None:
        subscription, self._subscription = self._subscription, None
        self._subscribed.clear()
        consumer, self._consumer_task = self._consumer_task, None
        if consumer is not None:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)
        if subscription is not None:
            try:
                await subscription.close()
            except Exception as exc:
                logger.warning("Failed to close flag subscription {}: {}", subscription.channel_name, exc)
        await self._open_subscription(self._resubscribe_delay, resumed=True)

    async def _consume_changes(self) -> None:
        while True:
            event = await self._events.get()
            self._events_seen += 1
            if self._events_seen <= self._skip_events:
                FLAG_NOTIFICATIONS.labels(outcome="skipped").inc()
                logger.debug("Discarding flag change event #{} ({})", self._events_seen, event.event)
                continue
            FLAG_NOTIFICATIONS.labels(outcome="scheduled").inc()
            self.schedule_refresh()

    def schedule_refresh(self) -> None:
        """(Re)start the single-slot debounce timer."""

        self.cancel_scheduled_refresh()
        loop = asyncio.get_running_loop()
        self._refresh_timer = loop.call_later(self._debounce_delay, self._run_scheduled_refresh)

    def cancel_scheduled_refresh(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None

    def _run_scheduled_refresh(self) -> None:
        self._refresh_timer = None
        if self._disposed or self._initial_load_pending or self._in_flight:
            FLAG_NOTIFICATIONS.labels(outcome="dropped").inc()
            return
        task = asyncio.create_task(self.refetch())
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)
