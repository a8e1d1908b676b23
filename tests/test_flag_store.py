import asyncio
from typing import Any, Callable

import anyio
import pytest

from flag_sync.services.flags import FlagChangeEvent, FlagStore, InMemoryChangeFeed, build_snapshot

DEBOUNCE = 0.05


class FakeFlagSource:
    """Flag source returning canned rows, optionally blocking or failing."""

    def __init__(self, rows: list[Any] | None = None) -> None:
        self.rows: list[Any] = rows if rows is not None else []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.calls = 0

    async def fetch_rows(self) -> list[Any]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.rows)


class FailingFeed(InMemoryChangeFeed):
    async def subscribe(self, channel_name, callback, on_error=None):  # type: ignore[override]
        raise ConnectionError("realtime unavailable")


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


def _store(source: FakeFlagSource, feed: InMemoryChangeFeed | None = None, **kwargs: Any) -> FlagStore:
    kwargs.setdefault("settle_delay", 0)
    kwargs.setdefault("debounce_delay", DEBOUNCE)
    return FlagStore(source, feed, **kwargs)


def test_build_snapshot_drops_malformed_rows() -> None:
    rows = [
        {"name": "ok", "enabled": False},
        {"name": "", "enabled": True},
        {"name": 3, "enabled": True},
        {"name": "numeric", "enabled": 1},
        {"name": "text", "enabled": "true"},
        {"name": "missing"},
        "garbage",
        None,
        {"name": "beta_marketplace", "enabled": True},
    ]
    assert build_snapshot(rows) == {"ok": False, "beta_marketplace": True}


@pytest.mark.anyio
async def test_marketplace_flag_follows_remote_changes() -> None:
    source = FakeFlagSource([{"name": "beta_marketplace", "enabled": True}])
    feed = InMemoryChangeFeed(confirm_subscriptions=True)
    store = _store(source, feed)

    await store.start()
    assert store.is_enabled("beta_marketplace") is True
    assert store.is_enabled("unknown_flag") is False

    await store.wait_until_subscribed(timeout=1.0)
    source.rows = [{"name": "beta_marketplace", "enabled": False}]
    await feed.publish(FlagChangeEvent(event="UPDATE", name="beta_marketplace"))

    await eventually(lambda: store.is_enabled("beta_marketplace") is False)
    assert source.calls == 2
    await store.dispose()


@pytest.mark.anyio
async def test_is_enabled_fails_closed_while_loading() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    source.gate = asyncio.Event()
    store = _store(source)
    assert store.loading is True
    assert store.is_enabled("a") is False

    starting = asyncio.create_task(store.start())
    await eventually(lambda: source.calls == 1)
    assert store.loading is True
    assert store.is_enabled("a") is False

    source.gate.set()
    await starting
    assert store.loading is False
    assert store.is_enabled("a") is True
    await store.dispose()


@pytest.mark.anyio
async def test_is_enabled_never_raises_on_odd_names() -> None:
    store = _store(FakeFlagSource([{"name": "a", "enabled": True}]))
    await store.start()
    assert store.is_enabled(["a"]) is False  # type: ignore[arg-type]
    assert store.is_enabled(None) is False  # type: ignore[arg-type]
    await store.dispose()


@pytest.mark.anyio
async def test_empty_refresh_keeps_previous_snapshot() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    store = _store(source)
    await store.start()
    snapshot = store.get_snapshot()

    source.rows = []
    await store.refetch()

    assert store.flags == {"a": True}
    assert store.get_snapshot() is snapshot
    assert store.error is None
    await store.dispose()


@pytest.mark.anyio
async def test_empty_initial_load_is_accepted() -> None:
    store = _store(FakeFlagSource([]))
    await store.start()
    assert store.flags == {}
    assert store.loading is False
    assert store.error is None
    await store.dispose()


@pytest.mark.anyio
async def test_identical_refresh_keeps_snapshot_object() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}, {"name": "b", "enabled": False}])
    store = _store(source)
    await store.start()
    replaced: list[Any] = []
    store.subscribe(replaced.append)
    snapshot = store.get_snapshot()

    source.rows = [{"name": "b", "enabled": False}, {"name": "a", "enabled": True}]
    await store.refetch()
    await store.refetch()

    assert store.get_snapshot() is snapshot
    assert replaced == []
    await store.dispose()


@pytest.mark.anyio
async def test_changed_refresh_replaces_snapshot_and_notifies() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    store = _store(source)
    await store.start()
    replaced: list[Any] = []
    unsubscribe = store.subscribe(replaced.append)
    snapshot = store.get_snapshot()

    source.rows = [{"name": "a", "enabled": True}, {"name": "b", "enabled": True}]
    await store.refetch()
    assert store.get_snapshot() is not snapshot
    assert store.flags == {"a": True, "b": True}
    assert replaced == [{"a": True, "b": True}]

    # A key disappearing is a change as well
    unsubscribe()
    source.rows = [{"name": "b", "enabled": True}]
    await store.refetch()
    assert store.flags == {"b": True}
    assert store.is_enabled("a") is False
    assert len(replaced) == 1
    await store.dispose()


@pytest.mark.anyio
async def test_failing_listener_does_not_break_the_store() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": False}])
    store = _store(source)
    await store.start()

    def broken(_: Any) -> None:
        raise RuntimeError("listener exploded")

    store.subscribe(broken)
    source.rows = [{"name": "a", "enabled": True}]
    await store.refetch()
    assert store.is_enabled("a") is True
    await store.dispose()


@pytest.mark.anyio
async def test_initial_failure_fails_closed() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    source.error = ConnectionError("database unavailable")
    store = _store(source)

    await store.start()
    assert store.error == "database unavailable"
    assert store.loading is False
    assert store.flags == {}
    assert store.is_enabled("a") is False

    source.error = None
    await store.refetch()
    assert store.error is None
    assert store.is_enabled("a") is True
    await store.dispose()


@pytest.mark.anyio
async def test_failure_without_message_uses_default_error() -> None:
    source = FakeFlagSource()
    source.error = RuntimeError()
    store = _store(source)
    await store.start()
    assert store.error == "Failed to load feature flags"
    await store.dispose()


@pytest.mark.anyio
async def test_refresh_failure_keeps_last_good_snapshot() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    store = _store(source)
    await store.start()
    snapshot = store.get_snapshot()

    source.error = TimeoutError("query timed out")
    await store.refetch()

    assert store.error == "query timed out"
    assert store.get_snapshot() is snapshot
    assert store.is_enabled("a") is True
    assert store.loading is False
    await store.dispose()


@pytest.mark.anyio
async def test_refetch_is_skipped_while_a_fetch_is_in_flight() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    store = _store(source)
    await store.start()

    source.gate = asyncio.Event()
    pending = asyncio.create_task(store.refetch())
    await eventually(lambda: source.calls == 2)

    await store.refetch()
    assert source.calls == 2

    source.gate.set()
    await pending
    await store.dispose()


@pytest.mark.anyio
async def test_first_notification_is_discarded() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    feed = InMemoryChangeFeed()
    store = _store(source, feed)
    await store.start()
    await store.wait_until_subscribed(timeout=1.0)

    await feed.publish(FlagChangeEvent())
    await asyncio.sleep(DEBOUNCE * 4)
    assert source.calls == 1

    await feed.publish(FlagChangeEvent())
    await eventually(lambda: source.calls == 2)
    await store.dispose()


@pytest.mark.anyio
async def test_skip_count_is_configurable() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    feed = InMemoryChangeFeed()

    eager = _store(source, feed, skip_events=0)
    await eager.start()
    await eager.wait_until_subscribed(timeout=1.0)
    await feed.publish(FlagChangeEvent())
    await eventually(lambda: source.calls == 2)
    await eager.dispose()

    source.calls = 0
    patient = _store(source, feed, skip_events=2)
    await patient.start()
    await patient.wait_until_subscribed(timeout=1.0)
    await feed.publish(FlagChangeEvent())
    await feed.publish(FlagChangeEvent())
    await asyncio.sleep(DEBOUNCE * 4)
    assert source.calls == 1

    await feed.publish(FlagChangeEvent())
    await eventually(lambda: source.calls == 2)
    await patient.dispose()


def test_negative_skip_count_is_rejected() -> None:
    with pytest.raises(ValueError):
        FlagStore(FakeFlagSource(), skip_events=-1)


@pytest.mark.anyio
async def test_notification_burst_triggers_a_single_refetch() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    feed = InMemoryChangeFeed()
    store = _store(source, feed, skip_events=0)
    await store.start()
    await store.wait_until_subscribed(timeout=1.0)

    source.rows = [{"name": "a", "enabled": False}]
    for _ in range(10):
        await feed.publish(FlagChangeEvent())
        await asyncio.sleep(0.002)

    await eventually(lambda: source.calls == 2)
    await asyncio.sleep(DEBOUNCE * 4)
    assert source.calls == 2
    assert store.is_enabled("a") is False
    await store.dispose()


@pytest.mark.anyio
async def test_subscription_opens_only_after_initial_fetch() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    source.gate = asyncio.Event()
    feed = InMemoryChangeFeed()
    store = _store(source, feed)

    starting = asyncio.create_task(store.start())
    await asyncio.sleep(0.02)
    assert feed.channel_names == []

    source.gate.set()
    await starting
    await store.wait_until_subscribed(timeout=1.0)
    assert len(feed.channel_names) == 1
    await store.dispose()


@pytest.mark.anyio
async def test_subscription_waits_for_settling_delay() -> None:
    feed = InMemoryChangeFeed()
    store = _store(FakeFlagSource([{"name": "a", "enabled": True}]), feed, settle_delay=0.1)

    await store.start()
    assert feed.channel_names == []
    assert store.subscription is None

    await store.wait_until_subscribed(timeout=1.0)
    assert feed.channel_names == [store.subscription.channel_name]
    await store.dispose()


@pytest.mark.anyio
async def test_each_store_gets_its_own_channel() -> None:
    feed = InMemoryChangeFeed()
    first = _store(FakeFlagSource(), feed, channel_prefix="feature-flags-changes")
    second = _store(FakeFlagSource(), feed, channel_prefix="feature-flags-changes")

    async with first, second:
        await first.wait_until_subscribed(timeout=1.0)
        await second.wait_until_subscribed(timeout=1.0)
        names = feed.channel_names
        assert len(names) == 2
        assert names[0] != names[1]
        assert all(name.startswith("feature-flags-changes-") for name in names)

    assert feed.channel_names == []


@pytest.mark.anyio
async def test_dispose_cancels_pending_refresh() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    feed = InMemoryChangeFeed()
    store = _store(source, feed, skip_events=0)
    await store.start()
    await store.wait_until_subscribed(timeout=1.0)

    await feed.publish(FlagChangeEvent())
    await asyncio.sleep(DEBOUNCE / 5)
    await store.dispose()
    await asyncio.sleep(DEBOUNCE * 3)

    assert source.calls == 1
    assert store.subscription is None
    assert feed.channel_names == []


@pytest.mark.anyio
async def test_dispose_before_subscription_opens() -> None:
    feed = InMemoryChangeFeed()
    store = _store(FakeFlagSource(), feed, settle_delay=0.05)
    await store.start()
    await store.dispose()
    await asyncio.sleep(0.1)
    assert feed.channel_names == []


@pytest.mark.anyio
async def test_fetch_resolving_after_dispose_is_ignored() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    store = _store(source)
    await store.start()
    replaced: list[Any] = []
    store.subscribe(replaced.append)

    source.gate = asyncio.Event()
    source.rows = [{"name": "b", "enabled": True}]
    pending = asyncio.create_task(store.refetch())
    await eventually(lambda: source.calls == 2)

    await store.dispose()
    source.gate.set()
    await pending

    assert store.flags == {}
    assert replaced == []
    assert store.error is None


@pytest.mark.anyio
async def test_subscribe_failure_is_recorded() -> None:
    store = _store(FakeFlagSource([{"name": "a", "enabled": True}]), FailingFeed())
    await store.start()
    await eventually(lambda: store.error is not None)
    assert store.error == "realtime unavailable"
    assert store.subscription is None
    assert store.loading is False
    assert store.is_enabled("a") is True
    await store.dispose()


@pytest.mark.anyio
async def test_lost_subscription_is_recorded_and_reopened() -> None:
    source = FakeFlagSource([{"name": "a", "enabled": True}])
    feed = InMemoryChangeFeed(confirm_subscriptions=True)
    store = _store(source, feed, skip_events=1, resubscribe_delay=0.02)
    await store.start()
    await store.wait_until_subscribed(timeout=1.0)
    first_channel = feed.channel_names[0]

    source.rows = [{"name": "a", "enabled": False}]
    feed.fail(ConnectionError("connection reset"))
    assert store.error == "connection reset"
    assert store.is_enabled("a") is True

    # the reopened subscription refetches once to catch up on missed changes
    await eventually(lambda: store.is_enabled("a") is False)
    assert store.error is None
    assert source.calls == 2
    assert len(feed.channel_names) == 1
    assert feed.channel_names[0] != first_channel
    assert store.subscription is not None

    # the new confirmation was skipped, later changes still refresh
    source.rows = [{"name": "a", "enabled": True}]
    await feed.publish(FlagChangeEvent())
    await eventually(lambda: store.is_enabled("a") is True)
    assert source.calls == 3
    await store.dispose()


@pytest.mark.anyio
async def test_failed_subscribe_is_retried() -> None:
    class FlakyFeed(InMemoryChangeFeed):
        attempts = 0

        async def subscribe(self, channel_name, callback, on_error=None):  # type: ignore[override]
            self.attempts += 1
            if self.attempts == 1:
                raise ConnectionError("realtime unavailable")
            return await super().subscribe(channel_name, callback, on_error)

    feed = FlakyFeed()
    store = _store(FakeFlagSource([{"name": "a", "enabled": True}]), feed, resubscribe_delay=0.02)
    await store.start()
    await store.wait_until_subscribed(timeout=1.0)
    assert feed.attempts == 2
    assert store.subscription is not None
    await store.dispose()
    assert feed.channel_names == []


@pytest.mark.anyio
async def test_start_twice_is_rejected() -> None:
    store = _store(FakeFlagSource())
    await store.start()
    with pytest.raises(RuntimeError):
        await store.start()
    await store.dispose()
