"""Feature flag storage, change feeds and the synchronised flag store."""

from __future__ import annotations

from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.pool import Pool
from redis.asyncio.connection import ConnectionPool

from flag_sync.services.flags.admin import FlagAdminService
from flag_sync.services.flags.feed import (
    ChangeFeed,
    FlagChangeEvent,
    InMemoryChangeFeed,
    RabbitChangeFeed,
    RedisChangeFeed,
)
from flag_sync.services.flags.source import FlagSource, RedisFlagSource, SqlFlagSource
from flag_sync.services.flags.store import FlagStore, build_snapshot
from flag_sync.settings import Settings, settings


def build_change_feed(
    backend: str,
    *,
    redis_pool: ConnectionPool | None = None,
    rabbit_pools: tuple[Pool[AbstractRobustConnection], Pool[AbstractChannel]] | None = None,
    config: Settings = settings,
) -> ChangeFeed:
    """Create the change feed named by ``backend``."""

    if backend == "memory":
        return InMemoryChangeFeed()
    if backend == "redis":
        if redis_pool is None:
            raise ValueError("redis_pool_required")
        return RedisChangeFeed(redis_pool, config.flags_change_topic)
    if backend == "rabbit":
        if rabbit_pools is None:
            raise ValueError("rabbit_pools_required")
        connection_pool, channel_pool = rabbit_pools
        return RabbitChangeFeed(connection_pool, channel_pool, config.flags_exchange_name)
    raise ValueError(f"unknown_feed_backend:{backend}")


def build_flag_store(source: FlagSource, feed: ChangeFeed | None, config: Settings = settings) -> FlagStore:
    """Create a flag store with timings taken from ``config``."""

    skip_events = config.flags_skip_events
    if skip_events is None:
        skip_events = 1 if feed is not None and feed.confirms_subscription else 0
    return FlagStore(
        source,
        feed,
        settle_delay=config.flags_settle_delay,
        debounce_delay=config.flags_debounce_delay,
        resubscribe_delay=config.flags_resubscribe_delay,
        skip_events=skip_events,
        channel_prefix=config.flags_channel_prefix,
    )


__all__ = [
    "ChangeFeed",
    "FlagAdminService",
    "FlagChangeEvent",
    "FlagSource",
    "FlagStore",
    "InMemoryChangeFeed",
    "RabbitChangeFeed",
    "RedisChangeFeed",
    "RedisFlagSource",
    "SqlFlagSource",
    "build_change_feed",
    "build_flag_store",
    "build_snapshot",
]
