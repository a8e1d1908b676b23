"""Push-notification transports for feature flag change events.

A change feed delivers opaque "something changed" events to subscribers.
Subscribers never apply the event as a delta; they re-read the flag table.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from aio_pika import ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue, AbstractRobustConnection
from aio_pika.pool import Pool
from loguru import logger
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.asyncio.connection import ConnectionPool


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class FlagChangeEvent:
    """A single change notification for the flag table."""

    event: str = "UPDATE"
    name: str | None = None
    timestamp: str = field(default_factory=_now)

    def to_json(self) -> bytes:
        return json.dumps(asdict(self)).encode("utf-8")

    @classmethod
    def from_payload(cls, payload: Any) -> "FlagChangeEvent":
        """Decode a transport payload, tolerating anything that is not our JSON."""

        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")
        try:
            data = json.loads(payload) if isinstance(payload, str) else payload
        except ValueError:
            return cls(event="UNKNOWN")
        if not isinstance(data, dict):
            return cls(event="UNKNOWN")
        name = data.get("name")
        return cls(
            event=str(data.get("event") or "UNKNOWN"),
            name=name if isinstance(name, str) else None,
            timestamp=str(data.get("timestamp") or _now()),
        )


ChangeCallback = Callable[[FlagChangeEvent], None]
ErrorCallback = Callable[[Exception], None]


class Subscription(Protocol):
    channel_name: str

    async def close(self) -> None:
        ...


class ChangeFeed(Protocol):
    """Transport delivering flag change events to subscribers."""

    # Whether the transport emits a confirmation event right after subscribing
    confirms_subscription: bool

    async def subscribe(
        self,
        channel_name: str,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Deliver events to ``callback``; ``on_error`` fires once if the subscription dies."""
        ...

    async def publish(self, event: FlagChangeEvent) -> None:
        ...


# region: In-memory -----------------------------------------------------------------


class _InMemorySubscription:
    def __init__(self, feed: "InMemoryChangeFeed", channel_name: str) -> None:
        self._feed = feed
        self.channel_name = channel_name

    async def close(self) -> None:
        self._feed._unsubscribe(self.channel_name)


class InMemoryChangeFeed:
    """Process-local fan-out of change events keyed by channel identifier."""

    def __init__(self, confirm_subscriptions: bool = False) -> None:
        self.confirms_subscription = confirm_subscriptions
        self._subscribers: dict[str, ChangeCallback] = {}
        self._error_callbacks: dict[str, ErrorCallback] = {}

    @property
    def channel_names(self) -> list[str]:
        return list(self._subscribers)

    async def subscribe(
        self,
        channel_name: str,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> _InMemorySubscription:
        if channel_name in self._subscribers:
            raise ValueError("channel_already_subscribed")
        self._subscribers[channel_name] = callback
        if on_error is not None:
            self._error_callbacks[channel_name] = on_error
        if self.confirms_subscription:
            callback(FlagChangeEvent(event="SUBSCRIBE"))
        return _InMemorySubscription(self, channel_name)

    async def publish(self, event: FlagChangeEvent) -> None:
        for callback in list(self._subscribers.values()):
            callback(event)

    def fail(self, exc: Exception) -> None:
        """Drop every subscription and report ``exc`` to its error callback."""

        channel_names = list(self._subscribers)
        for channel_name in channel_names:
            on_error = self._error_callbacks.get(channel_name)
            self._unsubscribe(channel_name)
            if on_error is not None:
                on_error(exc)

    def _unsubscribe(self, channel_name: str) -> None:
        self._subscribers.pop(channel_name, None)
        self._error_callbacks.pop(channel_name, None)


# region: Redis ---------------------------------------------------------------------


class _RedisSubscription:
    """One pub/sub connection plus the task reading from it."""

    def __init__(
        self,
        channel_name: str,
        redis: Redis,
        pubsub: PubSub,
        callback: ChangeCallback,
        poll_interval: float,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.channel_name = channel_name
        self._redis = redis
        self._pubsub = pubsub
        self._callback = callback
        self._on_error = on_error
        self._poll_interval = poll_interval
        self._reader: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read(), name=self.channel_name)

    async def _read(self) -> None:
        try:
            while True:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=False,
                    timeout=self._poll_interval,
                )
                if message is None:
                    continue
                kind = message.get("type")
                if kind == "subscribe":
                    self._callback(FlagChangeEvent(event="SUBSCRIBE"))
                elif kind == "message":
                    self._callback(FlagChangeEvent.from_payload(message.get("data")))
        except Exception as exc:
            logger.exception("Redis subscription {} stopped reading", self.channel_name)
            if self._on_error is not None:
                self._on_error(exc)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        await self._pubsub.unsubscribe()
        await self._pubsub.aclose()
        await self._redis.aclose()


class RedisChangeFeed:
    """Change feed on top of Redis pub/sub.

    Redis acknowledges every SUBSCRIBE with a confirmation message; it is
    forwarded to the subscriber like any other event.
    """

    confirms_subscription = True

    def __init__(
        self,
        redis_pool: ConnectionPool,
        topic: str,
        poll_interval: float = 1.0,
    ) -> None:
        self._pool = redis_pool
        self._topic = topic
        self._poll_interval = poll_interval

    async def subscribe(
        self,
        channel_name: str,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> _RedisSubscription:
        redis = Redis(connection_pool=self._pool)
        pubsub = redis.pubsub()
        await pubsub.subscribe(self._topic)
        subscription = _RedisSubscription(channel_name, redis, pubsub, callback, self._poll_interval, on_error)
        subscription.start()
        logger.debug("Subscribed {} to redis topic {}", channel_name, self._topic)
        return subscription

    async def publish(self, event: FlagChangeEvent) -> None:
        redis = Redis(connection_pool=self._pool)
        try:
            await redis.publish(self._topic, event.to_json())
        finally:
            await redis.aclose()


# region: RabbitMQ ------------------------------------------------------------------


class _RabbitSubscription:
    def __init__(
        self,
        channel_name: str,
        channel: AbstractChannel,
        queue: AbstractQueue,
        callback: ChangeCallback,
    ) -> None:
        self.channel_name = channel_name
        self._channel = channel
        self._queue = queue
        self._callback = callback
        self._consumer_tag: str | None = None

    async def start(self) -> None:
        self._consumer_tag = await self._queue.consume(self._on_message)

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        async with message.process():
            self._callback(FlagChangeEvent.from_payload(message.body))

    async def close(self) -> None:
        if self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
            self._consumer_tag = None
        await self._channel.close()


class RabbitChangeFeed:
    """Change feed on a RabbitMQ fanout exchange.

    Every subscription owns an exclusive auto-delete queue named after its
    channel identifier, so instances never share deliveries.
    """

    confirms_subscription = False

    def __init__(
        self,
        connection_pool: Pool[AbstractRobustConnection],
        channel_pool: Pool[AbstractChannel],
        exchange_name: str,
    ) -> None:
        self._connection_pool = connection_pool
        self._channel_pool = channel_pool
        self._exchange_name = exchange_name

    async def subscribe(
        self,
        channel_name: str,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> _RabbitSubscription:
        # Robust connections re-establish the channel and its consumer themselves
        async with self._connection_pool.acquire() as connection:
            channel = await connection.channel()
        exchange = await channel.declare_exchange(self._exchange_name, ExchangeType.FANOUT, auto_delete=False)
        queue = await channel.declare_queue(channel_name, exclusive=True, auto_delete=True)
        await queue.bind(exchange)
        subscription = _RabbitSubscription(channel_name, channel, queue, callback)
        await subscription.start()
        logger.debug("Subscribed {} to exchange {}", channel_name, self._exchange_name)
        return subscription

    async def publish(self, event: FlagChangeEvent) -> None:
        message = Message(body=event.to_json(), content_type="application/json", delivery_mode=2)
        async with self._channel_pool.acquire() as channel:
            exchange = await channel.declare_exchange(self._exchange_name, ExchangeType.FANOUT, auto_delete=False)
            await exchange.publish(message, routing_key="")
