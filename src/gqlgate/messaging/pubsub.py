"""
Pub/Sub event sources for subscription resolvers.

InMemoryPubSub - asyncio queues, single process
RedisPubSub - Redis channels, shared between processes

Both return async iterators from subscribe(); closing the iterator (which
the server does when the client unsubscribes or disconnects) removes the
listener.

Usage:
    pubsub = InMemoryPubSub()

    async def subscribe_messages(root, info):
        return pubsub.subscribe("messages")

    async def resolve_send(root, info, text):
        await pubsub.publish("messages", {"text": text})
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Set

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class Subscription:
    """
    Async iterator over the events of one channel.

    The listener is registered on creation, so events published after
    subscribe() returns are never missed.
    """

    def __init__(self, pubsub: "InMemoryPubSub", channel: str, max_queue: int = 0):
        self.pubsub = pubsub
        self.channel = channel
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        if self.closed:
            raise StopAsyncIteration
        return await self.queue.get()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.pubsub._remove(self)


class InMemoryPubSub:
    """
    In-process Pub/Sub.

    Usage:
        pubsub = InMemoryPubSub()
        subscription = pubsub.subscribe("camera.updated")
        await pubsub.publish("camera.updated", {"id": 123})
        event = await subscription.__anext__()
        await subscription.aclose()
    """

    def __init__(self, max_queue: int = 0):
        """
        Initialize Pub/Sub.

        Args:
            max_queue: Per-subscriber queue size (0 = unbounded). Events for a
                full queue are dropped with a warning.
        """
        self.max_queue = max_queue
        self._subscriptions: Dict[str, Set[Subscription]] = {}

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, ()))

    def subscribe(self, channel: str) -> Subscription:
        """Register a listener for channel."""
        subscription = Subscription(self, channel, self.max_queue)
        self._subscriptions.setdefault(channel, set()).add(subscription)
        logger.debug(f"Subscribed to {channel}: {self.subscriber_count(channel)} subscriber(s)")
        return subscription

    async def publish(self, channel: str, data: Any) -> int:
        """
        Publish event to channel.

        Returns:
            Number of subscribers that received the event
        """
        count = 0
        for subscription in list(self._subscriptions.get(channel, ())):
            try:
                subscription.queue.put_nowait(data)
                count += 1
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full on {channel}, event dropped")
        logger.debug(f"Published to {channel}: {count} subscribers received")
        return count

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.channel)
        if not subscriptions:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.channel]
        logger.debug(f"Unsubscribed from {subscription.channel}")


class RedisPubSub:
    """
    Redis Pub/Sub.

    Usage:
        pubsub = RedisPubSub("redis://redis:6379")

        await pubsub.publish("camera.updated", {"id": 123})

        async for event in pubsub.subscribe("camera.updated"):
            ...
    """

    def __init__(self, redis_url: Optional[str] = None, client: Optional[aioredis.Redis] = None):
        """
        Initialize Pub/Sub.

        Args:
            redis_url: Redis connection URL (used when no client is given)
            client: Existing redis.asyncio client
        """
        if redis_url is None and client is None:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self._redis = client

    async def _client(self) -> aioredis.Redis:
        if self._redis is None:
            logger.info(f"Connecting to Redis: {self.redis_url}")
            self._redis = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def publish(self, channel: str, data: Any) -> int:
        """
        Publish event to channel.

        Args:
            channel: Channel name
            data: Event data (will be JSON serialized)

        Returns:
            Number of subscribers that received the message
        """
        client = await self._client()
        payload = json.dumps(data, ensure_ascii=False)
        count = await client.publish(channel, payload)
        logger.debug(f"Published to {channel}: {count} subscribers received")
        return count

    async def subscribe(self, channel: str) -> AsyncIterator[Any]:
        """Yield decoded events of channel until the iterator is closed."""
        client = await self._client()
        pubsub = client.pubsub()
        await pubsub.subscribe(channel)
        logger.debug(f"Subscribed to Redis channel: {channel}")

        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not message or message["type"] != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON in message from {channel}: {message['data'][:100]}")
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            logger.debug(f"Unsubscribed from Redis channel: {channel}")

    async def close(self) -> None:
        """Close the Redis connection"""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
