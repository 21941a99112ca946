"""
Messaging module - event sources for subscriptions.

Provides:
- InMemoryPubSub: single process Pub/Sub on asyncio queues
- RedisPubSub: Redis channels shared between processes

Usage:
    from gqlgate.messaging import InMemoryPubSub

    pubsub = InMemoryPubSub()

    # Subscription resolver
    async def subscribe_camera(root, info):
        return pubsub.subscribe("camera.updated")

    # Mutation resolver
    await pubsub.publish("camera.updated", {"id": 123})
"""

from __future__ import annotations

from .pubsub import InMemoryPubSub, RedisPubSub, Subscription

__all__ = [
    "InMemoryPubSub",
    "RedisPubSub",
    "Subscription",
]
