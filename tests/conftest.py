"""
Pytest configuration and fixtures for gqlgate tests.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient
from graphql import (
    GraphQLArgument,
    GraphQLField,
    GraphQLInt,
    GraphQLList,
    GraphQLNonNull,
    GraphQLObjectType,
    GraphQLSchema,
    GraphQLString,
)

from gqlgate import ExecutionError, GraphQLServer, GraphQLSettings, InMemoryPubSub, StaticSchemaProvider

INTERNAL_DETAIL = "connection to db-internal:5432 refused"


class ReleaseTracker:
    """Counts how many subscription sources were released."""

    def __init__(self):
        self.released = 0
        self.produced = 0


@pytest.fixture
def tracker():
    return ReleaseTracker()


@pytest.fixture
def pubsub():
    return InMemoryPubSub()


def build_schema(tracker: ReleaseTracker, pubsub: InMemoryPubSub) -> GraphQLSchema:
    """Sample schema covering every transport mode."""

    node_type = GraphQLObjectType(
        "Node",
        lambda: {
            "id": GraphQLField(GraphQLInt, resolve=lambda node, info: node["id"]),
            "child": GraphQLField(node_type, resolve=lambda node, info: {"id": node["id"] + 1}),
        },
    )

    async def resolve_slow(root, info):
        await asyncio.sleep(0)
        return "done"

    async def resolve_blocked(root, info):
        tracker.produced += 1
        try:
            await asyncio.Event().wait()
        finally:
            tracker.released += 1

    def resolve_boom(root, info):
        raise RuntimeError(INTERNAL_DETAIL)

    def resolve_forbidden(root, info):
        raise ExecutionError("Not allowed", code="FORBIDDEN")

    async def resolve_publish(root, info, message):
        return await pubsub.publish("messages", message)

    async def subscribe_counter(root, info, limit=None):
        try:
            value = 0
            while limit is None or value < limit:
                value += 1
                tracker.produced += 1
                yield value
                await asyncio.sleep(0.01)
        finally:
            tracker.released += 1

    def subscribe_messages(root, info):
        return pubsub.subscribe("messages")

    def subscribe_broken(root, info):
        async def source():
            yield 1
            raise RuntimeError(INTERNAL_DETAIL)

        return source()

    return GraphQLSchema(
        query=GraphQLObjectType(
            "Query",
            {
                "version": GraphQLField(GraphQLString, resolve=lambda root, info: "1.0.0"),
                "slow": GraphQLField(GraphQLString, resolve=resolve_slow),
                "blocked": GraphQLField(GraphQLString, resolve=resolve_blocked),
                "items": GraphQLField(GraphQLList(GraphQLInt), resolve=lambda root, info: [1, 2, 3]),
                "boom": GraphQLField(GraphQLString, resolve=resolve_boom),
                "forbidden": GraphQLField(GraphQLString, resolve=resolve_forbidden),
                "viewer": GraphQLField(node_type, resolve=lambda root, info: {"id": 1}),
                "auth": GraphQLField(GraphQLString, resolve=lambda root, info: info.context.get("auth")),
            },
        ),
        mutation=GraphQLObjectType(
            "Mutation",
            {
                "publish": GraphQLField(
                    GraphQLInt,
                    args={"message": GraphQLArgument(GraphQLNonNull(GraphQLString))},
                    resolve=resolve_publish,
                ),
            },
        ),
        subscription=GraphQLObjectType(
            "Subscription",
            {
                "counter": GraphQLField(
                    GraphQLInt,
                    args={"limit": GraphQLArgument(GraphQLInt)},
                    subscribe=subscribe_counter,
                    resolve=lambda value, info, **args: value,
                ),
                "messages": GraphQLField(
                    GraphQLString,
                    subscribe=subscribe_messages,
                    resolve=lambda message, info: message,
                ),
                "broken": GraphQLField(
                    GraphQLInt,
                    subscribe=subscribe_broken,
                    resolve=lambda value, info: value,
                ),
            },
        ),
    )


@pytest.fixture
def schema(tracker, pubsub):
    return build_schema(tracker, pubsub)


@pytest.fixture
def settings():
    return GraphQLSettings(max_upload_size="1kb", keep_alive_interval=None)


@pytest.fixture
def server(schema, settings):
    return GraphQLServer(StaticSchemaProvider(schema), settings)


@pytest.fixture
def app(server):
    return server.create_app()


@pytest.fixture
def client(app):
    return TestClient(app)
