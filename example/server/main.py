"""
Minimal server example.

Run:
    uvicorn example.server.main:app --reload

Try:
    curl -X POST localhost:8000/graphql -H 'Content-Type: application/json' \
        -d '{"query": "{ version }"}'

    curl -N -X POST localhost:8000/graphql -H 'Content-Type: application/json' \
        -d '{"query": "{ version ... @defer { report } }"}'

    curl -N 'localhost:8000/graphql?query=subscription%7Bticks(limit:3)%7D'
"""

import asyncio

from graphql import (
    GraphQLArgument,
    GraphQLBoolean,
    GraphQLField,
    GraphQLInt,
    GraphQLNonNull,
    GraphQLObjectType,
    GraphQLSchema,
    GraphQLString,
)

from gqlgate import GraphQLServer, InMemoryPubSub, StaticSchemaProvider

pubsub = InMemoryPubSub()


async def resolve_report(root, info):
    await asyncio.sleep(1)
    return "ready"


async def resolve_send(root, info, text):
    await pubsub.publish("messages", text)
    return True


async def subscribe_ticks(root, info, limit=None):
    tick = 0
    while limit is None or tick < limit:
        tick += 1
        yield tick
        await asyncio.sleep(1)


def subscribe_messages(root, info):
    return pubsub.subscribe("messages")


schema = GraphQLSchema(
    query=GraphQLObjectType(
        "Query",
        {
            "version": GraphQLField(GraphQLString, resolve=lambda root, info: "1.0.0"),
            "report": GraphQLField(GraphQLString, resolve=resolve_report),
        },
    ),
    mutation=GraphQLObjectType(
        "Mutation",
        {
            "send": GraphQLField(
                GraphQLBoolean,
                args={"text": GraphQLArgument(GraphQLNonNull(GraphQLString))},
                resolve=resolve_send,
            ),
        },
    ),
    subscription=GraphQLObjectType(
        "Subscription",
        {
            "ticks": GraphQLField(
                GraphQLInt,
                args={"limit": GraphQLArgument(GraphQLInt)},
                subscribe=subscribe_ticks,
                resolve=lambda tick, info, **args: tick,
            ),
            "messages": GraphQLField(
                GraphQLString,
                subscribe=subscribe_messages,
                resolve=lambda text, info: text,
            ),
        },
    ),
)

server = GraphQLServer(StaticSchemaProvider(schema))
app = server.create_app()
