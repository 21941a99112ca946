"""
Schema provider contract.

The server never builds a schema itself; it asks a provider for the current
executable schema on every request.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from graphql import GraphQLSchema


@runtime_checkable
class SchemaProvider(Protocol):
    """Anything with an async load() returning the executable schema."""

    async def load(self) -> GraphQLSchema:
        ...


class StaticSchemaProvider:
    """Provider serving one schema built up front."""

    def __init__(self, schema: GraphQLSchema):
        self.schema = schema

    async def load(self) -> GraphQLSchema:
        return self.schema
