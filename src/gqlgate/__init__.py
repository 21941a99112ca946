"""
gqlgate - GraphQL over HTTP and WebSocket with three transport modes.

One endpoint serves:
- single JSON responses (queries, mutations)
- multipart/mixed incremental responses (@defer / @stream)
- text/event-stream live responses (subscriptions over HTTP)
and a WebSocket endpoint serves graphql-ws / graphql-transport-ws.

Usage:
    from gqlgate import GraphQLServer, StaticSchemaProvider

    server = GraphQLServer(StaticSchemaProvider(schema))
    app = server.create_app()
"""

from __future__ import annotations

from .api import GraphQLDispatcher, OperationStreamResponse, create_graphql_router
from .core import (
    ConfigurationError,
    ExecutionError,
    GQLGateError,
    GraphQLSettings,
    MalformedRequestError,
    NormalizedOperation,
    RequestContext,
    SchemaLoadError,
    SchemaProvider,
    StaticSchemaProvider,
    TransportError,
    UploadLimitError,
    normalize_request,
    parse_size_limit,
)
from .messaging import InMemoryPubSub, RedisPubSub
from .playground import get_playground_html, mount_playground
from .runtime import (
    DepthLimitOptions,
    IncrementalResponse,
    LiveStream,
    OperationResult,
    OperationStream,
    Pipeline,
    PipelineOptions,
    PipelinePrimitives,
    Plugin,
    SingleResponse,
    TelemetryOptions,
    build_pipeline,
    process_request,
)
from .server import GraphQLServer
from .websocket import ConnectionRegistry, SubscriptionServer

__version__ = "0.1.0"

__all__ = [
    # Server
    "GraphQLServer",
    "GraphQLSettings",
    # Schema
    "SchemaProvider",
    "StaticSchemaProvider",
    # Errors
    "GQLGateError",
    "ConfigurationError",
    "SchemaLoadError",
    "MalformedRequestError",
    "UploadLimitError",
    "ExecutionError",
    "TransportError",
    # Request
    "RequestContext",
    "NormalizedOperation",
    "normalize_request",
    "parse_size_limit",
    # Pipeline
    "Pipeline",
    "PipelineOptions",
    "PipelinePrimitives",
    "Plugin",
    "DepthLimitOptions",
    "TelemetryOptions",
    "build_pipeline",
    # Results
    "OperationStream",
    "SingleResponse",
    "IncrementalResponse",
    "LiveStream",
    "OperationResult",
    "process_request",
    # HTTP
    "GraphQLDispatcher",
    "OperationStreamResponse",
    "create_graphql_router",
    # WebSocket
    "SubscriptionServer",
    "ConnectionRegistry",
    # Messaging
    "InMemoryPubSub",
    "RedisPubSub",
    # Playground
    "get_playground_html",
    "mount_playground",
]
