"""
API module - FastAPI endpoint and response framing.
"""

from __future__ import annotations

from .router import (
    GraphQLDispatcher,
    OperationStreamResponse,
    create_graphql_router,
    encode_event,
    encode_multipart_part,
)

__all__ = [
    "GraphQLDispatcher",
    "OperationStreamResponse",
    "create_graphql_router",
    "encode_multipart_part",
    "encode_event",
]
