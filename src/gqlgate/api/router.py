"""
FastAPI router for the GraphQL endpoint.

Endpoints:
- GET  <graphql_path> - Query (or subscription) from the query string
- POST <graphql_path> - Operation from a JSON, application/graphql or multipart body

Response framing depends on the operation result:

1. SingleResponse - one JSON body with the result's status and headers

2. IncrementalResponse (@defer/@stream) - multipart/mixed:
   ---
   \\r\\nContent-Type: application/json; charset=utf-8\\r\\nContent-Length: 41\\r\\n\\r\\n{...,"hasNext":true}\\r\\n---
   \\r\\nContent-Type: application/json; charset=utf-8\\r\\nContent-Length: 52\\r\\n\\r\\n{...,"hasNext":false}
   \\r\\n-----\\r\\n

3. LiveStream (subscription) - text/event-stream:
   data: {"data":{...}}\\n\\n
"""

from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Any, Optional, Union

import anyio
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from graphql import GraphQLSchema
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from ..core.errors import MalformedRequestError, TransportError
from ..core.request_parser import normalize_request
from ..core.utils import dump_json_bytes
from ..runtime.pipeline import PipelinePrimitives
from ..runtime.processor import process_request
from ..runtime.results import IncrementalResponse, LiveStream, OperationResult, SingleResponse

if TYPE_CHECKING:
    from ..server import GraphQLServer

logger = logging.getLogger(__name__)


# =============================================================================
# Framing
# =============================================================================

MULTIPART_HEADERS = {
    "Connection": "keep-alive",
    "Content-Type": 'multipart/mixed; boundary="-"',
    "Transfer-Encoding": "chunked",
}

EVENT_STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
    "Cache-Control": "no-cache",
}

MULTIPART_PREAMBLE = b"---"
MULTIPART_CLOSING = b"\r\n-----\r\n"


def encode_multipart_part(payload: dict[str, Any]) -> bytes:
    """
    Encode one incremental payload as a multipart part.

    Content-Length is the exact byte length of the JSON body. Parts with
    more data pending end with the boundary marker.
    """
    body = dump_json_bytes(payload)
    lines = [
        b"",
        b"Content-Type: application/json; charset=utf-8",
        f"Content-Length: {len(body)}".encode("ascii"),
        b"",
        body,
    ]
    if payload.get("hasNext"):
        lines.append(MULTIPART_PREAMBLE)
    return b"\r\n".join(lines)


def encode_event(payload: dict[str, Any]) -> bytes:
    """Encode one live payload as a server-sent event."""
    return b"data: " + dump_json_bytes(payload) + b"\n\n"


# =============================================================================
# Streaming response
# =============================================================================

class OperationStreamResponse(Response):
    """
    Streams an IncrementalResponse or LiveStream to the client.

    A disconnect watcher runs next to the writer; whichever finishes first
    cancels the other. The stream is unsubscribed exactly once on every
    exit path: natural end, client disconnect or write failure.
    """

    def __init__(self, result: Union[IncrementalResponse, LiveStream]):
        self.result = result
        self.status_code = 200
        self.background = None
        if isinstance(result, IncrementalResponse):
            self.init_headers(MULTIPART_HEADERS)
        else:
            self.init_headers(EVENT_STREAM_HEADERS)

    @property
    def is_incremental(self) -> bool:
        return isinstance(self.result, IncrementalResponse)

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug(f"Client disconnected: {self.result.stream.label}")
                break

    async def _send(self, send: Send, chunk: bytes, more_body: bool = True) -> None:
        try:
            await send({"type": "http.response.body", "body": chunk, "more_body": more_body})
        except OSError as e:
            raise TransportError(f"Failed to write response: {e}") from e

    async def _stream(self, send: Send) -> None:
        await send({
            "type": "http.response.start",
            "status": self.status_code,
            "headers": self.raw_headers,
        })

        if self.is_incremental:
            await self._send(send, MULTIPART_PREAMBLE)
            async for payload in self.result.stream:
                await self._send(send, encode_multipart_part(payload))
            await self._send(send, MULTIPART_CLOSING)
        else:
            async for payload in self.result.stream:
                await self._send(send, encode_event(payload))

        await self._send(send, b"", more_body=False)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            async with anyio.create_task_group() as task_group:

                async def wrap(func) -> None:
                    await func()
                    task_group.cancel_scope.cancel()

                task_group.start_soon(wrap, partial(self._stream, send))
                await wrap(partial(self._listen_for_disconnect, receive))
        finally:
            with anyio.CancelScope(shield=True):
                await self.result.unsubscribe()


# =============================================================================
# Dispatcher
# =============================================================================

class GraphQLDispatcher:
    """
    Drives one HTTP request through normalization, processing and framing.

    Args:
        max_upload_bytes: Per-file upload limit for multipart requests
    """

    def __init__(self, max_upload_bytes: Optional[int] = None):
        self.max_upload_bytes = max_upload_bytes

    async def handle(
        self,
        request: Request,
        schema: GraphQLSchema,
        primitives: PipelinePrimitives,
    ) -> Response:
        try:
            operation = await normalize_request(request, self.max_upload_bytes)
        except MalformedRequestError as e:
            logger.debug(f"Malformed request: {e}")
            return JSONResponse(
                {"errors": [{"message": str(e)}]},
                status_code=e.status_code,
                headers=dict(e.headers),
            )

        result = await process_request(
            operation,
            request.method,
            schema,
            primitives,
            {"request": request},
        )
        return self.render(result)

    @staticmethod
    def render(result: OperationResult) -> Response:
        """Map an operation result to its framing."""
        if isinstance(result, SingleResponse):
            return JSONResponse(result.payload, status_code=result.status, headers=dict(result.headers))
        if isinstance(result, (IncrementalResponse, LiveStream)):
            return OperationStreamResponse(result)
        raise TypeError(f"Unknown operation result: {type(result).__name__}")


def create_graphql_router(server: "GraphQLServer") -> APIRouter:
    """Create the router serving the GraphQL endpoint of a server."""
    router = APIRouter()

    @router.api_route(
        server.settings.graphql_path,
        methods=["GET", "POST"],
        include_in_schema=False,
    )
    async def graphql_endpoint(request: Request) -> Response:
        schema = await server.get_graphql_schema()
        return await server.dispatcher.handle(request, schema, server.get_enveloped())

    return router
