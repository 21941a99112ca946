"""
WebSocket subscription server.

Bridges persistent connections to the same execution pipeline as the HTTP
endpoint. Each operation message is merged with fresh server options
(schema, context) in on_operation() and then run like an HTTP request;
every payload it produces is sent in the protocol's message envelope.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict
from typing import TYPE_CHECKING, Any, Optional

from fastapi import WebSocket, WebSocketDisconnect

from ..core.errors import MalformedRequestError
from ..core.request_parser import NormalizedOperation, get_graphql_parameters
from ..runtime.plugins import DEFAULT_ERROR_MESSAGE
from ..runtime.processor import run_operation
from ..runtime.results import IncrementalResponse, LiveStream, SingleResponse
from .manager import ConnectionInfo, ConnectionRegistry, OperationInfo
from .protocol import (
    CLOSE_INVALID_MESSAGE,
    CLOSE_SUBSCRIBER_EXISTS,
    CLOSE_TOO_MANY_INIT,
    CLOSE_UNAUTHORIZED,
    GQL_COMPLETE,
    GQL_CONNECTION_ACK,
    GQL_CONNECTION_ERROR,
    GQL_CONNECTION_INIT,
    GQL_CONNECTION_KEEP_ALIVE,
    GQL_CONNECTION_TERMINATE,
    GQL_ERROR,
    GQL_PING,
    GQL_PONG,
    GQL_START,
    GQL_STOP,
    GQL_SUBSCRIBE,
    SUPPORTED_PROTOCOLS,
    TRANSPORT_WS_PROTOCOL,
    WS_PROTOCOL,
    data_message_type,
)

if TYPE_CHECKING:
    from ..server import GraphQLServer

logger = logging.getLogger(__name__)


class SubscriptionServer:
    """
    WebSocket endpoint for subscriptions.

    Features:
    - graphql-transport-ws and legacy graphql-ws sub-protocols
    - Queries, mutations, @defer/@stream and subscriptions over one socket
    - Keep-alive messages for legacy clients
    - All running operations stopped when the connection closes
    """

    def __init__(self, server: "GraphQLServer", keep_alive_interval: Optional[float] = None):
        """
        Initialize subscription server.

        Args:
            server: GraphQL server providing schema and pipeline
            keep_alive_interval: Seconds between "ka" messages (graphql-ws only)
        """
        self.server = server
        self.keep_alive_interval = keep_alive_interval
        self.registry = ConnectionRegistry()

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    @staticmethod
    def select_protocol(websocket: WebSocket) -> Optional[str]:
        """
        Pick the sub-protocol from the client's offer.

        Returns:
            Protocol name, WS_PROTOCOL when the client offered none, or None
            when none of the offered protocols is supported
        """
        offered = websocket.scope.get("subprotocols") or []
        if not offered:
            return WS_PROTOCOL
        for protocol in offered:
            if protocol in SUPPORTED_PROTOCOLS:
                return protocol
        return None

    async def handle_connection(self, websocket: WebSocket) -> None:
        """
        Handle a WebSocket connection until it closes.

        Flow:
        1. Negotiate the sub-protocol and accept
        2. Dispatch client messages
        3. Stop every running operation on disconnect
        """
        protocol = self.select_protocol(websocket)
        if protocol is None:
            logger.warning(f"Rejecting WebSocket, unsupported sub-protocols: {websocket.scope.get('subprotocols')}")
            await websocket.close(code=1002)
            return

        offered = websocket.scope.get("subprotocols") or []
        await websocket.accept(subprotocol=protocol if offered else None)

        connection_id = str(uuid.uuid4())
        conn_info = self.registry.connect(connection_id, websocket, protocol)

        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except ValueError:
                    if not await self._reject(conn_info, "Message is not valid JSON"):
                        break
                    continue
                except KeyError:
                    # binary frame
                    if not await self._reject(conn_info, "Message must be a text frame"):
                        break
                    continue

                if not isinstance(message, dict):
                    if not await self._reject(conn_info, "Message must be an object"):
                        break
                    continue

                if not await self._handle_message(connection_id, conn_info, message):
                    break

        except WebSocketDisconnect:
            logger.debug(f"Client {connection_id} disconnected")
        finally:
            await self.registry.disconnect(connection_id)

    async def _handle_message(self, connection_id: str, conn_info: ConnectionInfo, message: dict) -> bool:
        """
        Dispatch one client message.

        Returns:
            False when the connection must be closed
        """
        message_type = message.get("type")
        operation_id = message.get("id")
        transport_ws = conn_info.protocol == TRANSPORT_WS_PROTOCOL

        if message_type == GQL_CONNECTION_INIT:
            if conn_info.initialized and transport_ws:
                await conn_info.websocket.close(code=CLOSE_TOO_MANY_INIT, reason="Too many initialisation requests")
                return False
            conn_info.initialized = True
            conn_info.connection_params = message.get("payload") or {}
            await self._send(conn_info, {"type": GQL_CONNECTION_ACK})
            if not transport_ws and self.keep_alive_interval:
                await self._send(conn_info, {"type": GQL_CONNECTION_KEEP_ALIVE})
                conn_info.keep_alive_task = asyncio.create_task(self._keep_alive(conn_info))
            return True

        if message_type in (GQL_START, GQL_SUBSCRIBE):
            if transport_ws and not conn_info.initialized:
                await conn_info.websocket.close(code=CLOSE_UNAUTHORIZED, reason="Unauthorized")
                return False
            if not operation_id:
                return await self._reject(conn_info, "Operation id is required")

            if self.registry.has_operation(connection_id, operation_id):
                if transport_ws:
                    await conn_info.websocket.close(
                        code=CLOSE_SUBSCRIBER_EXISTS,
                        reason=f"Subscriber for {operation_id} already exists",
                    )
                    return False
                # graphql-ws replaces the running operation
                await self.registry.stop_operation(connection_id, operation_id)

            task = asyncio.create_task(
                self._run_operation(connection_id, conn_info, operation_id, message.get("payload") or {})
            )
            self.registry.add_operation(connection_id, OperationInfo(operation_id, task))
            return True

        if message_type in (GQL_STOP, GQL_COMPLETE):
            if operation_id:
                await self.registry.stop_operation(connection_id, operation_id)
            return True

        if message_type == GQL_CONNECTION_TERMINATE:
            await conn_info.websocket.close()
            return False

        if message_type == GQL_PING:
            pong = {"type": GQL_PONG}
            if message.get("payload") is not None:
                pong["payload"] = message["payload"]
            await self._send(conn_info, pong)
            return True

        if message_type == GQL_PONG:
            return True

        logger.warning(f"Unknown message type: {message_type}")
        if transport_ws:
            await conn_info.websocket.close(code=CLOSE_INVALID_MESSAGE, reason=f"Unexpected message type: {message_type}")
            return False
        await self._send(conn_info, {
            "type": GQL_ERROR,
            "id": operation_id,
            "payload": {"message": f"Unknown message type: {message_type}"},
        })
        return True

    async def _reject(self, conn_info: ConnectionInfo, reason: str) -> bool:
        """Report an invalid message. Returns False when the connection was closed."""
        logger.warning(f"Invalid WebSocket message: {reason}")
        if conn_info.protocol == TRANSPORT_WS_PROTOCOL:
            await conn_info.websocket.close(code=CLOSE_INVALID_MESSAGE, reason=reason)
            return False
        await self._send(conn_info, {"type": GQL_CONNECTION_ERROR, "payload": {"message": reason}})
        return True

    async def _keep_alive(self, conn_info: ConnectionInfo) -> None:
        try:
            while True:
                await asyncio.sleep(self.keep_alive_interval)
                await self._send(conn_info, {"type": GQL_CONNECTION_KEEP_ALIVE})
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Keep-alive stopped: {e}")

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def on_operation(self, message: dict, params: dict[str, Any], websocket: WebSocket) -> dict[str, Any]:
        """
        Build the execution options of one operation message.

        The message parameters are merged with fresh server options, so every
        operation gets its own context.
        """
        return {**params, **(await self.server.get_graphql_options(websocket))}

    async def _run_operation(
        self,
        connection_id: str,
        conn_info: ConnectionInfo,
        operation_id: str,
        payload: dict[str, Any],
    ) -> None:
        operation_info: Optional[OperationInfo] = None
        try:
            try:
                operation = get_graphql_parameters("POST", {}, payload)
            except MalformedRequestError as e:
                await self._send_errors(conn_info, operation_id, [{"message": str(e)}])
                return

            try:
                options = await self.on_operation(payload, asdict(operation), conn_info.websocket)
            except Exception as e:
                logger.error(f"Failed to build options for operation {operation_id}: {e}", exc_info=True)
                await self._send_errors(conn_info, operation_id, [{"message": DEFAULT_ERROR_MESSAGE}])
                return

            result = await run_operation(
                NormalizedOperation(
                    query=options["query"],
                    operation_name=options.get("operation_name"),
                    variables=options.get("variables") or {},
                ),
                "POST",
                options["schema"],
                options["primitives"],
                options["context_value"],
            )

            if isinstance(result, SingleResponse):
                if result.status != 200:
                    await self._send_errors(conn_info, operation_id, result.payload["errors"])
                    return
                await self._send_data(conn_info, operation_id, result.payload)
            elif isinstance(result, (IncrementalResponse, LiveStream)):
                operation_info = self._operation_info(conn_info, operation_id)
                if operation_info is not None:
                    operation_info.stream = result.stream
                try:
                    async for chunk in result.stream:
                        await self._send_data(conn_info, operation_id, chunk)
                finally:
                    await result.unsubscribe()
            else:
                raise TypeError(f"Unknown operation result: {type(result).__name__}")

            await self._send(conn_info, {"id": operation_id, "type": GQL_COMPLETE})

        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Operation {operation_id} stopped, connection closed: {e}")
        except asyncio.CancelledError:
            logger.debug(f"Operation {operation_id} cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in operation {operation_id}: {e}", exc_info=True)
        finally:
            if self._operation_info(conn_info, operation_id) is not None:
                self.registry.discard_operation(connection_id, operation_id)

    @staticmethod
    def _operation_info(conn_info: ConnectionInfo, operation_id: str) -> Optional[OperationInfo]:
        operation = conn_info.operations.get(operation_id)
        if operation is not None and operation.task is asyncio.current_task():
            return operation
        return None

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def _send(self, conn_info: ConnectionInfo, message: dict[str, Any]) -> None:
        await conn_info.websocket.send_json(message)

    async def _send_data(self, conn_info: ConnectionInfo, operation_id: str, payload: dict[str, Any]) -> None:
        await self._send(conn_info, {
            "id": operation_id,
            "type": data_message_type(conn_info.protocol),
            "payload": payload,
        })

    async def _send_errors(self, conn_info: ConnectionInfo, operation_id: str, errors: list[dict[str, Any]]) -> None:
        """
        Report an operation that could not run.

        graphql-transport-ws sends an "error" message (which ends the
        operation); graphql-ws sends the errors as data followed by "complete".
        """
        if conn_info.protocol == TRANSPORT_WS_PROTOCOL:
            await self._send(conn_info, {"id": operation_id, "type": GQL_ERROR, "payload": errors})
            return
        await self._send_data(conn_info, operation_id, {"errors": errors})
        await self._send(conn_info, {"id": operation_id, "type": GQL_COMPLETE})
