"""Registry of persistent subscription connections and their running operations"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import WebSocket

from ..runtime.results import OperationStream

logger = logging.getLogger(__name__)


@dataclass
class OperationInfo:
    """One running operation of a connection."""
    operation_id: str
    task: asyncio.Task
    stream: Optional[OperationStream] = None


@dataclass
class ConnectionInfo:
    """Information about a WebSocket connection."""
    websocket: WebSocket
    protocol: str
    operations: Dict[str, OperationInfo] = field(default_factory=dict)  # operation id -> OperationInfo
    initialized: bool = False
    connection_params: Optional[dict[str, Any]] = None
    keep_alive_task: Optional[asyncio.Task] = None


class ConnectionRegistry:
    """
    Keeps connections keyed by connection id.

    Manages:
    - Connection lifecycle
    - Operations running on each connection
    - Release of every operation stream on teardown
    """

    def __init__(self):
        self._connections: Dict[str, ConnectionInfo] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def get(self, connection_id: str) -> Optional[ConnectionInfo]:
        return self._connections.get(connection_id)

    def connect(self, connection_id: str, websocket: WebSocket, protocol: str) -> ConnectionInfo:
        """Register an accepted connection."""
        conn_info = ConnectionInfo(websocket=websocket, protocol=protocol)
        self._connections[connection_id] = conn_info
        logger.info(f"WebSocket connected: {connection_id} ({protocol}), total: {len(self._connections)}")
        return conn_info

    def add_operation(self, connection_id: str, operation: OperationInfo) -> None:
        conn_info = self._connections.get(connection_id)
        if conn_info is None:
            operation.task.cancel()
            return
        conn_info.operations[operation.operation_id] = operation

    def has_operation(self, connection_id: str, operation_id: str) -> bool:
        conn_info = self._connections.get(connection_id)
        return conn_info is not None and operation_id in conn_info.operations

    def discard_operation(self, connection_id: str, operation_id: str) -> None:
        """Forget an operation that finished on its own."""
        conn_info = self._connections.get(connection_id)
        if conn_info is not None:
            conn_info.operations.pop(operation_id, None)

    async def stop_operation(self, connection_id: str, operation_id: str) -> bool:
        """
        Cancel an operation and release its stream.

        Returns:
            True if the operation was running
        """
        conn_info = self._connections.get(connection_id)
        if conn_info is None:
            return False
        operation = conn_info.operations.pop(operation_id, None)
        if operation is None:
            return False

        await self._release(operation)
        logger.debug(f"Operation stopped: {connection_id}/{operation_id}")
        return True

    async def disconnect(self, connection_id: str) -> None:
        """Unregister a connection, stopping all of its operations."""
        conn_info = self._connections.pop(connection_id, None)
        if conn_info is None:
            return

        if conn_info.keep_alive_task is not None:
            conn_info.keep_alive_task.cancel()

        operations = list(conn_info.operations.values())
        conn_info.operations.clear()
        for operation in operations:
            operation.task.cancel()
        for operation in operations:
            await self._release(operation)

        logger.info(
            f"WebSocket disconnected: {connection_id}, "
            f"stopped {len(operations)} operation(s), total: {len(self._connections)}"
        )

    async def shutdown(self) -> None:
        """Disconnect every registered connection."""
        for connection_id in list(self._connections):
            await self.disconnect(connection_id)

    @staticmethod
    async def _release(operation: OperationInfo) -> None:
        # the task must be finished before its stream is closed; a cancelled
        # task still releases its stream from its own finally block
        task = operation.task
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                if not task.done():
                    raise
            except Exception as e:
                logger.error(f"Operation {operation.operation_id} failed while stopping: {e}", exc_info=True)
        if operation.stream is not None:
            await operation.stream.unsubscribe()
