"""
WebSocket module for subscriptions over persistent connections.

Provides:
- ConnectionRegistry: Connection and running operation management
- SubscriptionServer: graphql-ws / graphql-transport-ws endpoint
"""

from __future__ import annotations

from .manager import ConnectionInfo, ConnectionRegistry, OperationInfo
from .protocol import GRAPHQL_WS, SUPPORTED_PROTOCOLS, TRANSPORT_WS_PROTOCOL
from .router import SubscriptionServer

__all__ = [
    # Manager
    "ConnectionRegistry",
    "ConnectionInfo",
    "OperationInfo",
    # Protocol
    "GRAPHQL_WS",
    "TRANSPORT_WS_PROTOCOL",
    "SUPPORTED_PROTOCOLS",
    # Server
    "SubscriptionServer",
]
