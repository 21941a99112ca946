"""
WebSocket sub-protocol message types.

## graphql-ws (Apollo subscriptions-transport-ws)
https://github.com/apollographql/subscriptions-transport-ws/blob/master/PROTOCOL.md

## graphql-transport-ws
https://github.com/enisdenjo/graphql-ws/blob/master/PROTOCOL.md
"""

GRAPHQL_WS = "graphql-ws"
TRANSPORT_WS_PROTOCOL = "graphql-transport-ws"

# Default to Apollo graphql-ws
WS_PROTOCOL = GRAPHQL_WS
SUPPORTED_PROTOCOLS = (TRANSPORT_WS_PROTOCOL, GRAPHQL_WS)

GQL_CONNECTION_INIT = "connection_init"  # Client -> Server
GQL_CONNECTION_ACK = "connection_ack"  # Server -> Client
GQL_CONNECTION_ERROR = "connection_error"  # Server -> Client (graphql-ws)
GQL_CONNECTION_TERMINATE = "connection_terminate"  # Client -> Server (graphql-ws)
GQL_CONNECTION_KEEP_ALIVE = "ka"  # Server -> Client (graphql-ws)

GQL_START = "start"  # Client -> Server (graphql-ws)
GQL_SUBSCRIBE = "subscribe"  # Client -> Server (graphql-transport-ws)
GQL_DATA = "data"  # Server -> Client (graphql-ws)
GQL_NEXT = "next"  # Server -> Client (graphql-transport-ws)
GQL_STOP = "stop"  # Client -> Server (graphql-ws)
GQL_ERROR = "error"  # Server -> Client
GQL_COMPLETE = "complete"  # Server -> Client, also Client -> Server in graphql-transport-ws

GQL_PING = "ping"  # Bidirectional (graphql-transport-ws)
GQL_PONG = "pong"  # Bidirectional (graphql-transport-ws)

# graphql-transport-ws close codes
CLOSE_INVALID_MESSAGE = 4400
CLOSE_UNAUTHORIZED = 4401
CLOSE_INIT_TIMEOUT = 4408
CLOSE_SUBSCRIBER_EXISTS = 4409
CLOSE_TOO_MANY_INIT = 4429


def data_message_type(protocol: str) -> str:
    """Result message type for a protocol."""
    return GQL_NEXT if protocol == TRANSPORT_WS_PROTOCOL else GQL_DATA
