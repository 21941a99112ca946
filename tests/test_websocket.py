"""
Tests for WebSocket subscriptions.

Covers:
- graphql-transport-ws handshake, operations and close codes
- Legacy graphql-ws protocol
- Release of running operations on stop and disconnect
"""

import time

import pytest
from starlette.websockets import WebSocketDisconnect

from gqlgate.websocket.protocol import TRANSPORT_WS_PROTOCOL

SUBSCRIPTIONS = "/subscriptions"


def connect(client, protocol=TRANSPORT_WS_PROTOCOL):
    subprotocols = [protocol] if protocol else None
    return client.websocket_connect(SUBSCRIPTIONS, subprotocols=subprotocols)


def init(websocket):
    websocket.send_json({"type": "connection_init", "payload": {}})
    assert websocket.receive_json() == {"type": "connection_ack"}


# =============================================================================
# graphql-transport-ws Tests
# =============================================================================


class TestTransportWs:
    """Tests for the graphql-transport-ws protocol."""

    def test_subprotocol_accepted(self, client):
        with connect(client) as websocket:
            assert websocket.accepted_subprotocol == TRANSPORT_WS_PROTOCOL

    def test_subscription(self, client, server, tracker):
        with connect(client) as websocket:
            init(websocket)
            websocket.send_json({
                "id": "1",
                "type": "subscribe",
                "payload": {"query": "subscription { counter(limit: 2) }"},
            })

            assert websocket.receive_json() == {"id": "1", "type": "next", "payload": {"data": {"counter": 1}}}
            assert websocket.receive_json() == {"id": "1", "type": "next", "payload": {"data": {"counter": 2}}}
            assert websocket.receive_json() == {"id": "1", "type": "complete"}

        assert tracker.released == 1
        assert len(server.subscription_server.registry) == 0

    def test_query(self, client):
        with connect(client) as websocket:
            init(websocket)
            websocket.send_json({"id": "q", "type": "subscribe", "payload": {"query": "{ version }"}})

            assert websocket.receive_json() == {"id": "q", "type": "next", "payload": {"data": {"version": "1.0.0"}}}
            assert websocket.receive_json() == {"id": "q", "type": "complete"}

    def test_deferred_payloads(self, client):
        with connect(client) as websocket:
            init(websocket)
            websocket.send_json({
                "id": "d",
                "type": "subscribe",
                "payload": {"query": "{ version ... @defer { slow } }"},
            })

            first = websocket.receive_json()
            second = websocket.receive_json()
            assert first["payload"] == {"data": {"version": "1.0.0"}, "hasNext": True}
            assert second["payload"]["hasNext"] is False
            assert websocket.receive_json() == {"id": "d", "type": "complete"}

    def test_complete_stops_operation(self, client, tracker):
        with connect(client) as websocket:
            init(websocket)
            websocket.send_json({"id": "1", "type": "subscribe", "payload": {"query": "subscription { counter }"}})
            assert websocket.receive_json()["payload"] == {"data": {"counter": 1}}

            websocket.send_json({"id": "1", "type": "complete"})
            websocket.send_json({"type": "ping"})
            while websocket.receive_json()["type"] != "pong":
                pass

            time.sleep(0.1)
            assert tracker.released == 1

    def test_disconnect_stops_operation(self, client, server, tracker):
        with connect(client) as websocket:
            init(websocket)
            websocket.send_json({"id": "1", "type": "subscribe", "payload": {"query": "subscription { counter }"}})
            assert websocket.receive_json()["payload"] == {"data": {"counter": 1}}

        time.sleep(0.1)
        assert tracker.released == 1
        assert len(server.subscription_server.registry) == 0

    def test_published_events_then_close(self, client, pubsub):
        events = []
        delivered = 0
        attempt = 0

        with connect(client) as websocket:
            init(websocket)
            websocket.send_json({"id": "sub", "type": "subscribe", "payload": {"query": "subscription { messages }"}})

            # publish until the subscription is listening and two events reached it
            while delivered < 2:
                attempt += 1
                assert attempt < 100
                operation_id = f"pub{attempt}"
                websocket.send_json({
                    "id": operation_id,
                    "type": "subscribe",
                    "payload": {"query": f'mutation {{ publish(message: "{attempt}") }}'},
                })
                while True:
                    message = websocket.receive_json()
                    if message["id"] == "sub":
                        events.append(message["payload"]["data"]["messages"])
                    elif message["type"] == "next":
                        delivered += message["payload"]["data"]["publish"]
                    elif message["type"] == "complete":
                        break

            while len(events) < 2:
                events.append(websocket.receive_json()["payload"]["data"]["messages"])

        assert len(events) == 2
        assert int(events[0]) < int(events[1])
        assert pubsub.subscriber_count("messages") == 0

    def test_validation_error(self, client):
        with connect(client) as websocket:
            init(websocket)
            websocket.send_json({"id": "1", "type": "subscribe", "payload": {"query": "{ unknown }"}})

            message = websocket.receive_json()
            assert message["type"] == "error"
            assert message["id"] == "1"
            assert "unknown" in message["payload"][0]["message"]

    def test_masked_error(self, client):
        with connect(client) as websocket:
            init(websocket)
            websocket.send_json({"id": "1", "type": "subscribe", "payload": {"query": "{ boom }"}})

            message = websocket.receive_json()
            assert message["type"] == "next"
            assert message["payload"]["errors"][0]["message"] == "Unexpected error."

    def test_ping_pong(self, client):
        with connect(client) as websocket:
            websocket.send_json({"type": "ping", "payload": {"at": 1}})
            assert websocket.receive_json() == {"type": "pong", "payload": {"at": 1}}

    def test_subscribe_before_init(self, client):
        with connect(client) as websocket:
            websocket.send_json({"id": "1", "type": "subscribe", "payload": {"query": "{ version }"}})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()
            assert exc_info.value.code == 4401

    def test_duplicate_init(self, client):
        with connect(client) as websocket:
            init(websocket)
            websocket.send_json({"type": "connection_init"})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()
            assert exc_info.value.code == 4429

    def test_duplicate_operation_id(self, client):
        with connect(client) as websocket:
            init(websocket)
            subscribe = {"id": "1", "type": "subscribe", "payload": {"query": "subscription { counter }"}}
            websocket.send_json(subscribe)
            websocket.send_json(subscribe)
            with pytest.raises(WebSocketDisconnect) as exc_info:
                while True:
                    websocket.receive_json()
            assert exc_info.value.code == 4409

    def test_invalid_json(self, client):
        with connect(client) as websocket:
            websocket.send_text("{nope")
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()
            assert exc_info.value.code == 4400

    def test_binary_frame(self, client):
        with connect(client) as websocket:
            websocket.send_bytes(b'{"type": "connection_init"}')
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()
            assert exc_info.value.code == 4400

    def test_invalid_defer_condition(self, client):
        with connect(client) as websocket:
            init(websocket)
            websocket.send_json({
                "id": "1",
                "type": "subscribe",
                "payload": {
                    "query": "query ($d: Boolean) { version ... @defer(if: $d) { slow } }",
                    "variables": {"d": None},
                },
            })

            message = websocket.receive_json()
            assert message["type"] == "next"
            assert "must not be null" in message["payload"]["errors"][0]["message"]
            assert websocket.receive_json() == {"id": "1", "type": "complete"}

    def test_unsupported_subprotocol(self, client):
        with pytest.raises(WebSocketDisconnect):
            with connect(client, protocol="chat"):
                pass


# =============================================================================
# graphql-ws Tests
# =============================================================================


class TestLegacyWs:
    """Tests for the legacy graphql-ws protocol."""

    def test_default_protocol(self, client):
        with connect(client, protocol=None) as websocket:
            assert websocket.accepted_subprotocol is None
            init(websocket)
            websocket.send_json({"id": "1", "type": "start", "payload": {"query": "{ version }"}})

            assert websocket.receive_json() == {"id": "1", "type": "data", "payload": {"data": {"version": "1.0.0"}}}
            assert websocket.receive_json() == {"id": "1", "type": "complete"}

    def test_stop(self, client, tracker):
        with connect(client, protocol="graphql-ws") as websocket:
            init(websocket)
            websocket.send_json({"id": "1", "type": "start", "payload": {"query": "subscription { counter }"}})
            assert websocket.receive_json()["type"] == "data"

            websocket.send_json({"id": "1", "type": "stop"})
            websocket.send_json({"id": "2", "type": "start", "payload": {"query": "{ version }"}})
            while websocket.receive_json() != {"id": "2", "type": "complete"}:
                pass

            time.sleep(0.1)
            assert tracker.released == 1

    def test_errors_are_sent_as_data(self, client):
        with connect(client, protocol=None) as websocket:
            init(websocket)
            websocket.send_json({"id": "1", "type": "start", "payload": {"query": "{ version"}})

            message = websocket.receive_json()
            assert message["type"] == "data"
            assert message["payload"]["errors"][0]["message"].startswith("Syntax Error")
            assert websocket.receive_json() == {"id": "1", "type": "complete"}

    def test_missing_query(self, client):
        with connect(client, protocol=None) as websocket:
            init(websocket)
            websocket.send_json({"id": "1", "type": "start", "payload": {}})

            message = websocket.receive_json()
            assert message["payload"] == {"errors": [{"message": "Must provide query string."}]}

    def test_invalid_json_keeps_connection(self, client):
        with connect(client, protocol=None) as websocket:
            websocket.send_text("{nope")
            assert websocket.receive_json() == {
                "type": "connection_error",
                "payload": {"message": "Message is not valid JSON"},
            }
            init(websocket)

    def test_binary_frame_keeps_connection(self, client):
        with connect(client, protocol=None) as websocket:
            websocket.send_bytes(b'{"type": "connection_init"}')
            assert websocket.receive_json() == {
                "type": "connection_error",
                "payload": {"message": "Message must be a text frame"},
            }
            init(websocket)

    def test_unknown_message_type(self, client):
        with connect(client, protocol=None) as websocket:
            websocket.send_json({"type": "bogus", "id": "1"})
            message = websocket.receive_json()
            assert message["type"] == "error"
            assert message["payload"] == {"message": "Unknown message type: bogus"}
