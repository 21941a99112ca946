"""
Tests for the HTTP endpoint and its three response framings.

Covers:
- Single JSON responses and request errors
- multipart/mixed incremental delivery
- text/event-stream subscriptions
- Release of streams on client disconnect and unsubscribe
"""

import asyncio
import json
import re

import pytest

from gqlgate import GraphQLServer, StaticSchemaProvider
from gqlgate.api.router import MULTIPART_CLOSING, encode_event, encode_multipart_part
from gqlgate.core.request_parser import NormalizedOperation
from gqlgate.runtime.pipeline import PipelineOptions, build_pipeline
from gqlgate.runtime.plugins import ExecutionHooks, Plugin
from gqlgate.runtime.processor import process_request
from gqlgate.runtime.results import IncrementalResponse, LiveStream, OperationStream

from .conftest import INTERNAL_DETAIL

PART_HEADER = re.compile(rb"Content-Length: (\d+)\r\n\r\n")


def read_parts(body: bytes) -> list[dict]:
    """Decode the JSON parts of a multipart/mixed body using Content-Length."""
    parts = []
    position = 0
    while True:
        match = PART_HEADER.search(body, position)
        if match is None:
            return parts
        start = match.end()
        end = start + int(match.group(1))
        parts.append(json.loads(body[start:end]))
        position = end


def body_chunks(messages: list[dict]) -> list[bytes]:
    return [message["body"] for message in messages if message["type"] == "http.response.body"]


async def post_until_disconnect(app, query: str, disconnect_when) -> list[dict]:
    """
    Drive one POST through the ASGI app, sending http.disconnect once
    disconnect_when(sent_messages) is true. Returns the sent messages.
    """
    body = json.dumps({"query": query}).encode()
    request_sent = False
    disconnected = False
    messages = []

    async def receive():
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        while not (disconnected or disconnect_when(messages)):
            await asyncio.sleep(0.005)
        return {"type": "http.disconnect"}

    async def send(message):
        nonlocal disconnected
        messages.append(message)
        disconnected = disconnected or disconnect_when(messages)

    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/graphql",
        "raw_path": b"/graphql",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode()),
        ],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }

    await asyncio.wait_for(app(scope, receive, send), timeout=5)
    await asyncio.sleep(0.05)
    return messages


def finished(messages: list[dict]) -> bool:
    """True when the response body was closed with more_body=False."""
    return any(
        message["type"] == "http.response.body" and not message.get("more_body", False)
        for message in messages
    )


class DoneHooks(ExecutionHooks):
    def __init__(self, plugin):
        self.plugin = plugin

    def on_done(self):
        self.plugin.done += 1


class DoneCountingPlugin(Plugin):
    """Counts operations whose hooks were told the operation is over."""

    def __init__(self):
        self.done = 0

    def on_execute(self, args):
        return DoneHooks(self)


# =============================================================================
# Single response Tests
# =============================================================================


class TestSingleResponse:
    """Tests for plain JSON responses."""

    def test_post_query(self, client):
        response = client.post("/graphql", json={"query": "{ version }"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"
        assert response.content == b'{"data":{"version":"1.0.0"}}'

    def test_get_query(self, client):
        response = client.get("/graphql", params={"query": "{ version }"})

        assert response.status_code == 200
        assert response.json() == {"data": {"version": "1.0.0"}}

    def test_operation_name_selects_operation(self, client):
        response = client.post(
            "/graphql",
            json={"query": "query A { version } query B { items }", "operationName": "B"},
        )
        assert response.json() == {"data": {"items": [1, 2, 3]}}

    def test_ambiguous_operation(self, client):
        response = client.post("/graphql", json={"query": "query A { version } query B { items }"})

        assert response.status_code == 400
        assert response.json()["errors"][0]["message"] == "Could not determine what operation to execute."

    def test_missing_query(self, client):
        response = client.post("/graphql", json={})

        assert response.status_code == 400
        assert response.json() == {"errors": [{"message": "Must provide query string."}]}

    def test_syntax_error(self, client):
        response = client.post("/graphql", json={"query": "{ version"})

        assert response.status_code == 400
        assert response.json()["errors"][0]["message"].startswith("Syntax Error")

    def test_validation_error(self, client):
        response = client.post("/graphql", json={"query": "{ unknown }"})

        assert response.status_code == 400
        assert "unknown" in response.json()["errors"][0]["message"]

    def test_mutation_over_get_is_rejected(self, client):
        response = client.get("/graphql", params={"query": 'mutation { publish(message: "hi") }'})

        assert response.status_code == 405
        assert response.headers["allow"] == "POST"
        assert response.json()["errors"][0]["message"] == (
            "Can only perform a mutation operation from a POST request."
        )

    def test_mutation_over_post(self, client, pubsub):
        response = client.post("/graphql", json={"query": 'mutation { publish(message: "hi") }'})

        assert response.status_code == 200
        assert response.json() == {"data": {"publish": 0}}

    def test_variables(self, client):
        response = client.post(
            "/graphql",
            json={
                "query": "query ($d: Boolean!) { version ... @defer(if: $d) { slow } }",
                "variables": {"d": False},
            },
        )
        assert response.json() == {"data": {"version": "1.0.0", "slow": "done"}}

    def test_variable_default_disables_defer(self, client):
        response = client.post(
            "/graphql",
            json={"query": "query ($d: Boolean = false) { version ... @defer(if: $d) { slow } }"},
        )

        assert response.headers["content-type"] == "application/json"
        assert response.json() == {"data": {"version": "1.0.0", "slow": "done"}}

    def test_null_defer_condition(self, client):
        response = client.post(
            "/graphql",
            json={
                "query": "query ($d: Boolean) { version ... @defer(if: $d) { slow } }",
                "variables": {"d": None},
            },
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"
        body = response.json()
        assert body["data"] is None
        assert body["errors"][0]["message"] == "Argument 'if' of non-null type 'Boolean!' must not be null."

    def test_unexpected_error_is_masked(self, client):
        response = client.post("/graphql", json={"query": "{ version boom }"})

        assert response.status_code == 200
        body = response.json()
        assert body["data"] == {"version": "1.0.0", "boom": None}
        assert body["errors"][0]["message"] == "Unexpected error."
        assert INTERNAL_DETAIL not in response.text

    def test_execution_error_keeps_code(self, client):
        response = client.post("/graphql", json={"query": "{ forbidden }"})

        error = response.json()["errors"][0]
        assert error["message"] == "Not allowed"
        assert error["extensions"]["code"] == "FORBIDDEN"

    def test_depth_limit(self, client):
        query = "{ viewer { " + "child { " * 11 + "id " + "} " * 12 + "}"
        response = client.post("/graphql", json={"query": query})

        assert response.status_code == 400
        assert response.json()["errors"][0]["message"] == "'anonymous' exceeds maximum operation depth of 10"

    def test_subscription_error_before_stream(self, client):
        response = client.post("/graphql", json={"query": "subscription { counter(limit: -1) unknown }"})
        assert response.status_code == 400


# =============================================================================
# Incremental delivery Tests
# =============================================================================


class TestIncrementalResponse:
    """Tests for multipart/mixed responses."""

    def test_defer(self, client):
        response = client.post("/graphql", json={"query": "{ version ... @defer { slow } }"})

        assert response.status_code == 200
        assert response.headers["content-type"] == 'multipart/mixed; boundary="-"'
        assert response.content.startswith(b"---")
        assert response.content.endswith(MULTIPART_CLOSING)

        parts = read_parts(response.content)
        assert parts == [
            {"data": {"version": "1.0.0"}, "hasNext": True},
            {"incremental": [{"data": {"slow": "done"}, "path": []}], "hasNext": False},
        ]

    def test_stream(self, client):
        response = client.post("/graphql", json={"query": "{ items @stream(initialCount: 1) }"})

        parts = read_parts(response.content)
        assert parts == [
            {"data": {"items": [1]}, "hasNext": True},
            {"incremental": [{"items": [2, 3], "path": ["items", 1]}], "hasNext": False},
        ]

    def test_only_last_part_has_next_false(self, client):
        response = client.post(
            "/graphql",
            json={"query": "{ items @stream(initialCount: 0) ... @defer { slow } }"},
        )

        parts = read_parts(response.content)
        assert [part["hasNext"] for part in parts] == [True, True, False]

    def test_deferred_error_is_masked(self, client):
        response = client.post("/graphql", json={"query": "{ version ... @defer { boom } }"})

        parts = read_parts(response.content)
        assert parts[1]["incremental"][0]["errors"][0]["message"] == "Unexpected error."
        assert INTERNAL_DETAIL.encode() not in response.content

    def test_part_length_counts_bytes(self):
        payload = {"data": {"name": "café"}, "hasNext": False}
        part = encode_multipart_part(payload)

        length = int(PART_HEADER.search(part).group(1))
        assert length == len(json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))
        assert not part.endswith(b"---")

    def test_pending_part_ends_with_boundary(self):
        assert encode_multipart_part({"data": {}, "hasNext": True}).endswith(b"\r\n---")

    @pytest.mark.asyncio
    async def test_disconnect_during_deferred_work(self, schema, settings, tracker):
        counter = DoneCountingPlugin()
        server = GraphQLServer(StaticSchemaProvider(schema), settings, extra_plugins=[counter])

        messages = await post_until_disconnect(
            server.create_app(),
            "{ version ... @defer { blocked } }",
            lambda sent: tracker.produced == 1,
        )

        parts = read_parts(b"".join(body_chunks(messages)))
        assert parts == [{"data": {"version": "1.0.0"}, "hasNext": True}]
        assert MULTIPART_CLOSING not in body_chunks(messages)
        assert not finished(messages)
        assert tracker.released == 1
        assert counter.done == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_after_initial_part(self, schema):
        counter = DoneCountingPlugin()
        primitives = build_pipeline(PipelineOptions(extra_plugins=[counter]))()

        result = await process_request(
            NormalizedOperation("{ version ... @defer { slow } }"), "POST", schema, primitives, {}
        )
        assert isinstance(result, IncrementalResponse)
        assert await result.stream.__anext__() == {"data": {"version": "1.0.0"}, "hasNext": True}

        await result.unsubscribe()
        await result.unsubscribe()

        assert counter.done == 1
        assert [payload async for payload in result.stream] == []

    @pytest.mark.asyncio
    async def test_unsubscribe_before_first_part(self, schema):
        counter = DoneCountingPlugin()
        primitives = build_pipeline(PipelineOptions(extra_plugins=[counter]))()

        result = await process_request(
            NormalizedOperation("{ version ... @defer { slow } }"), "POST", schema, primitives, {}
        )
        await result.unsubscribe()

        assert counter.done == 1


# =============================================================================
# Live stream Tests
# =============================================================================


class TestLiveStream:
    """Tests for text/event-stream subscriptions."""

    def test_events(self, client, tracker):
        response = client.post("/graphql", json={"query": "subscription { counter(limit: 2) }"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "text/event-stream"
        assert response.headers["cache-control"] == "no-cache"
        assert response.content == (
            b'data: {"data":{"counter":1}}\n\n'
            b'data: {"data":{"counter":2}}\n\n'
        )
        assert tracker.released == 1

    def test_subscription_over_get(self, client):
        response = client.get("/graphql", params={"query": "subscription { counter(limit: 1) }"})
        assert response.content == b'data: {"data":{"counter":1}}\n\n'

    def test_source_error_ends_stream(self, client):
        response = client.post("/graphql", json={"query": "subscription { broken }"})

        events = [
            json.loads(line[len("data: "):])
            for line in response.text.split("\n\n")
            if line.startswith("data: ")
        ]
        assert events[0] == {"data": {"broken": 1}}
        assert events[-1] == {"errors": [{"message": "Unexpected error."}]}
        assert INTERNAL_DETAIL not in response.text

    def test_event_encoding(self):
        assert encode_event({"data": {"a": 1}}) == b'data: {"data":{"a":1}}\n\n'

    @pytest.mark.asyncio
    async def test_disconnect_releases_source(self, app, tracker):
        def data_chunks(messages):
            return [chunk for chunk in body_chunks(messages) if chunk.startswith(b"data: ")]

        messages = await post_until_disconnect(
            app,
            "subscription { counter }",
            lambda sent: len(data_chunks(sent)) == 2,
        )

        assert tracker.released == 1
        assert len(data_chunks(messages)) == 2
        assert not finished(messages)

    @pytest.mark.asyncio
    async def test_unsubscribe_before_first_event(self, schema):
        counter = DoneCountingPlugin()
        primitives = build_pipeline(PipelineOptions(extra_plugins=[counter]))()

        result = await process_request(
            NormalizedOperation("subscription { counter }"), "POST", schema, primitives, {}
        )
        assert isinstance(result, LiveStream)
        await result.unsubscribe()

        assert counter.done == 1


# =============================================================================
# OperationStream Tests
# =============================================================================


class FakeSource:
    def __init__(self, payloads):
        self.payloads = list(payloads)
        self.closed = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.payloads:
            raise StopAsyncIteration
        return self.payloads.pop(0)

    async def aclose(self):
        self.closed += 1


class TestOperationStream:
    """Tests for OperationStream."""

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(self):
        source = FakeSource([{"data": 1}])
        stream = OperationStream(source)

        await stream.unsubscribe()
        await stream.unsubscribe()

        assert source.closed == 1
        assert stream.closed

    @pytest.mark.asyncio
    async def test_unsubscribe_after_completion(self):
        source = FakeSource([{"data": 1}, {"data": 2}])
        stream = OperationStream(source)

        received = []
        await stream.subscribe(received.append)
        await stream.unsubscribe()

        assert received == [{"data": 1}, {"data": 2}]
        assert source.closed == 1

    @pytest.mark.asyncio
    async def test_no_payloads_after_unsubscribe(self):
        stream = OperationStream(FakeSource([{"data": 1}]))
        await stream.unsubscribe()

        assert [payload async for payload in stream] == []

    @pytest.mark.asyncio
    async def test_release_runs_once(self):
        released = []

        async def release():
            released.append(True)

        stream = OperationStream(FakeSource([{"data": 1}]), release=release)
        await stream.unsubscribe()
        await stream.unsubscribe()

        assert released == [True]
