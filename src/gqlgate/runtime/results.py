"""
Operation results - the three transport modes an operation can resolve to.

SingleResponse      one JSON payload, written once
IncrementalResponse ordered partial payloads carrying "hasNext" (@defer/@stream)
LiveStream          unbounded event payloads (subscriptions)

The two streaming variants wrap an OperationStream: an async sequence of
payloads whose unsubscribe() releases the underlying source exactly once.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


class OperationStream:
    """
    Cancellable async sequence of JSON payloads.

    unsubscribe() is idempotent and safe after natural completion. The
    optional release callback frees what the source wraps, even when the
    source was never started. unsubscribe() must not race a pending
    __anext__: cancel the consuming task first, then unsubscribe.
    """

    def __init__(
        self,
        source: AsyncIterator[dict[str, Any]],
        label: str = "operation",
        release: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._source = source
        self.label = label
        self._release = release
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "OperationStream":
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self._closed:
            raise StopAsyncIteration
        return await self._source.__anext__()

    async def subscribe(
        self,
        on_chunk: Callable[[dict[str, Any]], Optional[Awaitable[None]]],
    ) -> None:
        """Deliver every payload to on_chunk, in order, until the stream ends."""
        async for payload in self:
            outcome = on_chunk(payload)
            if inspect.isawaitable(outcome):
                await outcome

    async def unsubscribe(self) -> None:
        """Release the source, then the release callback. Only the first call has an effect."""
        if self._closed:
            return
        self._closed = True
        try:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            # a source that never started runs no cleanup of its own
            if self._release is not None:
                await self._release()
        logger.debug(f"Stream released: {self.label}")


@dataclass(frozen=True)
class SingleResponse:
    """Complete response: status, ordered headers and the JSON payload."""
    status: int
    payload: Any
    headers: list[tuple[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class IncrementalResponse:
    """Deferred/streamed response; the last payload has hasNext=false."""
    stream: OperationStream

    async def subscribe(self, on_chunk: Callable[[dict[str, Any]], Any]) -> None:
        await self.stream.subscribe(on_chunk)

    async def unsubscribe(self) -> None:
        await self.stream.unsubscribe()


@dataclass(frozen=True)
class LiveStream:
    """Subscription event stream; ends on disconnect or source completion."""
    stream: OperationStream

    async def subscribe(self, on_event: Callable[[dict[str, Any]], Any]) -> None:
        await self.stream.subscribe(on_event)

    async def unsubscribe(self) -> None:
        await self.stream.unsubscribe()


OperationResult = Union[SingleResponse, IncrementalResponse, LiveStream]
