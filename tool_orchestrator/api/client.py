"""Model client interface consumed by the orchestration engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, AsyncIterator, Protocol, runtime_checkable

from ..core.types import ModelResponse, StreamChunk

if TYPE_CHECKING:
    from ..orchestration.payload import ModelPayload


@runtime_checkable
class ModelClient(Protocol):
    """Capability interface implemented once per model transport.

    ``complete`` performs one non-streaming call. ``stream_complete`` returns an
    async iterator of text deltas; the terminal chunk may carry usage only.
    Iterators returned by ``stream_complete`` should support ``aclose()`` so the
    engine can release the provider connection early.
    """

    async def complete(self, payload: "ModelPayload") -> ModelResponse:
        ...

    def stream_complete(self, payload: "ModelPayload") -> AsyncIterator[StreamChunk]:
        ...
