"""Streaming reconciliation between provider chunks and the run result.

The caller receives a ``StreamingResult``: a single-use ``TextStream`` plus the
``Result`` it will finalize. Text deltas are forwarded as they arrive; content,
token usage and the trace are updated on the same ``Result`` object, and done
callbacks fire when the stream closes normally.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, ContextManager, List, Optional

from ..core.errors import RunCancelledError, StreamError, ToolOrchestratorError
from ..core.timing_logger import timed
from ..core.types import Result, StreamChunk, TokenUsage

if TYPE_CHECKING:
    from ..api.client import ModelClient
    from ..orchestration.payload import ModelPayload
    from ..orchestration.trace import TimingRecorder

LOGGER = logging.getLogger(__name__)

DoneCallback = Callable[[Result], Any]


async def _aclose(source: Any) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()


class TextStream:
    """Async iterator of text chunks that can be consumed exactly once.

    Iterating a second time raises ``StreamError``. ``aclose()`` stops the
    stream early and releases the provider connection.
    """

    def __init__(self, factory: Callable[[], AsyncIterator[str]]) -> None:
        self._factory = factory
        self._iterator: Optional[AsyncIterator[str]] = None
        self._started = False
        self._closed = False
        self._done_callbacks: List[Callable[[], Any]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "TextStream":
        if self._started:
            raise StreamError("Text stream can only be consumed once")
        self._started = True
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        if self._iterator is None:
            self._started = True
            self._iterator = self._factory()
        try:
            return await self._iterator.__anext__()
        except BaseException:
            self._closed = True
            raise

    async def aclose(self) -> None:
        self._started = True
        if self._closed:
            return
        self._closed = True
        if self._iterator is not None:
            await _aclose(self._iterator)

    async def collect(self) -> str:
        """Consume the whole stream and return the concatenated text."""
        parts = [chunk async for chunk in self]
        return "".join(parts)


@dataclass(slots=True)
class StreamingResult:
    text_stream: TextStream
    result: Result
    _finalized: bool = False

    @property
    def finalized(self) -> bool:
        return self._finalized


class StreamingReconciler:
    """Drive one streamed model call (or a replay) into a ``StreamingResult``.

    The returned stream is usually consumed after ``ToolOrchestrationEngine.run``
    has returned. ``run_context`` re-enters the run's logging and timing context
    while the stream is consumed, and ``on_release`` fires once it has ended
    (normally, with an error, or through ``aclose``).
    """

    def __init__(
        self,
        client: "ModelClient",
        recorder: "TimingRecorder",
        *,
        cancel_event: Optional[asyncio.Event] = None,
        chunk_timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
        run_context: Optional[Callable[[], ContextManager[Any]]] = None,
        on_release: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._client = client
        self._recorder = recorder
        self._cancel_event = cancel_event
        self._chunk_timeout = chunk_timeout
        self._run_context = run_context
        self._on_release = on_release
        self.logger = logger or LOGGER

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _cancellation(self) -> RunCancelledError:
        return RunCancelledError("Run cancelled while streaming", trace=self._recorder.snapshot())

    async def _next_chunk(self, source: AsyncIterator[StreamChunk]) -> Optional[StreamChunk]:
        """Return the next chunk, or None once ``source`` is exhausted.

        With a cancel event the read is raced against it, so a stalled provider
        does not delay cancellation until the next chunk arrives.
        """

        async def pull() -> Optional[StreamChunk]:
            try:
                return await source.__anext__()
            except StopAsyncIteration:
                return None

        if self._cancel_event is None:
            if self._chunk_timeout:
                return await asyncio.wait_for(pull(), timeout=self._chunk_timeout)
            return await pull()

        chunk_task = asyncio.ensure_future(pull())
        cancel_task = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {chunk_task, cancel_task},
                timeout=self._chunk_timeout or None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()
            if not chunk_task.done():
                chunk_task.cancel()
                await asyncio.wait({chunk_task})
        if chunk_task in done:
            return chunk_task.result()
        if self._cancelled():
            raise self._cancellation()
        raise asyncio.TimeoutError()

    def _finish(self, streaming: StreamingResult, on_done: Optional[DoneCallback]) -> None:
        streaming._finalized = True
        if on_done is not None:
            on_done(streaming.result)

    async def _within_run(self, body: AsyncIterator[str]) -> AsyncIterator[str]:
        scope = self._run_context() if self._run_context is not None else contextlib.nullcontext()
        with scope:
            try:
                async for text in body:
                    yield text
            finally:
                await _aclose(body)
                if self._on_release is not None:
                    self._on_release()

    @timed
    def stream(
        self,
        payload: "ModelPayload",
        result: Result,
        *,
        segment_name: str = "stream",
        on_done: Optional[DoneCallback] = None,
    ) -> StreamingResult:
        """Stream ``payload`` and reconcile it into ``result``.

        Streamed text replaces ``result.content`` once the first delta arrives;
        a stream without text leaves the existing content untouched. Usage from
        any chunk is added to ``result.tokens``.
        """
        streaming = StreamingResult(text_stream=TextStream(lambda: self._within_run(produce())), result=result)

        async def produce() -> AsyncIterator[str]:
            if self._cancelled():
                raise self._cancellation()
            segment = self._recorder.begin("model", segment_name)
            source = self._client.stream_complete(payload)
            received = False
            try:
                while True:
                    if self._cancelled():
                        segment.close()
                        raise self._cancellation()
                    chunk = await self._next_chunk(source)
                    if chunk is None:
                        break
                    if chunk.usage:
                        result.tokens.add(TokenUsage.from_usage(chunk.usage))
                    if chunk.delta_text:
                        if not received:
                            received = True
                            self._recorder.mark_first_response()
                            result.content = chunk.delta_text
                        else:
                            result.content += chunk.delta_text
                        yield chunk.delta_text
            except RunCancelledError:
                raise
            except ToolOrchestratorError as exc:
                segment.close()
                raise exc.attach_trace(self._recorder.snapshot())
            except asyncio.TimeoutError as exc:
                segment.close()
                raise StreamError(
                    f"Model stream timed out after {self._chunk_timeout:g}s without a chunk",
                    trace=self._recorder.snapshot(),
                ) from exc
            except Exception as exc:
                segment.close()
                self.logger.error("Model stream failed: %s", exc, exc_info=True)
                raise StreamError(
                    f"Model stream failed: {type(exc).__name__}: {exc}",
                    trace=self._recorder.snapshot(),
                ) from exc
            finally:
                await _aclose(source)
                segment.close()
            self.logger.debug("Model stream finished (%d chars)", len(result.content))
            self._finish(streaming, on_done)

        return streaming

    def replay(self, result: Result, *, on_done: Optional[DoneCallback] = None) -> StreamingResult:
        """Expose already-received content as a one-chunk stream without a model call."""
        streaming = StreamingResult(text_stream=TextStream(lambda: self._within_run(produce())), result=result)

        async def produce() -> AsyncIterator[str]:
            if self._cancelled():
                raise self._cancellation()
            if result.content:
                yield result.content
            self._finish(streaming, on_done)

        return streaming
