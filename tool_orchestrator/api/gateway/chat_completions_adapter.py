"""OpenAI-compatible Chat Completions client.

Implements the ``ModelClient`` interface over ``POST {BASE_URL}/chat/completions``
for streaming and non-streaming requests, with Tenacity retries for connection
errors and retryable HTTP statuses.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, AsyncGenerator, Optional

import aiohttp
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ...core.config import ClientValves, EncryptedStr
from ...core.errors import (
    ConfigurationError,
    ModelCallError,
    StreamError,
    _is_retryable_model_error,
    _RetryWait,
    build_model_call_error,
)
from ...core.timing_logger import timed, timing_mark
from ...core.types import ModelResponse, StreamChunk, ToolCallRequest
from ...core.utils import _pretty_json, generate_item_id
from ...streaming.sse_parser import iter_sse_data
from .session_cache import ClientSessionCache

if TYPE_CHECKING:
    from ...orchestration.payload import ModelPayload


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError)):
        return True
    return _is_retryable_model_error(exc)


def _parse_tool_calls(raw_calls: Any) -> list[ToolCallRequest]:
    calls: list[ToolCallRequest] = []
    if not isinstance(raw_calls, list):
        return calls
    for raw in raw_calls:
        if not isinstance(raw, dict):
            continue
        call = ToolCallRequest.from_wire(raw)
        if not call.tool_name:
            continue
        if not call.call_id:
            call = ToolCallRequest(f"call_{generate_item_id()}", call.tool_name, call.raw_arguments)
        calls.append(call)
    return calls


def _parse_completion(data: Any) -> ModelResponse:
    """Normalize a non-streaming Chat Completions body into a ``ModelResponse``."""
    if not isinstance(data, dict):
        raise ModelCallError("Invalid JSON response from /chat/completions")
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise ModelCallError("Model response contained no choices", raw_body=_pretty_json(data))
    message = choices[0].get("message")
    message = message if isinstance(message, dict) else {}
    content = message.get("content")
    usage = data.get("usage")
    return ModelResponse(
        content=content if isinstance(content, str) else None,
        tool_calls=_parse_tool_calls(message.get("tool_calls")),
        usage=dict(usage) if isinstance(usage, dict) else None,
    )


def _stream_event_to_chunk(event: dict[str, Any]) -> Optional[StreamChunk]:
    error = event.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise StreamError(f"Provider stream error: {message or 'unknown error'}")
    usage = event.get("usage")
    delta_text = None
    choices = event.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str) and content:
                delta_text = content
    if delta_text is None and not isinstance(usage, dict):
        return None
    return StreamChunk(delta_text=delta_text, usage=dict(usage) if isinstance(usage, dict) else None)


class ChatCompletionsClient:
    """``ModelClient`` for OpenAI-compatible ``/chat/completions`` endpoints."""

    def __init__(
        self,
        valves: Optional[ClientValves] = None,
        session_cache: Optional[ClientSessionCache] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.valves = valves or ClientValves()
        self.logger = logger or logging.getLogger(__name__)
        self._api_key = EncryptedStr.decrypt(self.valves.API_KEY or "").strip()
        if not self._api_key:
            raise ConfigurationError("API key is not configured. Set API_KEY or TOOL_ORCHESTRATOR_API_KEY.")
        base_url = (self.valves.BASE_URL or "").strip()
        if not base_url:
            raise ConfigurationError("Base URL is not configured. Set BASE_URL or TOOL_ORCHESTRATOR_BASE_URL.")
        self.url = base_url.rstrip("/") + "/chat/completions"
        self.session_cache = session_cache or ClientSessionCache(self.valves, logger=self.logger)

    def _headers(self, *, stream: bool) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }

    def _request_body(self, payload: "ModelPayload", *, stream: bool) -> dict[str, Any]:
        body = payload.to_request_body()
        body["model"] = self.valves.MODEL
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    def _retryer(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.valves.MAX_RETRIES),
            wait=_RetryWait(wait_exponential(multiplier=0.5, min=0.5, max=4)),
            retry=retry_if_exception(_should_retry),
            reraise=True,
        )

    async def _error_for(self, resp: aiohttp.ClientResponse) -> ModelCallError:
        error_body = await resp.text()
        self.logger.debug("Model request failed (%s): %s", resp.status, error_body[:2000])
        return build_model_call_error(
            resp.status,
            resp.reason,
            error_body,
            headers=resp.headers,
            requested_model=self.valves.MODEL,
        )

    @timed
    async def complete(self, payload: "ModelPayload") -> ModelResponse:
        body = self._request_body(payload, stream=False)
        headers = self._headers(stream=False)
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug("Model request payload: %s", _pretty_json(body))
        try:
            async for attempt in self._retryer():
                with attempt:
                    session = self.session_cache.get()
                    timing_mark("chat_nonstream_http_request_start")
                    async with session.post(self.url, json=body, headers=headers) as resp:
                        timing_mark("chat_nonstream_http_response")
                        if resp.status >= 400:
                            raise await self._error_for(resp)
                        try:
                            data = await resp.json(content_type=None)
                        except ValueError as exc:
                            raise ModelCallError("Invalid JSON response from /chat/completions") from exc
                    return _parse_completion(data)
        except ModelCallError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ModelCallError(f"Model request failed: {type(exc).__name__}: {exc}") from exc
        raise ModelCallError("Model request failed without a response")

    async def _open_stream(self, body: dict[str, Any], headers: dict[str, str]) -> aiohttp.ClientResponse:
        try:
            async for attempt in self._retryer():
                with attempt:
                    session = self.session_cache.get()
                    timing_mark("chat_http_request_start")
                    resp = await session.post(self.url, json=body, headers=headers)
                    timing_mark("chat_http_headers_received")
                    if resp.status >= 400:
                        try:
                            raise await self._error_for(resp)
                        finally:
                            resp.release()
                    return resp
        except ModelCallError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ModelCallError(f"Model stream request failed: {type(exc).__name__}: {exc}") from exc
        raise ModelCallError("Model stream request failed without a response")

    async def stream_complete(self, payload: "ModelPayload") -> AsyncGenerator[StreamChunk, None]:
        """Stream text deltas; the usage-only terminal chunk is yielded last.

        Retries only cover opening the stream. Failures after the first byte
        raise ``StreamError``.
        """
        body = self._request_body(payload, stream=True)
        headers = self._headers(stream=True)
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug("Model request payload: %s", _pretty_json(body))
        resp = await self._open_stream(body, headers)
        first_chunk_received = False
        try:
            async for event in iter_sse_data(resp.content.iter_any(), logger=self.logger):
                chunk = _stream_event_to_chunk(event)
                if chunk is None:
                    continue
                if not first_chunk_received:
                    first_chunk_received = True
                    timing_mark("chat_first_chunk")
                yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StreamError(f"Model stream interrupted: {type(exc).__name__}: {exc}") from exc
        finally:
            resp.release()

    async def close(self) -> None:
        await self.session_cache.clear()
