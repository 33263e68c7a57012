from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, Callable, Optional, Union

import pytest

from tool_orchestrator.core.logging_system import RunLogger
from tool_orchestrator.core.timing_logger import _timing_events, clear_timing_context
from tool_orchestrator.core.types import ModelResponse, StreamChunk, ToolCallRequest, ToolDefinition
from tool_orchestrator.orchestration.payload import ModelPayload
from tool_orchestrator.tools.tool_registry import CallableToolRegistry

ScriptItem = Union[ModelResponse, BaseException]


class ScriptedModelClient:
    """ModelClient returning queued responses and recording every payload it receives."""

    def __init__(
        self,
        responses: Optional[list[ScriptItem]] = None,
        streams: Optional[list[list[Union[StreamChunk, BaseException]]]] = None,
        *,
        fallback: Optional[Callable[[int], ModelResponse]] = None,
    ) -> None:
        self.responses: list[ScriptItem] = list(responses or [])
        self.streams = list(streams or [])
        self.fallback = fallback
        self.payloads: list[ModelPayload] = []
        self.stream_payloads: list[ModelPayload] = []
        self.streams_closed = 0

    async def complete(self, payload: ModelPayload) -> ModelResponse:
        self.payloads.append(payload)
        if self.responses:
            item = self.responses.pop(0)
        elif self.fallback is not None:
            item = self.fallback(len(self.payloads))
        else:
            raise AssertionError("ScriptedModelClient ran out of responses")
        if isinstance(item, BaseException):
            raise item
        return item

    async def stream_complete(self, payload: ModelPayload) -> AsyncGenerator[StreamChunk, None]:
        self.stream_payloads.append(payload)
        script = self.streams.pop(0) if self.streams else []
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.streams_closed += 1


def text_response(content: Optional[str], *, prompt: int = 0, completion: int = 0) -> ModelResponse:
    usage = None
    if prompt or completion:
        usage = {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": prompt + completion}
    return ModelResponse(content=content, tool_calls=[], usage=usage)


def tool_response(*calls: tuple[str, Any], prompt: int = 0, completion: int = 0, content: Optional[str] = None) -> ModelResponse:
    requests = [
        ToolCallRequest(call_id=f"call_{name}_{idx}", tool_name=name, raw_arguments=args)
        for idx, (name, args) in enumerate(calls)
    ]
    response = text_response(content, prompt=prompt, completion=completion)
    response.tool_calls = requests
    return response


@pytest.fixture(autouse=True)
def _reset_run_state():
    yield
    RunLogger.logs.clear()
    RunLogger._last_seen.clear()
    RunLogger.max_lines = 2000
    _timing_events.clear()
    clear_timing_context()
    logging.getLogger("tool_orchestrator.orchestration.engine").handlers.clear()


@pytest.fixture
def calculator_registry() -> CallableToolRegistry:
    registry = CallableToolRegistry()

    @registry.tool(
        "calculator",
        description="Evaluate a simple sum",
        parameters={
            "type": "object",
            "properties": {"expression": {"type": "string"}},
            "required": ["expression"],
        },
    )
    def calculator(expression: str) -> int:
        left, right = expression.split("+")
        return int(left) + int(right)

    @registry.tool("explode")
    def explode() -> None:
        raise RuntimeError("kaboom")

    @registry.tool("search")
    async def search(query: str = "") -> dict[str, Any]:
        return {"hits": [query]}

    @registry.tool("summarize")
    async def summarize(text: str = "") -> str:
        return f"summary:{text}"

    return registry


@pytest.fixture
def calculator_tool() -> ToolDefinition:
    return ToolDefinition(
        id="calculator",
        description="Evaluate a simple sum",
        parameters={
            "type": "object",
            "properties": {"expression": {"type": "string"}},
            "required": ["expression"],
        },
    )
