"""Tool call execution for one model turn.

This module handles:
- Registry lookup and argument parsing per tool call
- Execution with a per-call timeout, timed as a ``tool`` segment
- Conversion of failures into model-visible error payloads
- Appending the assistant/tool message pair for every answered call
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Sequence

from ..core.errors import ToolExecutionError, ToolNotFoundError
from ..core.timing_logger import timed, timing_mark
from ..core.types import Message, ToolCallRequest, ToolCallResult, ToolFailure, ToolOutcome
from ..core.utils import _json_dumps_compact
from ..orchestration.trace import TimeSegment

if TYPE_CHECKING:
    from ..core.config import EngineValves
    from ..orchestration.messages import ConversationState
    from ..orchestration.trace import TimingRecorder
    from .tool_registry import ToolRegistry

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _PreparedCall:
    """A tool call after lookup and argument parsing, ready to run or to report."""

    call: ToolCallRequest
    arguments: Dict[str, Any]
    error: Optional[str] = None


def _parse_tool_arguments(raw_args: Any) -> Dict[str, Any]:
    if raw_args is None:
        return {}
    if isinstance(raw_args, dict):
        return raw_args
    if isinstance(raw_args, str):
        if not raw_args.strip():
            return {}
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError as exc:
            raise ValueError("Unable to parse tool arguments") from exc
        if not isinstance(parsed, dict):
            raise ValueError("Tool arguments must be a JSON object")
        return parsed
    raise ValueError(f"Unsupported argument type: {type(raw_args).__name__}")


def _encode_tool_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    return _json_dumps_compact(content)


class ToolExecutor:
    """Run the tool calls of one model turn against a ``ToolRegistry``."""

    def __init__(
        self,
        registry: "ToolRegistry",
        *,
        timeout: Optional[float] = None,
        mode: Literal["sequential", "parallel"] = "sequential",
        unknown_tool_policy: Literal["skip", "error"] = "skip",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._registry = registry
        self._timeout = timeout
        self._mode = mode
        self._unknown_tool_policy = unknown_tool_policy
        self.logger = logger or LOGGER

    @classmethod
    def from_valves(
        cls,
        registry: "ToolRegistry",
        valves: "EngineValves",
        logger: Optional[logging.Logger] = None,
    ) -> "ToolExecutor":
        return cls(
            registry,
            timeout=valves.TOOL_TIMEOUT_SECONDS,
            mode=valves.TOOL_EXECUTION_MODE,
            unknown_tool_policy=valves.UNKNOWN_TOOL_POLICY,
            logger=logger,
        )

    def _prepare(self, calls: Sequence[ToolCallRequest]) -> List[_PreparedCall]:
        prepared: List[_PreparedCall] = []
        for call in calls:
            if self._registry.lookup(call.tool_name) is None:
                missing = ToolNotFoundError(call.tool_name)
                if self._unknown_tool_policy == "skip":
                    self.logger.warning("Skipping tool call %s: %s", call.call_id, missing)
                    continue
                self.logger.warning("Tool call %s failed: %s", call.call_id, missing)
                prepared.append(_PreparedCall(call, {}, str(missing)))
                continue
            try:
                arguments = _parse_tool_arguments(call.raw_arguments)
            except ValueError as exc:
                self.logger.warning("Tool %s received invalid arguments: %s", call.tool_name, exc)
                prepared.append(_PreparedCall(call, {}, f"Invalid arguments: {exc}"))
                continue
            prepared.append(_PreparedCall(call, arguments))
        return prepared

    async def _invoke(self, name: str, arguments: Dict[str, Any]) -> ToolOutcome:
        try:
            if self._timeout:
                return await asyncio.wait_for(self._registry.execute(name, arguments), timeout=self._timeout)
            return await self._registry.execute(name, arguments)
        except asyncio.TimeoutError:
            return ToolFailure(error=f"Tool '{name}' timed out after {self._timeout:g}s")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.debug("Registry raised while executing '%s'", name, exc_info=True)
            return ToolFailure(error=str(exc) or type(exc).__name__)

    async def _run_one(self, prepared: _PreparedCall) -> tuple[ToolCallResult, Optional[TimeSegment]]:
        call = prepared.call
        if prepared.error is not None:
            now = time.time()
            result = ToolCallResult(
                call_id=call.call_id,
                tool_name=call.tool_name,
                arguments=prepared.arguments,
                success=False,
                error_message=prepared.error,
                start_time=now,
                end_time=now,
            )
            return result, None

        timing_mark(f"tool_start:{call.tool_name}")
        start_time = time.time()
        start_perf = time.perf_counter()
        outcome = await self._invoke(call.tool_name, prepared.arguments)
        duration_ms = max(0.0, (time.perf_counter() - start_perf) * 1000)
        end_time = start_time + duration_ms / 1000

        if outcome.success:
            result = ToolCallResult(
                call_id=call.call_id,
                tool_name=call.tool_name,
                arguments=prepared.arguments,
                success=True,
                output=outcome.output,
                start_time=start_time,
                end_time=end_time,
            )
            self.logger.info("Tool %s completed in %.1fms", call.tool_name, duration_ms)
        else:
            failure = ToolExecutionError(call.tool_name, outcome.error)
            result = ToolCallResult(
                call_id=call.call_id,
                tool_name=call.tool_name,
                arguments=prepared.arguments,
                success=False,
                error_message=failure.message,
                start_time=start_time,
                end_time=end_time,
            )
            self.logger.warning("%s", failure)
        segment = TimeSegment(
            type="tool",
            name=call.tool_name,
            start_time=start_time,
            end_time=end_time,
            duration_ms=duration_ms,
        )
        return result, segment

    @staticmethod
    def _append_messages(conversation: "ConversationState", call: ToolCallRequest, result: ToolCallResult) -> None:
        conversation.append(Message(role="assistant", content=None, tool_calls=[call]))
        conversation.append(
            Message(
                role="tool",
                content=_encode_tool_content(result.content()),
                tool_call_id=call.call_id,
                name=call.tool_name,
            )
        )

    @timed
    async def execute_batch(
        self,
        calls: Sequence[ToolCallRequest],
        conversation: "ConversationState",
        recorder: "TimingRecorder",
    ) -> List[ToolCallResult]:
        """Execute one batch and extend ``conversation`` with the results.

        A failing call never aborts the rest of the batch. Messages and trace
        segments are appended in the order the model requested the calls, in
        both sequential and parallel mode.
        """
        prepared = self._prepare(calls)
        results: List[ToolCallResult] = []

        if self._mode == "parallel" and len(prepared) > 1:
            outcomes = await asyncio.gather(*(self._run_one(item) for item in prepared))
            for item, (result, segment) in zip(prepared, outcomes):
                if segment is not None:
                    recorder.add(segment)
                self._append_messages(conversation, item.call, result)
                results.append(result)
            return results

        for item in prepared:
            result, segment = await self._run_one(item)
            if segment is not None:
                recorder.add(segment)
            self._append_messages(conversation, item.call, result)
            results.append(result)
        return results
