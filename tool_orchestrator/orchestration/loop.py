"""Iterative model-call / tool-execution loop.

State machine::

    INIT -> AWAITING_MODEL -> HAS_TOOL_CALLS -> EXECUTING_TOOLS -> AWAITING_MODEL ...
                           \\-> NO_TOOL_CALLS -> DONE

``CAPPED`` is reached when the iteration limit stops the loop while the latest
response still requests tools. It is a normal terminal state, not an error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..core.errors import ModelCallError, RunCancelledError, ToolOrchestratorError
from ..core.timing_logger import timed
from ..core.types import ModelResponse, TokenUsage, ToolCallRequest, ToolCallResult
from .payload import ModelPayload, build_model_payload

if TYPE_CHECKING:
    from ..api.client import ModelClient
    from ..tools.tool_executor import ToolExecutor
    from .messages import ConversationState
    from .tool_choice import ToolChoicePolicy
    from .trace import TimingRecorder

LOGGER = logging.getLogger(__name__)


class LoopState(str, Enum):
    INIT = "init"
    AWAITING_MODEL = "awaiting_model"
    HAS_TOOL_CALLS = "has_tool_calls"
    EXECUTING_TOOLS = "executing_tools"
    NO_TOOL_CALLS = "no_tool_calls"
    DONE = "done"
    CAPPED = "capped"


@dataclass(slots=True)
class LoopOutcome:
    state: LoopState
    content: str = ""
    tokens: TokenUsage = field(default_factory=TokenUsage)
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    tool_results: List[ToolCallResult] = field(default_factory=list)
    batches_executed: int = 0


class OrchestrationLoop:
    """Run model calls until the model stops requesting tools or the limit is hit."""

    def __init__(
        self,
        client: "ModelClient",
        executor: Optional["ToolExecutor"],
        recorder: "TimingRecorder",
        *,
        max_iterations: int,
        model_call_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self._executor = executor
        self._recorder = recorder
        self._max_iterations = max(1, int(max_iterations))
        self._model_call_timeout = model_call_timeout
        self._cancel_event = cancel_event
        self.logger = logger or LOGGER
        self.state = LoopState.INIT

    def _raise_if_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise RunCancelledError("Run cancelled", trace=self._recorder.snapshot())

    async def _call_model(self, payload: ModelPayload) -> ModelResponse:
        self._raise_if_cancelled()
        self.state = LoopState.AWAITING_MODEL
        iteration = self._recorder.trace.iteration_count + 1
        try:
            with self._recorder.segment("model", f"iteration_{iteration}"):
                try:
                    if self._model_call_timeout:
                        response = await asyncio.wait_for(
                            self._client.complete(payload), timeout=self._model_call_timeout
                        )
                    else:
                        response = await self._client.complete(payload)
                except ToolOrchestratorError:
                    raise
                except asyncio.TimeoutError as exc:
                    raise ModelCallError(
                        f"Model call timed out after {self._model_call_timeout:g}s"
                    ) from exc
                except Exception as exc:
                    raise ModelCallError(f"Model call failed: {type(exc).__name__}: {exc}") from exc
        except ToolOrchestratorError as exc:
            self._recorder.increment_iteration()
            self.logger.error("Iteration %d failed: %s", iteration, exc)
            raise exc.attach_trace(self._recorder.snapshot())
        self._recorder.increment_iteration()
        self._recorder.mark_first_response()
        return response

    @staticmethod
    def _absorb(outcome: LoopOutcome, response: ModelResponse) -> None:
        outcome.tokens.add(TokenUsage.from_usage(response.usage))
        if response.content and response.content.strip():
            outcome.content = response.content

    @timed
    async def run(
        self,
        conversation: "ConversationState",
        policy: "ToolChoicePolicy",
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> LoopOutcome:
        outcome = LoopOutcome(state=LoopState.INIT)

        def payload() -> ModelPayload:
            return build_model_payload(
                conversation,
                tools=tools,
                tool_choice=policy.current_choice(),
                temperature=temperature,
                max_output_tokens=max_output_tokens,
                response_format=response_format,
            )

        response = await self._call_model(payload())
        self._absorb(outcome, response)

        while self._recorder.trace.iteration_count < self._max_iterations:
            if not response.tool_calls:
                self.state = LoopState.NO_TOOL_CALLS
                break
            if self._executor is None:
                self.logger.warning("Ignoring %d tool call(s): no tools were offered", len(response.tool_calls))
                break
            self._raise_if_cancelled()
            self.state = LoopState.HAS_TOOL_CALLS
            self.logger.info(
                "Iteration %d requested %d tool call(s): %s",
                self._recorder.trace.iteration_count,
                len(response.tool_calls),
                ", ".join(call.tool_name for call in response.tool_calls),
            )

            self.state = LoopState.EXECUTING_TOOLS
            results = await self._executor.execute_batch(response.tool_calls, conversation, self._recorder)
            # Skipped calls (unknown tools) have no result and stay out of the record.
            executed = {result.call_id for result in results}
            outcome.tool_calls.extend(call for call in response.tool_calls if call.call_id in executed)
            outcome.tool_results.extend(results)
            outcome.batches_executed += 1

            policy.record_response(call.tool_name for call in response.tool_calls)
            response = await self._call_model(payload())
            self._absorb(outcome, response)

        if response.tool_calls and self._executor is not None:
            self.state = LoopState.CAPPED
            self.logger.warning(
                "Iteration limit reached (%d); stopping with pending tool calls", self._max_iterations
            )
        else:
            self.state = LoopState.DONE
        outcome.state = self.state
        return outcome
