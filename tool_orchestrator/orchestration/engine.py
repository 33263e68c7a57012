"""Engine entry point: validate a run request and drive it to a result.

``ToolOrchestrationEngine.run`` assembles the conversation, translates the
tools, runs the orchestration loop and, when streaming was requested, hands
the final turn to the streaming reconciler:

- no tools offered: the first and only model call is streamed (direct mode)
- tools offered and at least one batch executed: one extra streamed call with
  ``tool_choice=auto`` after the loop (deferred mode)
- tools offered but never called, or the iteration cap was hit: the received
  content is replayed as a stream
"""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import logging
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..api.client import ModelClient
from ..core.config import EngineValves
from ..core.errors import ConfigurationError, RunCancelledError, ToolOrchestratorError
from ..core.logging_system import RunLogger
from ..core.timing_logger import (
    clear_timing_events,
    ensure_timing_file_configured,
    reset_timing_context,
    set_timing_context,
    timed,
)
from ..core.types import Message, Result, TokenUsage, ToolDefinition
from ..core.utils import generate_item_id
from ..streaming.reconciler import StreamingReconciler, StreamingResult
from ..tools.tool_executor import ToolExecutor
from ..tools.tool_registry import ToolRegistry
from ..tools.tool_schema import build_tool_specs, tool_names
from .loop import LoopState, OrchestrationLoop
from .messages import assemble_conversation
from .payload import build_model_payload
from .tool_choice import ToolChoice, ToolChoicePolicy
from .trace import ExecutionTrace, TimingRecorder


class RunRequest(BaseModel):
    """Caller input for one orchestration run."""

    model_config = ConfigDict(extra="forbid")

    system_prompt: Optional[str] = None
    context: Optional[str] = None
    messages: List[Any] = Field(default_factory=list)
    tools: List[ToolDefinition] = Field(default_factory=list)
    response_format: Optional[Dict[str, Any]] = None
    temperature: Optional[float] = Field(default=None, ge=0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    stream: bool = False
    forced_tool_sequence: List[str] = Field(default_factory=list)

    @field_validator("messages", mode="after")
    @classmethod
    def _coerce_messages(cls, value: List[Any]) -> List[Message]:
        return [Message.from_dict(item) for item in value]


class ToolOrchestrationEngine:
    """Tool-calling execution engine over a ``ModelClient`` and a ``ToolRegistry``."""

    def __init__(
        self,
        client: ModelClient,
        registry: Optional[ToolRegistry] = None,
        valves: Optional[EngineValves] = None,
    ) -> None:
        if client is None:
            raise ConfigurationError("A model client is required", trace=ExecutionTrace())
        self.client = client
        self.registry = registry
        self.valves = valves or EngineValves()
        self.logger = RunLogger.get_logger(__name__)

    @contextlib.contextmanager
    def _bound_run(self, run_id: str) -> Iterator[None]:
        """Bind RunLogger and timing contextvars to this run for the duration of the block."""
        RunLogger.set_max_lines(self.valves.RUN_LOG_MAX_LINES)
        tokens: list[tuple[ContextVar[Any], contextvars.Token[Any]]] = [
            (RunLogger.run_id, RunLogger.run_id.set(run_id)),
            (RunLogger.log_level, RunLogger.log_level.set(getattr(logging, self.valves.LOG_LEVEL))),
        ]
        if self.valves.ENABLE_TIMING_LOG:
            ensure_timing_file_configured(self.valves.TIMING_LOG_FILE)
        timing_tokens = set_timing_context(run_id, bool(self.valves.ENABLE_TIMING_LOG))
        try:
            yield
        finally:
            reset_timing_context(timing_tokens)
            for var, token in reversed(tokens):
                with contextlib.suppress(ValueError):
                    var.reset(token)

    def _release_run(self, run_id: str) -> None:
        """Drop per-run diagnostics that are no longer needed once a run ends."""
        if not self.valves.RETAIN_TIMING_EVENTS:
            clear_timing_events(run_id)
        RunLogger.cleanup(
            max_age_seconds=self.valves.RUN_LOG_RETENTION_SECONDS,
            max_runs=self.valves.RUN_LOG_MAX_RUNS,
        )

    @timed
    async def run(
        self,
        request: Union[RunRequest, Dict[str, Any]],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Union[Result, StreamingResult]:
        """Execute one run.

        A streamed result keeps the run open until its text stream ends; the
        run's logs and timing events are released at that point.

        Raises:
            ConfigurationError: tools were supplied but no registry is configured.
            ModelCallError: a model call failed; carries the partial trace.
            RunCancelledError: ``cancel_event`` was set before the run completed.
        """
        if not isinstance(request, RunRequest):
            request = RunRequest.model_validate(request)
        run_id = generate_item_id()
        streaming = False
        try:
            with self._bound_run(run_id):
                outcome = await self._run(request, run_id, cancel_event)
            streaming = isinstance(outcome, StreamingResult)
            return outcome
        finally:
            if not streaming:
                self._release_run(run_id)

    async def _run(
        self,
        request: RunRequest,
        run_id: str,
        cancel_event: Optional[asyncio.Event],
    ) -> Union[Result, StreamingResult]:
        valves = self.valves
        if request.tools and self.registry is None:
            raise ConfigurationError("Tools were supplied but no tool registry is configured", trace=ExecutionTrace())

        recorder = TimingRecorder()
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError("Run cancelled before the first model call", trace=recorder.snapshot())

        conversation = assemble_conversation(request.system_prompt, request.context, request.messages)
        tool_specs = build_tool_specs(request.tools, strict=valves.ENABLE_STRICT_TOOL_SCHEMAS)
        reconciler = StreamingReconciler(
            self.client,
            recorder,
            cancel_event=cancel_event,
            chunk_timeout=valves.MODEL_CALL_TIMEOUT_SECONDS,
            logger=self.logger,
            run_context=lambda: self._bound_run(run_id),
            on_release=lambda: self._release_run(run_id),
        )
        self.logger.info(
            "Run started: %d message(s), %d tool(s), stream=%s",
            len(conversation),
            len(tool_specs or []),
            request.stream,
        )

        if not tool_specs and request.stream:
            recorder.increment_iteration()
            payload = build_model_payload(
                conversation,
                temperature=request.temperature,
                max_output_tokens=request.max_tokens,
                response_format=request.response_format,
            )
            result = Result(content="", tokens=TokenUsage(), trace=recorder.trace, run_id=run_id)
            return reconciler.stream(payload, result, segment_name="iteration_1", on_done=self._log_done)

        policy = ToolChoicePolicy()
        policy.initialize(
            request.forced_tool_sequence,
            has_tools=bool(tool_specs),
            available=tool_names(tool_specs),
        )
        executor = ToolExecutor.from_valves(self.registry, valves, self.logger) if tool_specs else None
        loop = OrchestrationLoop(
            self.client,
            executor,
            recorder,
            max_iterations=valves.MAX_ITERATIONS,
            model_call_timeout=valves.MODEL_CALL_TIMEOUT_SECONDS,
            cancel_event=cancel_event,
            logger=self.logger,
        )
        try:
            outcome = await loop.run(
                conversation,
                policy,
                tools=tool_specs,
                temperature=request.temperature,
                max_output_tokens=request.max_tokens,
                response_format=request.response_format,
            )
        except ToolOrchestratorError as exc:
            exc.attach_trace(recorder.snapshot())
            raise

        result = Result(
            content=outcome.content,
            tokens=outcome.tokens,
            trace=recorder.trace,
            tool_calls=outcome.tool_calls or None,
            tool_results=outcome.tool_results or None,
            run_id=run_id,
        )
        self.logger.info("Loop finished in state %s after %d iteration(s)", outcome.state.value, recorder.trace.iteration_count)

        if not request.stream:
            self._log_done(result)
            return result
        if outcome.batches_executed == 0 or outcome.state is LoopState.CAPPED:
            # A capped run already used its call budget; replay what it has.
            return reconciler.replay(result, on_done=self._log_done)

        payload = build_model_payload(
            conversation,
            tools=tool_specs,
            tool_choice=ToolChoice.auto(),
            temperature=request.temperature,
            max_output_tokens=request.max_tokens,
            response_format=request.response_format,
        )
        return reconciler.stream(payload, result, segment_name="stream", on_done=self._log_done)

    def _log_done(self, result: Result) -> None:
        trace = result.trace
        self.logger.info(
            "Run finished: iterations=%d model=%.1fms tools=%.1fms tokens=%d",
            trace.iteration_count,
            trace.model_time_ms,
            trace.tools_time_ms,
            result.tokens.total,
        )
