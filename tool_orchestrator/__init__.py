"""Tool orchestration engine for LLM tool calling.

Drives the call / execute / merge loop between a model endpoint and
caller-supplied tools, with forced-tool sequencing, direct and deferred
streaming, and a timing trace attached to every outcome.
"""

from .api import ChatCompletionsClient, ClientSessionCache, ModelClient
from .core import (
    ClientValves,
    ConfigurationError,
    EngineValves,
    Message,
    ModelCallError,
    ModelResponse,
    Result,
    RunCancelledError,
    RunLogger,
    StreamChunk,
    StreamError,
    TokenUsage,
    ToolCallRequest,
    ToolCallResult,
    ToolDefinition,
    ToolExecutionError,
    ToolFailure,
    ToolNotFoundError,
    ToolOrchestratorError,
    ToolSuccess,
)
from .orchestration.engine import RunRequest, ToolOrchestrationEngine
from .orchestration.loop import LoopOutcome, LoopState, OrchestrationLoop
from .orchestration.trace import ExecutionTrace, TimeSegment
from .streaming import StreamingResult, TextStream
from .tools import CallableToolRegistry, ToolRegistry

__version__ = "0.1.0"

__all__ = [
    "ChatCompletionsClient",
    "ClientSessionCache",
    "ModelClient",
    "ClientValves",
    "EngineValves",
    "ConfigurationError",
    "ModelCallError",
    "RunCancelledError",
    "StreamError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolOrchestratorError",
    "Message",
    "ModelResponse",
    "Result",
    "RunLogger",
    "StreamChunk",
    "TokenUsage",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolDefinition",
    "ToolFailure",
    "ToolSuccess",
    "RunRequest",
    "ToolOrchestrationEngine",
    "LoopOutcome",
    "LoopState",
    "OrchestrationLoop",
    "ExecutionTrace",
    "TimeSegment",
    "StreamingResult",
    "TextStream",
    "CallableToolRegistry",
    "ToolRegistry",
]
