"""Core infrastructure module.

Foundation services required by all domains:
- Configuration schemas (EngineValves, ClientValves, EncryptedStr)
- Error taxonomy
- Run logging and timing instrumentation
- Shared data types
- Pure utility functions
"""

from .config import ClientValves, EncryptedStr, EngineValves
from .errors import (
    ConfigurationError,
    ModelCallError,
    RunCancelledError,
    StreamError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolOrchestratorError,
)
from .logging_system import RunLogger
from .types import (
    Message,
    ModelResponse,
    Result,
    StreamChunk,
    TokenUsage,
    ToolCallRequest,
    ToolCallResult,
    ToolDefinition,
    ToolFailure,
    ToolOutcome,
    ToolSuccess,
)
from .utils import _json_dumps_compact, _pretty_json, _safe_json_loads

__all__ = [
    "ClientValves",
    "EncryptedStr",
    "EngineValves",
    "ConfigurationError",
    "ModelCallError",
    "RunCancelledError",
    "StreamError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolOrchestratorError",
    "RunLogger",
    "Message",
    "ModelResponse",
    "Result",
    "StreamChunk",
    "TokenUsage",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolDefinition",
    "ToolFailure",
    "ToolOutcome",
    "ToolSuccess",
    "_json_dumps_compact",
    "_pretty_json",
    "_safe_json_loads",
]
