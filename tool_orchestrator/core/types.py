"""Shared data types for orchestration runs.

Conversation messages, tool definitions, tool call requests/results, token usage
and the normalized model responses exchanged with a ``ModelClient``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import ToolExecutionError
from .utils import _json_dumps_compact

if TYPE_CHECKING:
    from ..orchestration.trace import ExecutionTrace

Role = Literal["system", "user", "assistant", "tool"]


# -----------------------------------------------------------------------------
# Tool definitions and calls
# -----------------------------------------------------------------------------

class ToolDefinition(BaseModel):
    """Caller-supplied tool: looked up by ``id`` when the model calls it."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    description: str = ""
    parameter_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="parameters",
    )


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A tool invocation emitted by the model in one turn."""

    call_id: str
    tool_name: str
    raw_arguments: Any = "{}"

    def to_wire(self) -> dict[str, Any]:
        arguments = self.raw_arguments
        if not isinstance(arguments, str):
            arguments = _json_dumps_compact(arguments if arguments is not None else {})
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.tool_name, "arguments": arguments},
        }

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> "ToolCallRequest":
        function = raw.get("function") if isinstance(raw.get("function"), dict) else {}
        return cls(
            call_id=str(raw.get("id") or raw.get("call_id") or ""),
            tool_name=str(function.get("name") or raw.get("name") or ""),
            raw_arguments=function.get("arguments", raw.get("arguments", "{}")),
        )


@dataclass(slots=True, frozen=True)
class ToolSuccess:
    output: Any
    success: Literal[True] = True


@dataclass(slots=True, frozen=True)
class ToolFailure:
    error: str
    success: Literal[False] = False


ToolOutcome = Union[ToolSuccess, ToolFailure]


@dataclass(slots=True)
class ToolCallResult:
    """Outcome of one executed tool call, fed back to the model and to the caller."""

    call_id: str
    tool_name: str
    arguments: Dict[str, Any]
    success: bool
    output: Any = None
    error_message: Optional[str] = None
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration_ms(self) -> float:
        return max(0.0, (self.end_time - self.start_time) * 1000)

    def content(self) -> Any:
        """Return the value delivered to the model as the tool message body."""
        if self.success:
            return self.output
        return ToolExecutionError(self.tool_name, self.error_message or "Tool failed").to_payload()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "success": self.success,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }
        if self.success:
            payload["output"] = self.output
        else:
            payload["error_message"] = self.error_message
        return payload


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------

@dataclass(slots=True)
class Message:
    """One conversation entry in the generic chat wire shape."""

    role: Role
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCallRequest]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            payload["name"] = self.name
        return payload

    @classmethod
    def from_dict(cls, raw: Union["Message", dict[str, Any]]) -> "Message":
        if isinstance(raw, Message):
            return raw
        role = raw.get("role")
        if role not in ("system", "user", "assistant", "tool"):
            raise ValueError(f"Unsupported message role: {role!r}")
        content = raw.get("content")
        if content is not None and not isinstance(content, str):
            content = _json_dumps_compact(content)
        raw_calls = raw.get("tool_calls")
        tool_calls = None
        if isinstance(raw_calls, list) and raw_calls:
            tool_calls = [
                call if isinstance(call, ToolCallRequest) else ToolCallRequest.from_wire(call)
                for call in raw_calls
            ]
        return cls(
            role=role,
            content=content,
            tool_calls=tool_calls,
            tool_call_id=raw.get("tool_call_id"),
            name=raw.get("name"),
        )


# -----------------------------------------------------------------------------
# Model responses
# -----------------------------------------------------------------------------

@dataclass(slots=True)
class TokenUsage:
    prompt: int = 0
    completion: int = 0
    total: int = 0

    @classmethod
    def from_usage(cls, usage: Optional[dict[str, Any]]) -> "TokenUsage":
        """Normalize chat (`prompt_tokens`) and responses (`input_tokens`) usage shapes."""
        if not isinstance(usage, dict):
            return cls()

        def _int(*keys: str) -> int:
            for key in keys:
                value = usage.get(key)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    return int(value)
            return 0

        prompt = _int("prompt_tokens", "input_tokens", "prompt")
        completion = _int("completion_tokens", "output_tokens", "completion")
        total = _int("total_tokens", "total") or prompt + completion
        return cls(prompt=prompt, completion=completion, total=total)

    def add(self, other: "TokenUsage") -> None:
        self.prompt += other.prompt
        self.completion += other.completion
        self.total += other.total

    def to_dict(self) -> dict[str, int]:
        return {"prompt": self.prompt, "completion": self.completion, "total": self.total}


@dataclass(slots=True)
class ModelResponse:
    """Normalized non-streaming model turn."""

    content: Optional[str] = None
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    usage: Optional[dict[str, Any]] = None


@dataclass(slots=True)
class StreamChunk:
    """One provider stream event: a text delta and/or terminal usage."""

    delta_text: Optional[str] = None
    usage: Optional[dict[str, Any]] = None


# -----------------------------------------------------------------------------
# Run results
# -----------------------------------------------------------------------------

@dataclass(slots=True)
class Result:
    content: str
    tokens: TokenUsage
    trace: "ExecutionTrace"
    tool_calls: Optional[List[ToolCallRequest]] = None
    tool_results: Optional[List[ToolCallResult]] = None
    run_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "tokens": self.tokens.to_dict(),
            "tool_calls": [call.to_wire() for call in self.tool_calls] if self.tool_calls is not None else None,
            "tool_results": [r.to_dict() for r in self.tool_results] if self.tool_results is not None else None,
            "trace": self.trace.to_dict(),
            "run_id": self.run_id,
        }
