"""Model request payload: an explicit struct and its pure builder."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .messages import ConversationState
from .tool_choice import ToolChoice


@dataclass(slots=True, frozen=True)
class ModelPayload:
    """Everything a ``ModelClient`` needs for one call. Optional fields left as None are omitted."""

    messages: List[Dict[str, Any]]
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    response_format: Optional[Dict[str, Any]] = None

    def to_request_body(self) -> Dict[str, Any]:
        """Render the Chat Completions request body (without ``model``/``stream``)."""
        body: Dict[str, Any] = {"messages": self.messages}
        if self.tools:
            body["tools"] = self.tools
            if self.tool_choice is not None:
                body["tool_choice"] = self.tool_choice
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            body["max_tokens"] = self.max_output_tokens
        if self.response_format is not None:
            body["response_format"] = self.response_format
        return body


def build_model_payload(
    conversation: ConversationState,
    *,
    tools: Optional[List[Dict[str, Any]]] = None,
    tool_choice: Optional[ToolChoice] = None,
    temperature: Optional[float] = None,
    max_output_tokens: Optional[int] = None,
    response_format: Optional[Dict[str, Any]] = None,
) -> ModelPayload:
    """Snapshot ``conversation`` and the call options into a ``ModelPayload``.

    Pure: the conversation is copied to wire dicts, so later appends do not
    change an already-built payload. ``tool_choice`` is dropped when no tools
    are offered.
    """
    return ModelPayload(
        messages=conversation.to_wire(),
        tools=list(tools) if tools else None,
        tool_choice=tool_choice.to_wire() if (tools and tool_choice is not None) else None,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        response_format=response_format,
    )
