"""Orchestration domain: conversation, payloads, tool choice and timing.

The loop and the engine entry point live in ``orchestration.loop`` and
``orchestration.engine``; they are exported from the top-level package.
"""

from .messages import ConversationState, assemble_conversation
from .payload import ModelPayload, build_model_payload
from .tool_choice import ToolChoice, ToolChoicePolicy
from .trace import ExecutionTrace, TimeSegment, TimingRecorder

__all__ = [
    "ConversationState",
    "assemble_conversation",
    "ModelPayload",
    "build_model_payload",
    "ToolChoice",
    "ToolChoicePolicy",
    "ExecutionTrace",
    "TimeSegment",
    "TimingRecorder",
]
