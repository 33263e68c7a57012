"""Tools domain: schema translation, registries and batch execution."""

from .tool_executor import ToolExecutor
from .tool_registry import CallableToolRegistry, ToolRegistry
from .tool_schema import build_tool_specs

__all__ = [
    "ToolExecutor",
    "CallableToolRegistry",
    "ToolRegistry",
    "build_tool_specs",
]
