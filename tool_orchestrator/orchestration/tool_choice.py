"""Forced-tool sequencing.

A caller may require the model to call a list of tools in order before it is
free to choose on its own. The policy forces the first entry that the model
has not called yet, then falls back to ``auto`` once every entry was used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Literal, Optional, Sequence, Set, Union

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ToolChoice:
    mode: Literal["auto", "tool", "none"]
    name: Optional[str] = None

    @classmethod
    def auto(cls) -> "ToolChoice":
        return cls("auto")

    @classmethod
    def force(cls, name: str) -> "ToolChoice":
        return cls("tool", name)

    @classmethod
    def none(cls) -> "ToolChoice":
        return cls("none")

    @property
    def is_forced(self) -> bool:
        return self.mode == "tool"

    def to_wire(self) -> Union[str, dict[str, Any], None]:
        """Chat Completions ``tool_choice`` value; None omits the key."""
        if self.mode == "auto":
            return "auto"
        if self.mode == "tool":
            return {"type": "function", "function": {"name": self.name}}
        return None


class ToolChoicePolicy:
    """Track the forced queue and which of its entries the model already called."""

    def __init__(self) -> None:
        self.forced_queue: List[str] = []
        self.used: Set[str] = set()
        self._has_tools = False

    def initialize(
        self,
        forced_queue: Optional[Sequence[str]],
        *,
        has_tools: bool,
        available: Optional[Iterable[str]] = None,
    ) -> None:
        """Reset the policy for a run. Call once before the first model call.

        Names missing from ``available`` (when given) are dropped, since forcing
        a tool that was not offered is rejected by the endpoint.
        """
        self._has_tools = has_tools
        self.used = set()
        queue = [name for name in forced_queue or () if isinstance(name, str) and name]
        if available is not None:
            offered = set(available)
            unknown = [name for name in queue if name not in offered]
            if unknown:
                LOGGER.warning("Ignoring forced tools that were not offered: %s", ", ".join(unknown))
            queue = [name for name in queue if name in offered]
        self.forced_queue = queue

    def next_forced(self) -> Optional[str]:
        for name in self.forced_queue:
            if name not in self.used:
                return name
        return None

    def current_choice(self) -> ToolChoice:
        if not self._has_tools:
            return ToolChoice.none()
        forced = self.next_forced()
        if forced is not None:
            return ToolChoice.force(forced)
        return ToolChoice.auto()

    def record_response(self, tool_call_names: Iterable[str]) -> None:
        """Mark every forced entry observed among the response's tool calls as used."""
        forced = set(self.forced_queue)
        for name in tool_call_names:
            if name in forced:
                self.used.add(name)
