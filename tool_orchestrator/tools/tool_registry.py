"""Tool registry interface and a registry backed by plain Python callables.

The engine only needs two capabilities from a registry: ``lookup`` to decide
whether a requested tool exists, and ``execute`` to run it. ``execute`` returns
a typed outcome instead of raising, so expected tool failures stay data.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Union, runtime_checkable

from ..core.timing_logger import timed
from ..core.types import ToolDefinition, ToolFailure, ToolOutcome, ToolSuccess

LOGGER = logging.getLogger(__name__)

ToolCallable = Callable[..., Union[Any, Awaitable[Any]]]


@runtime_checkable
class ToolRegistry(Protocol):
    def lookup(self, name: str) -> Optional[ToolDefinition]:
        ...

    async def execute(self, name: str, params: Dict[str, Any]) -> ToolOutcome:
        ...


class CallableToolRegistry:
    """Registry mapping tool ids to sync or async callables.

    Sync callables run in a worker thread so a slow tool does not block the
    event loop. Parameters are passed as keyword arguments. A callable may
    return a ``ToolSuccess``/``ToolFailure`` directly; any other return value
    is wrapped in ``ToolSuccess`` and any raised exception becomes ``ToolFailure``.
    """

    def __init__(self, tools: Optional[Iterable[Tuple[ToolDefinition, ToolCallable]]] = None) -> None:
        self._definitions: Dict[str, ToolDefinition] = {}
        self._callables: Dict[str, ToolCallable] = {}
        for definition, func in tools or ():
            self.register(definition, func)

    def register(self, definition: ToolDefinition, func: ToolCallable) -> ToolDefinition:
        if not callable(func):
            raise TypeError(f"Tool '{definition.id}' must be callable")
        if definition.id in self._definitions:
            LOGGER.warning("Replacing registered tool '%s'", definition.id)
        self._definitions[definition.id] = definition
        self._callables[definition.id] = func
        return definition

    def tool(
        self,
        name: Optional[str] = None,
        *,
        description: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Callable[[ToolCallable], ToolCallable]:
        """Decorator form of :meth:`register`; the docstring is the default description."""

        def decorator(func: ToolCallable) -> ToolCallable:
            definition = ToolDefinition(
                id=name or func.__name__,
                description=description if description is not None else (inspect.getdoc(func) or ""),
                parameters=parameters or {"type": "object", "properties": {}},
            )
            self.register(definition, func)
            return func

        return decorator

    def definitions(self) -> List[ToolDefinition]:
        return list(self._definitions.values())

    def lookup(self, name: str) -> Optional[ToolDefinition]:
        return self._definitions.get(name)

    @timed
    async def execute(self, name: str, params: Dict[str, Any]) -> ToolOutcome:
        func = self._callables.get(name)
        if func is None:
            return ToolFailure(error=f"Tool '{name}' is not registered")
        try:
            if inspect.iscoroutinefunction(func):
                result = await func(**params)
            else:
                result = await asyncio.to_thread(func, **params)
                if inspect.isawaitable(result):
                    result = await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.debug("Tool '%s' raised", name, exc_info=True)
            return ToolFailure(error=str(exc) or type(exc).__name__)
        if isinstance(result, (ToolSuccess, ToolFailure)):
            return result
        return ToolSuccess(output=result)
