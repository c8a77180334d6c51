"""
Client-side tool execution.

The runtime never knows what a tool does: it hands the name and arguments to
a ToolExecutor and feeds whatever comes back (or the error) to the model.
"""

import inspect
import json
import logging
import time
from dataclasses import dataclass
from difflib import get_close_matches
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

import jsonschema

from colony.agents.exceptions import ColonyError, ToolExecutionError
from colony.models.response_models import ToolCall

from ..status.events import ToolCallEvent

if TYPE_CHECKING:
    from ..event_bus import EventBus

logger = logging.getLogger(__name__)


def find_similar_tool_names(tool_name: str, available_tools: List[str], cutoff: float = 0.6) -> List[str]:
    """Find similar tool names using fuzzy matching."""
    clean_name = tool_name.replace("functions.", "").replace("tools.", "")
    return get_close_matches(clean_name, available_tools, n=3, cutoff=cutoff)


def stringify_tool_result(result: Any) -> str:
    """Tool results go to the model as text; structured results as indented JSON."""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, indent=2)
    except (TypeError, ValueError):
        return str(result)


@runtime_checkable
class ToolExecutor(Protocol):
    """Runs a named tool. May be sync or async; raises on failure."""

    def execute(self, tool_name: str, args: Dict[str, Any]) -> Any:
        ...


@dataclass
class RegisteredTool:
    name: str
    func: Callable[..., Any]
    description: str = ""
    input_schema: Optional[Dict[str, Any]] = None

    def definition(self) -> Dict[str, Any]:
        """Canonical tool schema sent to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema or {"type": "object", "properties": {}},
        }


class FunctionToolExecutor:
    """
    ToolExecutor backed by plain Python callables.

    Arguments are validated against the tool's JSON schema before the call,
    then passed as keyword arguments. Coroutine functions are awaited.
    """

    def __init__(self) -> None:
        self.tools: Dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        func: Callable[..., Any],
        input_schema: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> None:
        if description is None:
            description = inspect.getdoc(func) or ""
        self.tools[name] = RegisteredTool(name, func, description, input_schema)
        logger.debug(f"Registered tool '{name}'")

    def tool(
        self,
        name: Optional[str] = None,
        input_schema: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of ``register``."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(name or func.__name__, func, input_schema, description)
            return func

        return decorator

    def unregister(self, name: str) -> bool:
        return self.tools.pop(name, None) is not None

    def has_tool(self, name: str) -> bool:
        return name in self.tools

    def definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self.tools.values()]

    def validate_arguments(self, tool: RegisteredTool, args: Dict[str, Any]) -> None:
        if tool.input_schema is None:
            return
        try:
            jsonschema.validate(instance=args, schema=tool.input_schema)
        except jsonschema.exceptions.ValidationError as e:
            error_path = " -> ".join(map(str, e.path))
            if error_path:
                error_msg = f"Invalid arguments for '{tool.name}' at '{error_path}': {e.message}"
            else:
                error_msg = f"Invalid arguments for '{tool.name}': {e.message}"
            raise ToolExecutionError(error_msg, tool_name=tool.name, tool_args=args) from e

    async def execute(self, tool_name: str, args: Dict[str, Any]) -> Any:
        tool = self.tools.get(tool_name)
        if tool is None:
            message = f"Unknown tool: {tool_name}"
            similar = find_similar_tool_names(tool_name, list(self.tools))
            if similar:
                message += f". Did you mean: {', '.join(similar)}?"
            raise ToolExecutionError(message, tool_name=tool_name, tool_args=args)

        self.validate_arguments(tool, args)

        result = tool.func(**args)
        if inspect.isawaitable(result):
            result = await result
        return result


class CompositeToolExecutor:
    """
    Routes names registered on ``local`` there, everything else to ``fallback``.

    Used to put per-entity built-in tools in front of a shared executor.
    """

    def __init__(self, local: FunctionToolExecutor, fallback: Optional[ToolExecutor] = None):
        self.local = local
        self.fallback = fallback

    async def execute(self, tool_name: str, args: Dict[str, Any]) -> Any:
        if self.local.has_tool(tool_name) or self.fallback is None:
            return await self.local.execute(tool_name, args)
        result = self.fallback.execute(tool_name, args)
        if inspect.isawaitable(result):
            result = await result
        return result


@dataclass
class ToolResult:
    """Outcome of one tool call, already in the text form sent to the model."""
    call: ToolCall
    content: str
    is_error: bool = False


async def execute_tool_calls(
    executor: Optional[ToolExecutor],
    calls: List[ToolCall],
    entity_name: str = "",
    event_bus: Optional["EventBus"] = None,
) -> List[ToolResult]:
    """
    Run tool calls one after another, in the order the model gave them.

    A failing tool never aborts the loop: its error becomes the result text
    ``"Error: <message>"``.
    """
    results: List[ToolResult] = []

    for call in calls:
        start = time.time()
        if event_bus:
            await event_bus.emit(ToolCallEvent(
                entity_name=entity_name,
                tool_name=call.name,
                status="started",
                arguments=call.input,
            ))

        try:
            if executor is None:
                raise ToolExecutionError(f"No tool executor available for '{call.name}'", tool_name=call.name)
            outcome = executor.execute(call.name, call.input)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            result = ToolResult(call, stringify_tool_result(outcome))
        except Exception as e:
            message = e.developer_message if isinstance(e, ColonyError) else str(e)
            logger.warning(f"Tool '{call.name}' failed for '{entity_name}': {message}")
            result = ToolResult(call, f"Error: {message}", is_error=True)

        results.append(result)

        if event_bus:
            await event_bus.emit(ToolCallEvent(
                entity_name=entity_name,
                tool_name=call.name,
                status="failed" if result.is_error else "completed",
                arguments=call.input,
                result=result.content,
                duration=time.time() - start,
            ))

    return results
