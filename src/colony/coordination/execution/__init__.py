from .tool_executor import (
    CompositeToolExecutor,
    FunctionToolExecutor,
    ToolExecutor,
    ToolResult,
    execute_tool_calls,
    stringify_tool_result,
)

__all__ = [
    "CompositeToolExecutor",
    "FunctionToolExecutor",
    "ToolExecutor",
    "ToolResult",
    "execute_tool_calls",
    "stringify_tool_result",
]
