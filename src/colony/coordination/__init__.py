"""
Coordination primitives shared by every entity of a colony: admission
control, cancellation, settings, events and tool execution.
"""

from .admission import AdmissionController
from .config import ColonySettings
from .event_bus import EventBus
from .execution import (
    CompositeToolExecutor,
    FunctionToolExecutor,
    ToolExecutor,
    ToolResult,
    execute_tool_calls,
)
from .supervisor import CancellationSupervisor

__all__ = [
    "AdmissionController",
    "ColonySettings",
    "EventBus",
    "CompositeToolExecutor",
    "FunctionToolExecutor",
    "ToolExecutor",
    "ToolResult",
    "execute_tool_calls",
    "CancellationSupervisor",
]
