"""
Colony - a multi-entity LLM conversation runtime

Several named entities, each bound to its own model endpoint, converse with
an operator and with each other. The runtime speaks four wire dialects,
runs client-side tool loops, serializes calls to a shared backend, and keeps
long conversations within the context window.
"""

__version__ = "0.1.0"

# Agents first: the coordination layer imports from colony.agents.exceptions
from .agents import (
    Colony,
    ColonyError,
    ConfigurationError,
    ConversationMemory,
    EntityAgent,
    EntityBusyError,
    EntitySession,
    LoopOutcome,
    LoopState,
    MemoryStore,
    Message,
    ModelAPIError,
    ModelResponseError,
    ToolExecutionError,
    WakeupResult,
)

# Models
from .models import BaseAPIModel, ModelConfig, UnifiedCompletionResult, WireDialect, detect_dialect

# Coordination
from .coordination import (
    AdmissionController,
    CancellationSupervisor,
    ColonySettings,
    EventBus,
    FunctionToolExecutor,
    ToolExecutor,
)

__all__ = [
    # Version
    "__version__",
    # Agents
    "Colony",
    "EntityAgent",
    "EntitySession",
    "LoopOutcome",
    "LoopState",
    # Memory
    "ConversationMemory",
    "Message",
    "MemoryStore",
    "WakeupResult",
    # Errors
    "ColonyError",
    "ConfigurationError",
    "EntityBusyError",
    "ModelAPIError",
    "ModelResponseError",
    "ToolExecutionError",
    # Models
    "BaseAPIModel",
    "ModelConfig",
    "UnifiedCompletionResult",
    "WireDialect",
    "detect_dialect",
    # Coordination
    "AdmissionController",
    "CancellationSupervisor",
    "ColonySettings",
    "EventBus",
    "FunctionToolExecutor",
    "ToolExecutor",
]
