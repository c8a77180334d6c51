from .exceptions import (
    APIErrorClassification,
    ColonyError,
    ConfigurationError,
    EntityBusyError,
    ModelAPIError,
    ModelError,
    ModelResponseError,
    ToolExecutionError,
)
from .memory import ConversationMemory, MemoryStore, Message, WakeupResult
from .session import EntitySession
from .agents import EntityAgent, LoopOutcome, LoopState
from .registry import (
    COMPACT_PROMPT,
    HEARTBEAT_PROMPT,
    Colony,
)

__all__ = [
    "APIErrorClassification",
    "ColonyError",
    "ConfigurationError",
    "EntityBusyError",
    "ModelAPIError",
    "ModelError",
    "ModelResponseError",
    "ToolExecutionError",
    "ConversationMemory",
    "MemoryStore",
    "Message",
    "WakeupResult",
    "EntitySession",
    "EntityAgent",
    "LoopOutcome",
    "LoopState",
    "COMPACT_PROMPT",
    "HEARTBEAT_PROMPT",
    "Colony",
]
