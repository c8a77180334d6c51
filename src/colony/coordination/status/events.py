"""
Status event definitions published on the colony event bus.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


@dataclass
class StatusEvent:
    """Base class for all status events."""
    entity_name: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()), kw_only=True)
    timestamp: float = field(default_factory=time.time, kw_only=True)
    metadata: Dict[str, Any] = field(default_factory=dict, kw_only=True)

    @property
    def event_type(self) -> str:
        """Get event type for filtering."""
        return self.__class__.__name__.replace("Event", "").lower()


@dataclass
class ThinkingChangedEvent(StatusEvent):
    """Entity entered or left the thinking state."""
    thinking: bool
    isolated: bool = False


@dataclass
class AbortRequestedEvent(StatusEvent):
    """Cooperative abort requested; the loop stops at its next step boundary."""
    reason: Literal["timeout", "manual"]


@dataclass
class LoopCompleteEvent(StatusEvent):
    """An agent loop ended."""
    state: str
    steps: int
    calls: int
    isolated: bool = False
    error: Optional[str] = None


@dataclass
class MessageQueuedEvent(StatusEvent):
    """Message held until the entity's running loop completes."""
    text: str
    queue_length: int


@dataclass
class CompactionEvent(StatusEvent):
    """Conversation compaction started or completed."""
    status: Literal["started", "completed"]
    cleared_messages: int = 0
    token_count: Optional[int] = None


@dataclass
class StreamChunkEvent(StatusEvent):
    """One streamed chunk of a model response."""
    chunk: Any


@dataclass
class ToolCallEvent(StatusEvent):
    """Tool being called."""
    tool_name: str
    status: Literal["started", "completed", "failed"]
    arguments: Optional[Dict[str, Any]] = None
    result: Optional[str] = None
    duration: Optional[float] = None


@dataclass
class ServerToolCallsEvent(StatusEvent):
    """Tool calls the server executed through its integrations."""
    tool_calls: List[Dict[str, Any]]


@dataclass
class ResponseEvent(StatusEvent):
    """Final assistant text of a loop step."""
    text: Optional[str]
    reasoning: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None
    isolated: bool = False


@dataclass
class ErrorEvent(StatusEvent):
    """Configuration or transport failure, shown inline."""
    message: str
    error_code: Optional[str] = None
