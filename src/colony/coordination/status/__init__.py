"""
Status events for observers of a colony.
"""

from .events import (
    StatusEvent,
    ThinkingChangedEvent,
    AbortRequestedEvent,
    LoopCompleteEvent,
    MessageQueuedEvent,
    CompactionEvent,
    StreamChunkEvent,
    ToolCallEvent,
    ServerToolCallsEvent,
    ResponseEvent,
    ErrorEvent,
)

__all__ = [
    'StatusEvent',
    'ThinkingChangedEvent',
    'AbortRequestedEvent',
    'LoopCompleteEvent',
    'MessageQueuedEvent',
    'CompactionEvent',
    'StreamChunkEvent',
    'ToolCallEvent',
    'ServerToolCallsEvent',
    'ResponseEvent',
    'ErrorEvent',
]
