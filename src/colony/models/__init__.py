from .dialects import WireDialect, detect_dialect, get_models_url
from .response_models import (
    CompletionStats,
    ModelInfo,
    StreamChunk,
    ToolCall,
    UnifiedCompletionResult,
)
from .models import BaseAPIModel, ModelConfig

__all__ = [
    "WireDialect",
    "detect_dialect",
    "get_models_url",
    "CompletionStats",
    "ModelInfo",
    "StreamChunk",
    "ToolCall",
    "UnifiedCompletionResult",
    "BaseAPIModel",
    "ModelConfig",
]
