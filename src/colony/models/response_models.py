"""
Pydantic models for unified completion results.
Every wire dialect is normalized into these shapes.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from colony.models.dialects import WireDialect

NO_RESPONSE = "[no response]"
STREAM_ENDED = "[stream ended without response]"


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class CompletionStats(BaseModel):
    """Token counts, plus any performance figures the server reports."""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    model_config = ConfigDict(extra="allow")

    @property
    def total_tokens(self) -> Optional[int]:
        if self.input_tokens is None:
            return None
        return self.input_tokens + (self.output_tokens or 0)


class UnifiedCompletionResult(BaseModel):
    """
    Standardized result for all wire dialects.

    ``raw_content`` is the dialect-native assistant payload. It is re-appended
    verbatim to the conversation when the model asks for tools, so it is never
    interpreted outside the adapter that produced it.
    """
    text: Optional[str] = None
    tool_use: Optional[List[ToolCall]] = None
    raw_content: Any = None
    mode: WireDialect
    reasoning: Optional[str] = None
    stats: Optional[CompletionStats] = None
    response_id: Optional[str] = None
    server_tool_calls: Optional[List[Dict[str, Any]]] = None

    @field_validator("tool_use", "server_tool_calls")
    @classmethod
    def empty_list_to_none(cls, v):
        """An empty list means the backend asked for nothing."""
        if not v:
            return None
        return v

    def has_tool_calls(self) -> bool:
        """Check if the result asks the client to run tools."""
        return bool(self.tool_use)


# =============================================================================
# STREAM CHUNKS
# =============================================================================

class TextChunk(BaseModel):
    type: Literal["text"] = "text"
    delta: str


class ReasoningChunk(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    delta: str


class ToolStartChunk(BaseModel):
    type: Literal["tool_start"] = "tool_start"
    id: Optional[str] = None
    name: str


class ToolDoneChunk(BaseModel):
    type: Literal["tool_done"] = "tool_done"
    id: Optional[str] = None
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class StatsChunk(BaseModel):
    type: Literal["stats"] = "stats"
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class ResponseIdChunk(BaseModel):
    type: Literal["response_id"] = "response_id"
    id: str


class DoneChunk(BaseModel):
    type: Literal["done"] = "done"


class ErrorChunk(BaseModel):
    type: Literal["error"] = "error"
    message: str


StreamChunk = Annotated[
    Union[
        TextChunk,
        ReasoningChunk,
        ToolStartChunk,
        ToolDoneChunk,
        StatsChunk,
        ResponseIdChunk,
        DoneChunk,
        ErrorChunk,
    ],
    Field(discriminator="type"),
]


# =============================================================================
# MODEL LISTING
# =============================================================================

class ModelInfo(BaseModel):
    """One chat-capable model advertised by a server."""
    id: str
    state: str = "unknown"
    type: str = "llm"
    quantization: Optional[str] = None
    max_context: Optional[int] = None
    arch: Optional[str] = None
