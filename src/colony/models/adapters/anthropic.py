import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from colony.models.adapters.base import (
    APIProviderAdapter,
    CompletionRequest,
    ServerSentEvent,
    StreamState,
)
from colony.models.dialects import WireDialect
from colony.models.response_models import (
    NO_RESPONSE,
    CompletionStats,
    ReasoningChunk,
    StatsChunk,
    TextChunk,
    ToolCall,
    ToolDoneChunk,
    ToolStartChunk,
    UnifiedCompletionResult,
)
from colony.models.utils import parse_tool_arguments

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter(APIProviderAdapter):
    """Adapter for the Anthropic messages API"""

    dialect = WireDialect.ANTHROPIC
    provider = "anthropic"

    def get_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def format_request_payload(self, request: CompletionRequest, stream: bool = False) -> Dict[str, Any]:
        # Conversation entries are already in messages-API shape (text, tool_use, tool_result blocks)
        payload = {
            "model": self.model_name,
            "max_tokens": request.max_tokens or self.max_tokens,
            "messages": request.conversation,
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if request.tools:
            payload["tools"] = request.tools
        if stream:
            payload["stream"] = True
        return payload

    def harmonize_response(self, raw_response: Dict[str, Any]) -> UnifiedCompletionResult:
        """Convert a messages API response to a unified result"""
        content = raw_response.get("content") or []

        # Extended-thinking blocks, present when thinking is enabled
        thinking = "\n".join(
            block.get("thinking") or "" for block in content if block.get("type") == "thinking"
        ).strip() or None

        first_text = next(
            (block.get("text") for block in content if block.get("type") == "text"),
            None,
        )

        tool_use = None
        if raw_response.get("stop_reason") == "tool_use":
            tool_use = [
                ToolCall(
                    id=block.get("id") or "",
                    name=block.get("name") or "",
                    input=parse_tool_arguments(block.get("input")),
                )
                for block in content
                if block.get("type") == "tool_use"
            ]

        text = first_text
        if not tool_use and text is None:
            text = NO_RESPONSE

        usage = raw_response.get("usage")
        stats = None
        if usage:
            stats = CompletionStats(
                input_tokens=usage.get("input_tokens"),
                output_tokens=usage.get("output_tokens"),
            )

        return UnifiedCompletionResult(
            text=text,
            tool_use=tool_use,
            raw_content=content,
            mode=self.dialect,
            reasoning=thinking,
            stats=stats,
        )

    def create_stream_state(self) -> StreamState:
        return AnthropicStreamState(self)


@dataclass
class BlockState:
    """One content block of a streamed message, keyed by its index."""
    index: int
    type: str
    text: str = ""
    thinking: str = ""
    signature: str = ""
    id: Optional[str] = None
    name: Optional[str] = None
    partial_json: str = ""
    input: Optional[Dict[str, Any]] = None
    closed: bool = False

    def close(self) -> None:
        if self.type == "tool_use" and self.input is None:
            self.input = parse_tool_arguments(self.partial_json)
        self.closed = True

    def to_content(self) -> Dict[str, Any]:
        if self.type == "text":
            return {"type": "text", "text": self.text}
        if self.type == "thinking":
            block = {"type": "thinking", "thinking": self.thinking}
            if self.signature:
                block["signature"] = self.signature
            return block
        if self.type == "tool_use":
            return {
                "type": "tool_use",
                "id": self.id,
                "name": self.name,
                "input": self.input if self.input is not None else parse_tool_arguments(self.partial_json),
            }
        return {"type": self.type}


class AnthropicStreamState(StreamState):
    """
    Reassembles a messages API event stream.

    Blocks move from open to closed on ``content_block_stop``; tool input JSON
    is only parsed once its block closes.
    """

    _DELTA_BLOCK_TYPES = {
        "text_delta": "text",
        "thinking_delta": "thinking",
        "signature_delta": "thinking",
        "input_json_delta": "tool_use",
    }

    def __init__(self, adapter: APIProviderAdapter):
        super().__init__(adapter)
        self.blocks: Dict[int, BlockState] = {}
        self.message: Dict[str, Any] = {}
        self.usage: Dict[str, Any] = {}
        self.stop_reason: Optional[str] = None

    def handle_event(self, event: ServerSentEvent) -> None:
        try:
            data = event.json()
        except json.JSONDecodeError:
            logger.warning(f"Skipping undecodable stream event: {event.data[:100]}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Skipping non-object stream event: {event.data[:100]}")
            return

        event_type = data.get("type") or event.event

        if event_type == "message_start":
            message = data.get("message") or {}
            self.message = {"id": message.get("id"), "model": message.get("model")}
            self._update_usage(message.get("usage"))

        elif event_type == "content_block_start":
            block = data.get("content_block") or {}
            state = self._open_block(data.get("index", 0), block.get("type", "text"))
            if state.type == "text" and block.get("text"):
                state.text = block["text"]
                self.emit(TextChunk(delta=block["text"]))
            elif state.type == "thinking" and block.get("thinking"):
                state.thinking = block["thinking"]
                self.emit(ReasoningChunk(delta=block["thinking"]))
            elif state.type == "tool_use":
                state.id = block.get("id")
                state.name = block.get("name")
                if block.get("input"):
                    state.input = block["input"]
                self.emit(ToolStartChunk(id=state.id, name=state.name or ""))

        elif event_type == "content_block_delta":
            delta = data.get("delta") or {}
            delta_type = delta.get("type")
            index = data.get("index", 0)
            state = self.blocks.get(index)
            if state is None:
                state = self._open_block(index, self._DELTA_BLOCK_TYPES.get(delta_type, "text"))
            if state.closed:
                logger.warning(f"Ignoring delta for closed content block {index}")
                return

            if delta_type == "text_delta":
                state.text += delta.get("text", "")
                self.emit(TextChunk(delta=delta.get("text", "")))
            elif delta_type == "thinking_delta":
                state.thinking += delta.get("thinking", "")
                self.emit(ReasoningChunk(delta=delta.get("thinking", "")))
            elif delta_type == "signature_delta":
                state.signature += delta.get("signature", "")
            elif delta_type == "input_json_delta":
                state.partial_json += delta.get("partial_json", "")

        elif event_type == "content_block_stop":
            state = self.blocks.get(data.get("index", 0))
            if state is None or state.closed:
                return
            state.close()
            if state.type == "tool_use":
                self.emit(ToolDoneChunk(id=state.id, name=state.name or "", input=state.input))

        elif event_type == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason"):
                self.stop_reason = delta["stop_reason"]
            self._update_usage(data.get("usage"))

        elif event_type == "message_stop":
            self.finished = True

        elif event_type == "error":
            error = data.get("error") or {}
            raise self.stream_error(error.get("message") or "Stream error")

    def _open_block(self, index: int, block_type: str) -> BlockState:
        state = BlockState(index=index, type=block_type)
        self.blocks[index] = state
        return state

    def _update_usage(self, usage: Optional[Dict[str, Any]]) -> None:
        if not usage:
            return
        for key in ("input_tokens", "output_tokens"):
            if usage.get(key) is not None:
                self.usage[key] = usage[key]
        self.emit(
            StatsChunk(
                input_tokens=self.usage.get("input_tokens"),
                output_tokens=self.usage.get("output_tokens"),
            )
        )

    def partial_output(self) -> Tuple[Optional[str], Optional[str]]:
        blocks = [self.blocks[index] for index in sorted(self.blocks)]
        text = "".join(b.text for b in blocks if b.type == "text")
        thinking = "\n".join(b.thinking for b in blocks if b.type == "thinking" and b.thinking)
        return text or None, thinking or None

    def build_result(self) -> UnifiedCompletionResult:
        content: List[Dict[str, Any]] = []
        for index in sorted(self.blocks):
            state = self.blocks[index]
            if not state.closed:
                state.close()
            content.append(state.to_content())

        raw_response = {
            **self.message,
            "content": content,
            "stop_reason": self.stop_reason,
        }
        if self.usage:
            raw_response["usage"] = dict(self.usage)
        return self.adapter.harmonize_response(raw_response)
