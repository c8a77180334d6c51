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
from colony.models.utils import extract_reasoning, parse_tool_arguments

logger = logging.getLogger(__name__)

# Structured reasoning fields some OpenAI-compatible servers add to the message
REASONING_FIELDS = ("reasoning_content", "reasoning")


def to_function_tool(tool: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a canonical tool schema to the function-calling shape.

    Canonical: {"name": ..., "description": ..., "input_schema": ...}
    Function:  {"type": "function", "function": {"name": ..., "description": ..., "parameters": ...}}
    """
    if tool.get("type") == "function" and "function" in tool:
        return tool
    return {
        "type": "function",
        "function": {
            "name": tool.get("name"),
            "description": tool.get("description", ""),
            "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
        },
    }


def structured_reasoning(message: Dict[str, Any]) -> Optional[str]:
    for field_name in REASONING_FIELDS:
        value = message.get(field_name)
        if isinstance(value, str) and value:
            return value
    return None


class OpenAIAdapter(APIProviderAdapter):
    """Adapter for OpenAI and OpenAI-compatible chat completions endpoints"""

    dialect = WireDialect.OPENAI
    provider = "openai"

    def get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def format_request_payload(self, request: CompletionRequest, stream: bool = False) -> Dict[str, Any]:
        messages = list(request.conversation)
        if request.system_prompt:
            messages.insert(0, {"role": "system", "content": request.system_prompt})

        payload = {
            "model": self.model_name,
            "messages": messages,
            "max_tokens": request.max_tokens or self.max_tokens,
            "stream": stream,
        }
        if stream:
            # Usage is only sent on the final chunk when explicitly requested
            payload["stream_options"] = {"include_usage": True}
        if request.tools:
            payload["tools"] = [to_function_tool(tool) for tool in request.tools]
        return payload

    def harmonize_response(self, raw_response: Dict[str, Any]) -> UnifiedCompletionResult:
        """Convert a chat completions response to a unified result"""
        choices = raw_response.get("choices") or []
        choice = choices[0] if choices else {}
        message = choice.get("message")
        if not message:
            return UnifiedCompletionResult(text=NO_RESPONSE, mode=self.dialect)

        usage = raw_response.get("usage")
        stats = None
        if usage:
            stats = CompletionStats(
                input_tokens=usage.get("prompt_tokens"),
                output_tokens=usage.get("completion_tokens"),
            )

        content = message.get("content")
        reasoning = structured_reasoning(message)
        if reasoning is not None:
            body, reasoning = content, reasoning.strip() or None
        else:
            # Reasoning models served over this dialect often prefix <think>...</think>
            body, reasoning = extract_reasoning(content)

        tool_calls = message.get("tool_calls") or []
        if choice.get("finish_reason") == "tool_calls" and tool_calls:
            tool_use = []
            for i, tc in enumerate(tool_calls):
                function = tc.get("function") or {}
                tool_use.append(
                    ToolCall(
                        id=tc.get("id") or f"call_{i}",
                        name=function.get("name") or "",
                        input=parse_tool_arguments(function.get("arguments")),
                    )
                )
            text = body if content and body != NO_RESPONSE else None
            return UnifiedCompletionResult(
                text=text,
                tool_use=tool_use,
                raw_content=message,
                mode=self.dialect,
                reasoning=reasoning,
                stats=stats,
            )

        return UnifiedCompletionResult(
            text=body if content else NO_RESPONSE,
            raw_content=message,
            mode=self.dialect,
            reasoning=reasoning,
            stats=stats,
        )

    def create_stream_state(self) -> StreamState:
        return OpenAIStreamState(self)


@dataclass
class ToolCallState:
    """Fragments of one streamed tool call, keyed by its index."""
    index: int
    id: Optional[str] = None
    name: str = ""
    arguments: str = ""
    started: bool = False
    done: bool = False

    def to_message_entry(self) -> Dict[str, Any]:
        return {
            "id": self.id or f"call_{self.index}",
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class OpenAIStreamState(StreamState):
    """
    Reassembles a chat completions delta stream.

    Tool-call fragments are accumulated per index and only materialized once
    the choice reports a finish reason (or the stream ends).
    """

    def __init__(self, adapter: APIProviderAdapter):
        super().__init__(adapter)
        self.text = ""
        self.reasoning = ""
        self.tool_calls: Dict[int, ToolCallState] = {}
        self.finish_reason: Optional[str] = None
        self.usage: Optional[Dict[str, Any]] = None
        self.response_meta: Dict[str, Any] = {}

    def handle_event(self, event: ServerSentEvent) -> None:
        if event.data.strip() == "[DONE]":
            self.finished = True
            return

        try:
            data = event.json()
        except json.JSONDecodeError:
            logger.warning(f"Skipping undecodable stream event: {event.data[:100]}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Skipping non-object stream event: {event.data[:100]}")
            return

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise self.stream_error(message or "Stream error")

        if data.get("id") and not self.response_meta:
            self.response_meta = {"id": data.get("id"), "model": data.get("model")}

        if data.get("usage"):
            self.usage = data["usage"]
            self.emit(
                StatsChunk(
                    input_tokens=self.usage.get("prompt_tokens"),
                    output_tokens=self.usage.get("completion_tokens"),
                )
            )

        for choice in data.get("choices") or []:
            if choice.get("index", 0) != 0:
                continue
            delta = choice.get("delta") or {}

            if delta.get("content"):
                self.text += delta["content"]
                self.emit(TextChunk(delta=delta["content"]))

            reasoning_delta = structured_reasoning(delta)
            if reasoning_delta:
                self.reasoning += reasoning_delta
                self.emit(ReasoningChunk(delta=reasoning_delta))

            for fragment in delta.get("tool_calls") or []:
                self._accumulate_tool_call(fragment)

            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
                self._materialize_tool_calls()

    def _accumulate_tool_call(self, fragment: Dict[str, Any]) -> None:
        index = fragment.get("index", 0)
        state = self.tool_calls.get(index)
        if state is None:
            state = ToolCallState(index=index)
            self.tool_calls[index] = state

        if fragment.get("id"):
            state.id = fragment["id"]
        function = fragment.get("function") or {}
        # Names arrive whole; some servers repeat them on every fragment
        if function.get("name") and not state.name:
            state.name = function["name"]
        if function.get("arguments"):
            state.arguments += function["arguments"]

        if state.name and not state.started:
            state.started = True
            self.emit(ToolStartChunk(id=state.id, name=state.name))

    def _materialize_tool_calls(self) -> None:
        for index in sorted(self.tool_calls):
            state = self.tool_calls[index]
            if state.done:
                continue
            state.done = True
            self.emit(
                ToolDoneChunk(
                    id=state.id or f"call_{state.index}",
                    name=state.name,
                    input=parse_tool_arguments(state.arguments),
                )
            )

    @property
    def complete(self) -> bool:
        # Servers that skip [DONE] still report a finish reason
        return self.finished or self.finish_reason is not None

    def partial_output(self) -> Tuple[Optional[str], Optional[str]]:
        if self.reasoning:
            return self.text or None, self.reasoning
        return extract_reasoning(self.text or None)

    def build_result(self) -> UnifiedCompletionResult:
        self._materialize_tool_calls()

        message: Dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self.reasoning:
            message["reasoning_content"] = self.reasoning
        if self.tool_calls:
            message["tool_calls"] = [
                self.tool_calls[index].to_message_entry() for index in sorted(self.tool_calls)
            ]

        raw_response: Dict[str, Any] = {
            **self.response_meta,
            "choices": [{"index": 0, "message": message, "finish_reason": self.finish_reason}],
        }
        if self.usage:
            raw_response["usage"] = self.usage
        return self.adapter.harmonize_response(raw_response)
