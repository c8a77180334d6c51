"""
Adapters for local model servers that speak the typed ``output`` dialects.

Two variants share one response shape::

    {"output": [{"type": "reasoning", "content": "..."},
                {"type": "tool_call", "tool": "...", "arguments": {...}, "output": "..."},
                {"type": "message", "content": "..."}],
     "stats": {...}, "usage": {...}, "response_id": "..."}

- ``LocalRestAdapter`` is stateless: every call carries the system prompt and
  the latest user text, and nothing is stored server side.
- ``StatefulLocalAdapter`` chains calls with ``previous_response_id`` and
  delegates tool execution to server-side integrations. Executed tool calls
  come back as ``tool_call`` output items.

Both stream the same named-event vocabulary; the terminal ``chat.end`` event
carries the complete non-streaming payload.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from colony.agents.exceptions import ConfigurationError
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
    ResponseIdChunk,
    StatsChunk,
    TextChunk,
    ToolStartChunk,
    UnifiedCompletionResult,
)
from colony.models.utils import extract_reasoning

logger = logging.getLogger(__name__)

REASONING_ITEM_TYPES = ("reasoning", "thinking")

# Input/output token counts, in priority order: (container, key)
INPUT_TOKEN_SOURCES = (("usage", "input_tokens"), ("usage", "prompt_tokens"), ("stats", "prompt_eval_count"))
OUTPUT_TOKEN_SOURCES = (("usage", "output_tokens"), ("usage", "completion_tokens"), ("stats", "tokens_generated"))


def _first_present(raw_response: Dict[str, Any], sources) -> Optional[int]:
    for container, key in sources:
        value = (raw_response.get(container) or {}).get(key)
        if value is not None:
            return value
    return None


class LocalRestAdapter(APIProviderAdapter):
    """Adapter for the stateless local REST dialect (no client-side tools)"""

    dialect = WireDialect.LOCAL_REST
    provider = "local"

    def get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _user_input(self, request: CompletionRequest) -> str:
        user_input = self.latest_user_text(request.conversation)
        if user_input is None:
            raise ConfigurationError(
                "No user message to send.",
                config_field="conversation",
            )
        return user_input

    def format_request_payload(self, request: CompletionRequest, stream: bool = False) -> Dict[str, Any]:
        payload = {
            "model": self.model_name,
            "input": self._user_input(request),
            "store": False,
        }
        if request.system_prompt:
            payload["system_prompt"] = request.system_prompt
        if stream:
            payload["stream"] = True
        return payload

    def _merge_stats(self, raw_response: Dict[str, Any]) -> Optional[CompletionStats]:
        """Performance stats merged with token counts from whichever field is populated."""
        perf_stats = raw_response.get("stats") or {}
        input_tokens = _first_present(raw_response, INPUT_TOKEN_SOURCES)
        output_tokens = _first_present(raw_response, OUTPUT_TOKEN_SOURCES)
        if not perf_stats and input_tokens is None and output_tokens is None:
            return None
        return CompletionStats(**{**perf_stats, "input_tokens": input_tokens, "output_tokens": output_tokens})

    def harmonize_response(self, raw_response: Dict[str, Any]) -> UnifiedCompletionResult:
        """Convert a typed-output response to a unified result"""
        outputs = raw_response.get("output")
        if not isinstance(outputs, list):
            if raw_response.get("choices"):
                return self._harmonize_choices(raw_response)
            outputs = []

        # The last message item is the answer; tool activity may precede it
        messages = [item for item in outputs if item.get("type") == "message"]
        text = messages[-1].get("content") if messages else None

        reasoning_item = next(
            (item for item in outputs if item.get("type") in REASONING_ITEM_TYPES),
            None,
        )

        return UnifiedCompletionResult(
            text=text if text is not None else NO_RESPONSE,
            raw_content=outputs,
            mode=self.dialect,
            reasoning=reasoning_item.get("content") if reasoning_item else None,
            stats=self._merge_stats(raw_response),
            **self._chain_fields(raw_response, outputs),
        )

    def _chain_fields(self, raw_response: Dict[str, Any], outputs: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Fields only the stateful dialect reports."""
        return {}

    def _harmonize_choices(self, raw_response: Dict[str, Any]) -> UnifiedCompletionResult:
        # Some server builds answer this route in chat completions shape
        message = (raw_response["choices"][0] or {}).get("message") or {}
        text, reasoning = extract_reasoning(message.get("content"))
        return UnifiedCompletionResult(
            text=text or NO_RESPONSE,
            raw_content=message,
            mode=self.dialect,
            reasoning=reasoning,
            stats=self._merge_stats(raw_response),
        )

    def create_stream_state(self) -> StreamState:
        return LocalEventStreamState(self)


class StatefulLocalAdapter(LocalRestAdapter):
    """Adapter for the stateful local dialect with response-id chaining"""

    dialect = WireDialect.LOCAL_STATEFUL
    provider = "local-stateful"

    def format_request_payload(self, request: CompletionRequest, stream: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model_name,
            "input": self._user_input(request),
        }
        # The server already holds the system prompt for a chained conversation
        if request.system_prompt and not request.previous_response_id:
            payload["system_prompt"] = request.system_prompt
        if request.previous_response_id:
            payload["previous_response_id"] = request.previous_response_id
        if request.store is False:
            payload["store"] = False
        if request.integrations:
            payload["integrations"] = request.integrations
        if stream:
            payload["stream"] = True
        return payload

    def _chain_fields(self, raw_response: Dict[str, Any], outputs: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "response_id": raw_response.get("response_id"),
            "server_tool_calls": [item for item in outputs if item.get("type") == "tool_call"],
        }


class LocalEventStreamState(StreamState):
    """Live chunk feed for the named-event local stream."""

    IGNORED_EVENTS = frozenset({
        "chat.start",
        "model_load.start",
        "model_load.progress",
        "model_load.end",
        "prompt_processing.start",
        "prompt_processing.progress",
        "prompt_processing.end",
        "reasoning.start",
        "reasoning.end",
        "message.start",
        "message.end",
        "tool_call.arguments",
        "tool_call.success",
        "tool_call.failure",
    })

    def __init__(self, adapter: APIProviderAdapter):
        super().__init__(adapter)
        self.text = ""
        self.reasoning = ""
        self.result: Optional[UnifiedCompletionResult] = None

    def handle_event(self, event: ServerSentEvent) -> None:
        try:
            data = event.json()
        except json.JSONDecodeError:
            logger.warning(f"Skipping undecodable stream event: {event.data[:100]}")
            return
        if not isinstance(data, dict):
            return

        event_type = event.event or data.get("type")

        if event_type in self.IGNORED_EVENTS:
            return

        if event_type == "message.delta":
            delta = data.get("content") or ""
            if delta:
                self.text += delta
                self.emit(TextChunk(delta=delta))

        elif event_type == "reasoning.delta":
            delta = data.get("content") or ""
            if delta:
                self.reasoning += delta
                self.emit(ReasoningChunk(delta=delta))

        elif event_type == "tool_call.start":
            self.emit(ToolStartChunk(id=data.get("id"), name=data.get("tool") or data.get("name") or "tool"))

        elif event_type == "chat.end":
            payload = data.get("result") or data
            self.result = self.adapter.harmonize_response(payload)
            if self.result.stats and self.result.stats.input_tokens is not None:
                self.emit(
                    StatsChunk(
                        input_tokens=self.result.stats.input_tokens,
                        output_tokens=self.result.stats.output_tokens,
                    )
                )
            if self.result.response_id:
                self.emit(ResponseIdChunk(id=self.result.response_id))
            self.finished = True

        elif event_type == "error":
            error = data.get("error")
            if isinstance(error, dict):
                message = error.get("message")
            else:
                message = error or data.get("message")
            raise self.stream_error(message or "Stream error")

        else:
            logger.debug(f"Ignoring unknown stream event: {event_type}")

    def partial_output(self) -> Tuple[Optional[str], Optional[str]]:
        return self.text or None, self.reasoning or None

    def build_result(self) -> UnifiedCompletionResult:
        return self.result
