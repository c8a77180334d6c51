"""
Tests for the dialect adapters in colony.models.adapters.

This module tests:
- Request building per dialect (headers, payload shape, tool conversion)
- Result parsing per dialect (text, reasoning, tool calls, stats, chaining)
- ProviderAdapterFactory selection
"""

import pytest

from colony.agents.exceptions import ConfigurationError
from colony.models.adapters import (
    AnthropicAdapter,
    CompletionRequest,
    LocalRestAdapter,
    OpenAIAdapter,
    ProviderAdapterFactory,
    StatefulLocalAdapter,
)
from colony.models.dialects import WireDialect
from colony.models.response_models import NO_RESPONSE

READ_TOOL = {
    "name": "fs_read",
    "description": "Read a file",
    "input_schema": {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    },
}


def make_request(**kwargs):
    kwargs.setdefault("conversation", [{"role": "user", "content": "hello"}])
    return CompletionRequest(**kwargs)


# =============================================================================
# Anthropic Tests
# =============================================================================

class TestAnthropicRequest:
    """Tests for AnthropicAdapter request building."""

    def test_headers_with_key(self):
        adapter = AnthropicAdapter("claude-x", api_key="sk-ant", base_url="https://api.anthropic.com/v1/messages")
        headers = adapter.get_headers()

        assert headers["anthropic-version"] == "2023-06-01"
        assert headers["x-api-key"] == "sk-ant"

    def test_headers_without_key(self):
        adapter = AnthropicAdapter("claude-x", base_url="http://localhost:8080/v1/messages")

        assert "x-api-key" not in adapter.get_headers()

    def test_payload(self):
        adapter = AnthropicAdapter("claude-x", base_url="https://api.anthropic.com/v1/messages", max_tokens=512)
        payload = adapter.format_request_payload(make_request(system_prompt="Be kind", tools=[READ_TOOL]))

        assert payload["model"] == "claude-x"
        assert payload["max_tokens"] == 512
        assert payload["system"] == "Be kind"
        assert payload["messages"] == [{"role": "user", "content": "hello"}]
        assert payload["tools"] == [READ_TOOL]
        assert "stream" not in payload

    def test_payload_without_optional_fields(self):
        adapter = AnthropicAdapter("claude-x", base_url="https://api.anthropic.com/v1/messages")
        payload = adapter.format_request_payload(make_request(), stream=True)

        assert "system" not in payload
        assert "tools" not in payload
        assert payload["stream"] is True


class TestAnthropicParse:
    """Tests for AnthropicAdapter.harmonize_response."""

    def setup_method(self):
        self.adapter = AnthropicAdapter("claude-x", base_url="https://api.anthropic.com/v1/messages")

    def test_text_response(self):
        result = self.adapter.harmonize_response({
            "content": [{"type": "text", "text": "Hi there"}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 10, "output_tokens": 5},
        })

        assert result.text == "Hi there"
        assert result.tool_use is None
        assert result.mode == WireDialect.ANTHROPIC
        assert result.stats.input_tokens == 10
        assert result.stats.output_tokens == 5

    def test_tool_use_response(self):
        content = [
            {"type": "text", "text": "Let me check."},
            {"type": "tool_use", "id": "tu_1", "name": "fs_read", "input": {"path": "a.md"}},
        ]
        result = self.adapter.harmonize_response({"content": content, "stop_reason": "tool_use"})

        assert result.text == "Let me check."
        assert len(result.tool_use) == 1
        assert result.tool_use[0].id == "tu_1"
        assert result.tool_use[0].name == "fs_read"
        assert result.tool_use[0].input == {"path": "a.md"}
        assert result.raw_content == content

    def test_tool_use_blocks_ignored_without_tool_use_stop(self):
        result = self.adapter.harmonize_response({
            "content": [
                {"type": "text", "text": "done"},
                {"type": "tool_use", "id": "tu_1", "name": "fs_read", "input": {}},
            ],
            "stop_reason": "end_turn",
        })

        assert result.tool_use is None
        assert result.text == "done"

    def test_thinking_blocks(self):
        result = self.adapter.harmonize_response({
            "content": [
                {"type": "thinking", "thinking": "step one"},
                {"type": "thinking", "thinking": "step two"},
                {"type": "text", "text": "answer"},
            ],
            "stop_reason": "end_turn",
        })

        assert result.reasoning == "step one\nstep two"
        assert result.text == "answer"

    def test_empty_content(self):
        result = self.adapter.harmonize_response({"content": [], "stop_reason": "end_turn"})

        assert result.text == NO_RESPONSE
        assert result.stats is None


# =============================================================================
# OpenAI Tests
# =============================================================================

class TestOpenAIRequest:
    """Tests for OpenAIAdapter request building."""

    def setup_method(self):
        self.adapter = OpenAIAdapter("gpt-x", api_key="sk-1", base_url="https://api.openai.com/v1/chat/completions")

    def test_bearer_header(self):
        assert self.adapter.get_headers()["Authorization"] == "Bearer sk-1"

    def test_system_prompt_prepended(self):
        payload = self.adapter.format_request_payload(make_request(system_prompt="sys"))

        assert payload["messages"][0] == {"role": "system", "content": "sys"}
        assert payload["messages"][1] == {"role": "user", "content": "hello"}
        assert payload["stream"] is False

    def test_conversation_not_mutated(self):
        conversation = [{"role": "user", "content": "hello"}]
        self.adapter.format_request_payload(make_request(conversation=conversation, system_prompt="sys"))

        assert conversation == [{"role": "user", "content": "hello"}]

    def test_tools_converted(self):
        payload = self.adapter.format_request_payload(make_request(tools=[READ_TOOL]))

        assert payload["tools"] == [{
            "type": "function",
            "function": {
                "name": "fs_read",
                "description": "Read a file",
                "parameters": READ_TOOL["input_schema"],
            },
        }]

    def test_stream_requests_usage(self):
        payload = self.adapter.format_request_payload(make_request(), stream=True)

        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}


class TestOpenAIParse:
    """Tests for OpenAIAdapter.harmonize_response."""

    def setup_method(self):
        self.adapter = OpenAIAdapter("gpt-x", base_url="http://localhost:1234/v1/chat/completions")

    def test_text_response(self):
        result = self.adapter.harmonize_response({
            "choices": [{"message": {"role": "assistant", "content": "Hello"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 3},
        })

        assert result.text == "Hello"
        assert result.reasoning is None
        assert result.stats.input_tokens == 12
        assert result.stats.output_tokens == 3

    def test_no_choices(self):
        result = self.adapter.harmonize_response({"choices": []})

        assert result.text == NO_RESPONSE
        assert result.tool_use is None

    def test_think_prefix_extracted(self):
        result = self.adapter.harmonize_response({
            "choices": [{"message": {"content": "<think>hmm</think>Answer"}, "finish_reason": "stop"}],
        })

        assert result.text == "Answer"
        assert result.reasoning == "hmm"

    def test_structured_reasoning_field(self):
        result = self.adapter.harmonize_response({
            "choices": [{
                "message": {"content": "Answer", "reasoning_content": "because"},
                "finish_reason": "stop",
            }],
        })

        assert result.text == "Answer"
        assert result.reasoning == "because"

    def test_tool_calls(self):
        message = {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {"id": "call_a", "type": "function", "function": {"name": "fs_read", "arguments": '{"path": "x"}'}},
                {"type": "function", "function": {"name": "fs_list", "arguments": "{broken"}},
            ],
        }
        result = self.adapter.harmonize_response({
            "choices": [{"message": message, "finish_reason": "tool_calls"}],
        })

        assert result.text is None
        assert [c.name for c in result.tool_use] == ["fs_read", "fs_list"]
        assert result.tool_use[0].input == {"path": "x"}
        assert result.tool_use[1].id == "call_1"
        assert result.tool_use[1].input == {}
        assert result.raw_content == message

    def test_tool_calls_with_text(self):
        result = self.adapter.harmonize_response({
            "choices": [{
                "message": {
                    "content": "Checking.",
                    "tool_calls": [{"id": "c1", "function": {"name": "t", "arguments": "{}"}}],
                },
                "finish_reason": "tool_calls",
            }],
        })

        assert result.text == "Checking."
        assert result.has_tool_calls()

    def test_empty_content(self):
        result = self.adapter.harmonize_response({
            "choices": [{"message": {"content": ""}, "finish_reason": "stop"}],
        })

        assert result.text == NO_RESPONSE


# =============================================================================
# Local REST Tests
# =============================================================================

class TestLocalRestAdapter:
    """Tests for the stateless local dialect."""

    def setup_method(self):
        self.adapter = LocalRestAdapter("qwen", base_url="http://localhost:1234/api/v0/chat")

    def test_payload_uses_latest_user_text(self):
        conversation = [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "second"},
        ]
        payload = self.adapter.format_request_payload(make_request(conversation=conversation, system_prompt="sys"))

        assert payload == {"model": "qwen", "input": "second", "store": False, "system_prompt": "sys"}

    def test_missing_user_text(self):
        with pytest.raises(ConfigurationError):
            self.adapter.format_request_payload(make_request(conversation=[{"role": "assistant", "content": "hi"}]))

    def test_parse_output_items(self):
        result = self.adapter.harmonize_response({
            "output": [
                {"type": "reasoning", "content": "thinking it over"},
                {"type": "message", "content": "draft"},
                {"type": "message", "content": "final answer"},
            ],
            "stats": {"tokens_per_second": 42.0, "prompt_eval_count": 100, "tokens_generated": 20},
        })

        assert result.text == "final answer"
        assert result.reasoning == "thinking it over"
        assert result.stats.input_tokens == 100
        assert result.stats.output_tokens == 20
        assert result.stats.model_extra["tokens_per_second"] == 42.0
        assert result.response_id is None

    def test_usage_takes_priority_over_stats(self):
        result = self.adapter.harmonize_response({
            "output": [{"type": "message", "content": "ok"}],
            "usage": {"input_tokens": 7, "output_tokens": 2},
            "stats": {"prompt_eval_count": 100, "tokens_generated": 20},
        })

        assert result.stats.input_tokens == 7
        assert result.stats.output_tokens == 2

    def test_no_message_item(self):
        result = self.adapter.harmonize_response({"output": []})

        assert result.text == NO_RESPONSE
        assert result.stats is None

    def test_choices_fallback(self):
        result = self.adapter.harmonize_response({
            "choices": [{"message": {"content": "<think>r</think>t"}}],
        })

        assert result.text == "t"
        assert result.reasoning == "r"


# =============================================================================
# Stateful Local Tests
# =============================================================================

class TestStatefulLocalAdapter:
    """Tests for the stateful local dialect."""

    def setup_method(self):
        self.adapter = StatefulLocalAdapter("qwen", base_url="http://localhost:1234/api/v1/chat")

    def test_first_turn_sends_system_prompt(self):
        payload = self.adapter.format_request_payload(make_request(system_prompt="sys"))

        assert payload == {"model": "qwen", "input": "hello", "system_prompt": "sys"}

    def test_chained_turn_omits_system_prompt(self):
        payload = self.adapter.format_request_payload(
            make_request(system_prompt="sys", previous_response_id="resp_1")
        )

        assert payload["previous_response_id"] == "resp_1"
        assert "system_prompt" not in payload
        assert "store" not in payload

    def test_isolated_call(self):
        integrations = [{"type": "ephemeral_mcp", "server_label": "reef", "server_url": "http://127.0.0.1:9", "allowed_tools": ["memory_save"]}]
        payload = self.adapter.format_request_payload(
            make_request(store=False, integrations=integrations), stream=True
        )

        assert payload["store"] is False
        assert payload["integrations"] == integrations
        assert payload["stream"] is True

    def test_parse_chaining_and_server_tools(self):
        tool_item = {"type": "tool_call", "tool": "memory_save", "arguments": {"body": "x"}, "output": "saved"}
        result = self.adapter.harmonize_response({
            "output": [tool_item, {"type": "message", "content": "Saved it."}],
            "response_id": "resp_2",
        })

        assert result.text == "Saved it."
        assert result.response_id == "resp_2"
        assert result.server_tool_calls == [tool_item]
        assert result.tool_use is None
        assert result.mode == WireDialect.LOCAL_STATEFUL

    def test_no_server_tools(self):
        result = self.adapter.harmonize_response({"output": [{"type": "message", "content": "hi"}]})

        assert result.server_tool_calls is None


# =============================================================================
# Factory Tests
# =============================================================================

class TestProviderAdapterFactory:
    """Tests for ProviderAdapterFactory."""

    @pytest.mark.parametrize("url,adapter_class", [
        ("https://api.anthropic.com/v1/messages", AnthropicAdapter),
        ("https://api.openai.com/v1/chat/completions", OpenAIAdapter),
        ("http://localhost:1234/api/v0/chat", LocalRestAdapter),
        ("http://localhost:1234/api/v1/chat", StatefulLocalAdapter),
    ])
    def test_selects_adapter_by_url(self, url, adapter_class):
        adapter = ProviderAdapterFactory.create_adapter("m", None, url)

        assert type(adapter) is adapter_class
        assert adapter.get_endpoint_url() == url

    def test_explicit_dialect(self):
        adapter = ProviderAdapterFactory.create_adapter(
            "m", None, "http://example.com/chat", dialect=WireDialect.ANTHROPIC
        )

        assert isinstance(adapter, AnthropicAdapter)

    def test_kwargs_passed(self):
        adapter = ProviderAdapterFactory.create_adapter(
            "m", "k", "http://example.com/chat", max_tokens=99, timeout=5.0
        )

        assert adapter.max_tokens == 99
        assert adapter.timeout == 5.0
        assert adapter.api_key == "k"
