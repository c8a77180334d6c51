"""
Tests for the Colony registry and scheduler.

These tests run real entities against an in-process OpenAI-compatible server
(httpx.MockTransport), so every request the colony makes is observable.

This module tests:
- Registration, lookup and API access rules
- System prompt assembly and built-in tools
- Message queueing while an entity is busy
- Context compaction triggers and the compaction sequence
- Heartbeats, wake, colony_ask and failure reporting
"""

import asyncio
import json

import httpx
import pytest

from colony.agents.agents import LoopState
from colony.agents.exceptions import ConfigurationError, ToolExecutionError
from colony.agents.memory import WakeupResult
from colony.agents.registry import (
    COMPACT_PROMPT,
    HEARTBEAT_PROMPT,
    SESSION_START_FRESH_PROMPT,
    SESSION_START_PROMPT,
    Colony,
)
from colony.coordination.config import ColonySettings
from colony.models.response_models import CompletionStats

LOCAL_ENDPOINT = "http://localhost:1234/v1/chat/completions"
REMOTE_ENDPOINT = "https://api.openai.com/v1/chat/completions"

MEMORY_BLOCK = "--- MEMORY REINTEGRATION ---\nI like tide pools.\n---"


def last_user_text(body):
    for message in reversed(body["messages"]):
        if message["role"] == "user" and isinstance(message["content"], str):
            return message["content"]
    return None


def chat_reply(text, usage=None):
    body = {"choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}]}
    if usage:
        body["usage"] = usage
    return body


def tool_call_reply(name, arguments, call_id="call_a"):
    return {"choices": [{
        "index": 0,
        "message": {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": call_id, "type": "function",
                            "function": {"name": name, "arguments": json.dumps(arguments)}}],
        },
        "finish_reason": "tool_calls",
    }]}


class FakeServer:
    """OpenAI-compatible endpoint; replies "re: <last user text>" unless told otherwise."""

    def __init__(self, responder=None):
        self.responder = responder or (lambda body: chat_reply(f"re: {last_user_text(body)}"))
        self.bodies = []
        self.entered = asyncio.Event()
        self.gate = None
        self.models = []

    async def handle(self, request):
        if request.method == "GET":
            return httpx.Response(200, json={"data": self.models})
        body = json.loads(request.content)
        self.bodies.append(body)
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        reply = self.responder(body)
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)


class RecordingStore:
    """Long-term memory store that records what it is given."""

    def __init__(self, memories=None):
        self.memories = memories or []
        self.saved = []
        self.woken = []

    def save(self, entity, summary, title=None, memory_type="archival"):
        self.saved.append((entity, summary, title, memory_type))

    async def wakeup(self, entity):
        self.woken.append(entity)
        return WakeupResult(memories=self.memories, context_block=MEMORY_BLOCK if self.memories else "")


def make_colony(server, memory_store=None, **settings):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handle))
    colony = Colony(ColonySettings(**settings), memory_store=memory_store, client=client)
    return colony, client


# =============================================================================
# Registry Tests
# =============================================================================

class TestRegistry:

    def test_register_and_lookup(self):
        colony = Colony()
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")

        assert colony.get_session("nova") is session
        assert colony.find_session("NOVA ") is session
        assert colony.find_session("echo") is None

    def test_duplicate_name_rejected(self):
        colony = Colony()
        colony.register("Nova")

        with pytest.raises(ConfigurationError, match="already exists"):
            colony.register("nova")

    def test_empty_name_rejected(self):
        with pytest.raises(ConfigurationError):
            Colony().register("  ")

    def test_unknown_entity(self):
        with pytest.raises(ConfigurationError, match="Unknown entity: ghost"):
            Colony().get_session("ghost")

    def test_unregister(self):
        colony = Colony()
        colony.register("Nova")

        colony.unregister("NOVA")

        assert colony.sessions == {}

    def test_set_endpoint_resets_chain(self):
        colony = Colony()
        session = colony.register("Nova", endpoint="http://localhost:1234/api/v1/chat", model="qwen")
        session.last_response_id = "resp_1"

        colony.set_endpoint("Nova", LOCAL_ENDPOINT)

        assert session.last_response_id is None
        assert session.config.endpoint == LOCAL_ENDPOINT

    @pytest.mark.parametrize("endpoint,model,key,colony_key,expected", [
        (LOCAL_ENDPOINT, "qwen", None, None, True),
        ("http://192.168.1.5:1234/api/v1/chat", "qwen", None, None, True),
        (REMOTE_ENDPOINT, "gpt", None, None, False),
        (REMOTE_ENDPOINT, "gpt", "sk-own", None, True),
        (REMOTE_ENDPOINT, "gpt", None, "sk-shared", True),
        (LOCAL_ENDPOINT, None, None, None, False),
        (LOCAL_ENDPOINT, "custom", None, None, False),
        (None, "qwen", None, None, False),
    ])
    def test_has_api_access(self, monkeypatch, endpoint, model, key, colony_key, expected):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        colony = Colony(ColonySettings(api_key=colony_key))
        colony.register("Nova", endpoint=endpoint, model=model, api_key=key)

        assert colony.has_api_access("Nova") is expected


# =============================================================================
# Prompt and Built-in Tool Tests
# =============================================================================

class TestPromptsAndTools:

    def test_system_prompt_sections(self):
        colony = Colony(ColonySettings(
            base_system_prompt="Base.",
            operator_name="Ada",
            operator_about="Builds things.",
        ))
        colony.register("Nova", system_prompt="You are Nova.")

        assert colony.build_system_prompt("Nova") == (
            "Base.\n\nYou are Nova.\n\n[OPERATOR]\nName: Ada\nAbout: Builds things."
        )

    def test_empty_system_prompt(self):
        colony = Colony()
        colony.register("Nova")

        assert colony.build_system_prompt("Nova") is None

    def test_colony_ask_needs_two_entities(self):
        colony = Colony()
        colony.register("Nova")
        assert not colony.builtin_tools("Nova").has_tool("colony_ask")

        colony.register("Echo")
        definition = next(d for d in colony.builtin_tools("Nova").definitions() if d["name"] == "colony_ask")

        assert definition["input_schema"]["properties"]["to"]["enum"] == ["nova", "echo"]
        assert definition["input_schema"]["required"] == ["to", "message"]

    @pytest.mark.asyncio
    async def test_memory_save_tool(self):
        store = RecordingStore()
        colony = Colony(memory_store=store)
        colony.register("Nova")

        builtins = colony.builtin_tools("Nova")
        result = await builtins.execute("memory_save", {"type": "archival", "title": "Day one", "body": "We met."})

        assert result == "Memory saved."
        assert store.saved == [("Nova", "We met.", "Day one", "archival")]

    def test_no_memory_save_without_store(self):
        colony = Colony()
        colony.register("Nova")

        assert not colony.builtin_tools("Nova").has_tool("memory_save")


# =============================================================================
# Message Queue Tests
# =============================================================================

class TestMessageQueue:

    @pytest.mark.asyncio
    async def test_message_queued_while_thinking(self):
        server = FakeServer()
        server.gate = asyncio.Event()
        colony, client = make_colony(server)
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")

        async with client:
            first = asyncio.create_task(colony.send("Nova", "first"))
            await server.entered.wait()
            assert session.thinking is True

            queued = await colony.send("Nova", "second")
            assert queued is None
            assert list(session.pending) == ["second"]

            server.gate.set()
            outcome = await first

        assert outcome.text == "re: first"
        assert [last_user_text(b) for b in server.bodies] == ["first", "second"]
        assert [m["content"] for m in session.memory.retrieve_all()] == [
            "first", "re: first", "second", "re: second",
        ]
        assert session.busy is False
        assert colony.event_bus.events_of("MessageQueuedEvent")[0].queue_length == 1

    @pytest.mark.asyncio
    async def test_loop_failure_reported(self):
        server = FakeServer(lambda body: httpx.Response(500, json={"error": {"message": "model crashed"}}))
        colony, client = make_colony(server)
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")

        async with client:
            outcome = await colony.send("Nova", "hello")

        assert outcome.state == LoopState.FAILED
        assert outcome.error == "model crashed"
        error = colony.event_bus.events_of("ErrorEvent")[0]
        assert error.error_code == "MODEL_API_SERVICE_UNAVAILABLE_ERROR"
        assert colony.event_bus.events_of("LoopCompleteEvent")[0].state == "failed"
        assert session.thinking is False
        assert session.busy is False

    @pytest.mark.asyncio
    async def test_configuration_error_before_network(self):
        server = FakeServer()
        colony, client = make_colony(server)
        colony.register("Nova", endpoint=LOCAL_ENDPOINT)

        async with client:
            outcome = await colony.send("Nova", "hello")

        assert outcome.error == "No model selected for this entity."
        assert server.bodies == []


# =============================================================================
# Compaction Tests
# =============================================================================

class TestCompaction:

    def fill(self, session, chars):
        half = chars // 2
        session.memory.add(role="user", content="u" * half)
        session.memory.add(role="assistant", content="a" * half)

    def test_estimate_alone_never_triggers(self):
        colony = Colony(ColonySettings(context_window=8000))
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")
        self.fill(session, 30400)

        usage = colony.context_usage("Nova")

        assert usage["estimated"] is True
        assert usage["tokens"] == 7600
        assert usage["ratio"] == pytest.approx(0.95)
        assert colony.needs_compaction("Nova") is False

    def test_real_counts_trigger(self):
        colony = Colony(ColonySettings(context_window=8000))
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")
        session.memory.add(role="user", content="hi")
        session.last_stats = CompletionStats(input_tokens=7000, output_tokens=600)

        assert colony.needs_compaction("Nova") is True
        assert colony.context_usage("Nova")["estimated"] is False

    def test_model_context_caps_window(self):
        colony = Colony(ColonySettings(context_window=8000))
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")
        session.max_context = 4096
        session.last_stats = CompletionStats(input_tokens=3500)

        assert colony.effective_context_window("Nova") == 4096
        assert colony.needs_compaction("Nova") is True

    def test_message_count_fallback(self):
        colony = Colony(ColonySettings(compact_message_threshold=4))
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")
        self.fill(session, 10)
        assert colony.needs_compaction("Nova") is False

        self.fill(session, 10)
        assert colony.needs_compaction("Nova") is True

    @pytest.mark.asyncio
    async def test_compaction_runs_before_next_message(self):
        store = RecordingStore()

        def responder(body):
            if body["messages"][-1]["role"] == "tool":
                return chat_reply("Saved.")
            if last_user_text(body) == COMPACT_PROMPT:
                return tool_call_reply("memory_save", {"type": "archival", "title": "Session", "body": "Summary."})
            return chat_reply(f"re: {last_user_text(body)}")

        server = FakeServer(responder)
        colony, client = make_colony(server, memory_store=store, context_window=8000)
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")
        self.fill(session, 100)
        session.last_stats = CompletionStats(input_tokens=7000, output_tokens=600)
        session.last_response_id = "resp_old"

        async with client:
            outcome = await colony.send("Nova", "next")

        assert last_user_text(server.bodies[0]) == COMPACT_PROMPT
        assert "memory_save" in [t["function"]["name"] for t in server.bodies[0]["tools"]]
        assert store.saved == [("Nova", "Summary.", "Session", "archival")]
        assert server.bodies[-1]["messages"] == [{"role": "user", "content": "next"}]
        assert outcome.text == "re: next"
        assert [m["content"] for m in session.memory.retrieve_all()] == ["next", "re: next"]
        assert session.last_response_id is None

        started, completed = colony.event_bus.events_of("CompactionEvent")
        assert started.status == "started"
        assert started.token_count == 7600
        assert completed.cleared_messages == 2

    @pytest.mark.asyncio
    async def test_conversation_cleared_even_if_summary_fails(self):
        server = FakeServer(lambda body: httpx.Response(503, json={"message": "busy"}))
        colony, client = make_colony(server)
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")
        self.fill(session, 10)

        async with client:
            outcome = await colony.compact("Nova")

        assert outcome.state == LoopState.FAILED
        assert len(session.memory) == 0

    @pytest.mark.asyncio
    async def test_nothing_to_compact(self):
        colony = Colony()
        colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")

        assert await colony.compact("Nova") is None
        assert colony.event_bus.get_event_count("CompactionEvent") == 0

    def test_clear(self):
        colony = Colony()
        session = colony.register("Nova")
        self.fill(session, 10)

        assert colony.clear("Nova") == 2
        assert len(session.memory) == 0


# =============================================================================
# Heartbeat Tests
# =============================================================================

class TestHeartbeat:

    @pytest.mark.asyncio
    async def test_isolated_check_in(self):
        server = FakeServer()
        colony, client = make_colony(server)
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")

        async with client:
            outcome = await colony.heartbeat("Nova")

        assert outcome.isolated is True
        assert server.bodies[0]["messages"] == [{"role": "user", "content": HEARTBEAT_PROMPT}]
        assert len(session.memory) == 0
        assert session.last_activity is None

    @pytest.mark.asyncio
    async def test_skipped_when_recently_active(self):
        server = FakeServer()
        colony, client = make_colony(server)
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")
        session.touch()

        async with client:
            assert await colony.heartbeat("Nova") is None

        assert server.bodies == []

    @pytest.mark.asyncio
    async def test_skipped_when_busy(self):
        colony = Colony()
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")
        session.busy = True

        assert await colony.heartbeat("Nova") is None

    @pytest.mark.asyncio
    async def test_skipped_without_api_access(self):
        colony = Colony()
        colony.register("Nova", endpoint=REMOTE_ENDPOINT, model="gpt")
        colony.sessions["Nova"].config.api_key = None

        assert await colony.heartbeat("Nova") is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        colony = Colony()
        colony.register("Nova")
        colony.register("Echo")

        colony.start_heartbeats()
        tasks = list(colony._heartbeat_tasks.values())
        assert len(tasks) == 2

        colony.stop_heartbeats()
        await asyncio.sleep(0)
        assert colony._heartbeat_tasks == {}
        assert all(t.cancelled() for t in tasks)


# =============================================================================
# Wake Tests
# =============================================================================

class TestWake:

    @pytest.mark.asyncio
    async def test_reintegrates_memories_and_greets(self):
        store = RecordingStore(memories=[{"title": "tide pools"}])
        server = FakeServer()
        colony, client = make_colony(server, memory_store=store)
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen", system_prompt="You are Nova.")

        async with client:
            outcome = await colony.wake("Nova")
            again = await colony.wake("Nova")

        assert store.woken == ["nova", "nova"]
        assert session.system_prompt == f"You are Nova.\n\n{MEMORY_BLOCK}"
        assert last_user_text(server.bodies[0]) == SESSION_START_PROMPT
        assert server.bodies[0]["messages"][0]["content"].endswith(MEMORY_BLOCK)
        assert outcome.completed
        assert again is None
        assert len(server.bodies) == 1

    @pytest.mark.asyncio
    async def test_fresh_start(self):
        server = FakeServer()
        colony, client = make_colony(server, memory_store=RecordingStore())
        session = colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen", system_prompt="You are Nova.")

        async with client:
            await colony.wake("Nova")

        assert session.system_prompt == "You are Nova."
        assert last_user_text(server.bodies[0]) == SESSION_START_FRESH_PROMPT

    @pytest.mark.asyncio
    async def test_requires_store(self):
        colony = Colony()
        colony.register("Nova")

        with pytest.raises(ConfigurationError):
            await colony.wake("Nova")


# =============================================================================
# colony_ask Tests
# =============================================================================

class TestAsk:

    def two_entities(self, responder):
        server = FakeServer(responder)
        colony, client = make_colony(server)
        colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="nova-model")
        colony.register("Echo", endpoint=LOCAL_ENDPOINT, model="echo-model")
        return server, colony, client

    @pytest.mark.asyncio
    async def test_ask_through_tool_loop(self):
        def responder(body):
            if body["model"] == "echo-model":
                return chat_reply("pong")
            if body["messages"][-1]["role"] == "tool":
                return chat_reply(f"Echo said: {body['messages'][-1]['content']}")
            return tool_call_reply("colony_ask", {"to": "echo", "message": "ping"})

        server, colony, client = self.two_entities(responder)

        async with client:
            outcome = await colony.send("Nova", "talk to echo")

        echo_body = next(b for b in server.bodies if b["model"] == "echo-model")
        assert outcome.text == "Echo said: pong"
        assert "tools" not in echo_body
        assert [m["content"] for m in colony.get_session("Echo").memory.retrieve_all()] == ["ping", "pong"]

    @pytest.mark.asyncio
    async def test_asking_a_thinking_entity(self):
        def responder(body):
            if body["messages"][-1]["role"] == "tool":
                return chat_reply(body["messages"][-1]["content"])
            return tool_call_reply("colony_ask", {"to": "nova", "message": "hello me"})

        server, colony, client = self.two_entities(responder)

        async with client:
            outcome = await colony.send("Nova", "talk to yourself")

        assert outcome.text == "Error: Nova is currently occupied"

    @pytest.mark.asyncio
    async def test_unknown_member(self):
        colony = Colony()
        colony.register("Nova")

        with pytest.raises(ToolExecutionError, match='Unknown colony member: "ghost"'):
            await colony.ask("Nova", "ghost", "hi")


# =============================================================================
# Model Listing and Abort Tests
# =============================================================================

class TestMisc:

    @pytest.mark.asyncio
    async def test_refresh_models_records_context(self):
        server = FakeServer()
        server.models = [
            {"id": "qwen", "type": "llm", "max_context_length": 4096},
            {"id": "other", "type": "llm", "max_context_length": 32768},
        ]
        colony, client = make_colony(server, context_window=8000)
        colony.register("Nova", endpoint=LOCAL_ENDPOINT, model="qwen")

        async with client:
            models = await colony.refresh_models("Nova")

        assert [m.id for m in models] == ["qwen", "other"]
        assert colony.effective_context_window("Nova") == 4096

    @pytest.mark.asyncio
    async def test_abort_idle_entity(self):
        colony = Colony()
        colony.register("Nova")

        assert colony.abort("Nova") is False

    @pytest.mark.asyncio
    async def test_context_manager_closes_owned_client(self):
        async with Colony() as colony:
            client = colony.client

        assert client.is_closed
