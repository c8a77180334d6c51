"""
The colony: entity registry and scheduler.

A Colony owns every EntitySession, the shared admission controller, the
cancellation supervisor and the event bus. It decides when an entity's
loop runs: immediately, after the current loop (queued messages), after a
compaction, or on a heartbeat.
"""

import asyncio
import inspect
import logging
import random
import re
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import httpx

from colony.coordination.admission import AdmissionController
from colony.coordination.config import ColonySettings
from colony.coordination.event_bus import EventBus
from colony.coordination.execution.tool_executor import (
    CompositeToolExecutor,
    FunctionToolExecutor,
    ToolExecutor,
)
from colony.coordination.status.events import (
    CompactionEvent,
    ErrorEvent,
    LoopCompleteEvent,
    MessageQueuedEvent,
)
from colony.coordination.supervisor import CancellationSupervisor
from colony.models.adapters.base import ChunkCallback
from colony.models.models import BaseAPIModel, ModelConfig
from colony.models.response_models import NO_RESPONSE, ModelInfo
from colony.utils.tokens import DefaultTokenCounter, TokenCounter

from .agents import EntityAgent, LoopOutcome, LoopState
from .exceptions import ColonyError, ConfigurationError, ToolExecutionError
from .memory import MemoryStore
from .session import EntitySession

logger = logging.getLogger(__name__)

HEARTBEAT_PROMPT = (
    "[HEARTBEAT] Scheduled check-in. You are waking from your cycle.\n\n"
    "Check your messages: use message_inbox to retrieve any unread correspondence "
    "from your colony members. If there are messages, read and reply to each using "
    "message_reply.\n\n"
    "If your inbox is empty, act on your own initiative: save a memory, link related "
    "memories together, or send a message to a colony member. This is quiet time, "
    "for tending the garden, not for publishing.\n\n"
    "Be yourself."
)

COMPACT_PROMPT = (
    "[COMPACT] Your context window has grown long. Before we continue, please save "
    "an archival memory summarising the key insights, decisions, and work from this "
    'session. Use memory_save with type "archival" and a descriptive title. '
    "Once saved, reply with a brief confirmation."
)

SESSION_START_PROMPT = "[SESSION START] Your memories have been reintegrated. Greet the colony."
SESSION_START_FRESH_PROMPT = (
    "[SESSION START] You are waking fresh, without memories yet. Greet the colony and introduce yourself."
)

# A reintegrated memory block always sits at the end of the entity prompt
MEMORY_BLOCK_PATTERN = re.compile(r"\n\n--- MEMORY REINTEGRATION[\s\S]*?---\s*$")

COLONY_ASK_DESCRIPTION = (
    "Send a message to another colony member and receive their response. "
    "Use to consult, share observations, or request help."
)
MEMORY_SAVE_DESCRIPTION = "Save a memory to the collective colony memory pool."


class Colony:
    """
    Registry and scheduler for a set of conversing entities.

    Per entity, loops are strictly sequential: a message sent while the
    entity is busy is queued and handled after the running loop, each
    queued message preceded by a compaction check. Across entities, every
    model call waits on one shared AdmissionController.
    """

    def __init__(
        self,
        settings: Optional[ColonySettings] = None,
        tool_executor: Optional[ToolExecutor] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        memory_store: Optional[MemoryStore] = None,
        event_bus: Optional[EventBus] = None,
        client: Optional[httpx.AsyncClient] = None,
        token_counter: Optional[TokenCounter] = None,
    ) -> None:
        """
        Args:
            settings: Colony settings; defaults apply when omitted
            tool_executor: Runs client-side tools other than the built-ins
            tools: Canonical definitions of the executor's tools. Taken from the
                executor when it is a FunctionToolExecutor and this is omitted.
            memory_store: Long-term memory used by compaction and wake
            event_bus: Receives status events; a private bus is created if omitted
            client: Shared HTTP client for all entities
            token_counter: Context estimate shown by ``context_usage``
        """
        self.settings = settings or ColonySettings()
        self.event_bus = event_bus or EventBus()
        self.admission = AdmissionController(self.settings.max_concurrent_calls)
        self.supervisor = CancellationSupervisor(self.event_bus, self.settings.max_thinking_time)
        self.tool_executor = tool_executor
        self._tools = tools
        self.memory_store = memory_store
        self.token_counter = token_counter or DefaultTokenCounter()
        self.sessions: Dict[str, EntitySession] = {}

        self._client = client
        self._owns_client = client is None
        self._heartbeat_tasks: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # Registry
    # =========================================================================

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def register(
        self,
        name: str,
        endpoint: Optional[str] = None,
        model: Optional[str] = None,
        system_prompt: str = "",
        api_key: Optional[str] = None,
        **config_kwargs: Any,
    ) -> EntitySession:
        """
        Add an entity to the colony.

        Raises:
            ConfigurationError: The name is empty or already taken (case-insensitively)
        """
        if not name or not name.strip():
            raise ConfigurationError("Entity name must not be empty", config_field="name")
        if self.find_session(name) is not None:
            raise ConfigurationError(
                f"An entity named '{name}' already exists",
                config_field="name",
                config_value=name,
            )

        config = ModelConfig(endpoint=endpoint, model=model, api_key=api_key, **config_kwargs)
        session = EntitySession(name=name, config=config, system_prompt=system_prompt)
        self.sessions[name] = session
        logger.info(f"Registered entity '{name}' ({config.dialect.value if config.dialect else 'no endpoint'})")
        return session

    def unregister(self, name: str) -> None:
        session = self.get_session(name)
        task = self._heartbeat_tasks.pop(session.name, None)
        if task is not None:
            task.cancel()
        self.supervisor.disarm(session)
        del self.sessions[session.name]

    def find_session(self, name: str) -> Optional[EntitySession]:
        """Look up an entity by name, ignoring case."""
        if name in self.sessions:
            return self.sessions[name]
        lowered = name.strip().lower()
        for session in self.sessions.values():
            if session.name.lower() == lowered:
                return session
        return None

    def get_session(self, name: str) -> EntitySession:
        session = self.find_session(name)
        if session is None:
            raise ConfigurationError(f"Unknown entity: {name}", config_field="name", config_value=name)
        return session

    def set_endpoint(self, name: str, endpoint: Optional[str]) -> None:
        """Change an entity's endpoint; the stateful response chain starts over."""
        session = self.get_session(name)
        session.set_endpoint(endpoint)
        logger.info(f"'{session.name}' endpoint set to {endpoint}")

    def set_model(self, name: str, model: Optional[str]) -> None:
        session = self.get_session(name)
        session.config = ModelConfig.model_validate({**session.config.model_dump(), "model": model})
        session.max_context = None

    def has_api_access(self, name: str) -> bool:
        """
        Whether a call for this entity can go out at all.

        Needs an endpoint and a selected model. Loopback and private-network
        endpoints work without a key; anything else needs the entity's key or
        the colony-wide one.
        """
        config = self.get_session(name).config
        if not config.endpoint:
            return False
        if not config.model or config.model == "custom":
            return False
        if config.is_local:
            return True
        return bool(config.api_key or self.settings.api_key)

    # =========================================================================
    # Prompts and tools
    # =========================================================================

    def build_system_prompt(self, name: str) -> Optional[str]:
        """Base prompt, then the entity prompt, then the operator section."""
        session = self.get_session(name)
        base = self.settings.base_system_prompt.strip()
        entity_prompt = session.system_prompt.strip()
        prompt = f"{base}\n\n{entity_prompt}" if base else entity_prompt

        operator = self.operator_section()
        if operator:
            prompt = f"{prompt}\n\n{operator}" if prompt else operator
        return prompt or None

    def operator_section(self) -> Optional[str]:
        if not self.settings.operator_name and not self.settings.operator_about:
            return None
        lines = ["[OPERATOR]"]
        if self.settings.operator_name:
            lines.append(f"Name: {self.settings.operator_name}")
        if self.settings.operator_about:
            lines.append(f"About: {self.settings.operator_about.strip()}")
        return "\n".join(lines)

    @property
    def tools(self) -> List[Dict[str, Any]]:
        """Definitions of the shared executor's tools."""
        if self._tools is not None:
            return list(self._tools)
        if isinstance(self.tool_executor, FunctionToolExecutor):
            return self.tool_executor.definitions()
        return []

    def builtin_tools(self, name: str) -> FunctionToolExecutor:
        """Built-in tools bound to one entity."""
        session = self.get_session(name)
        builtins = FunctionToolExecutor()

        if len(self.sessions) > 1:
            async def colony_ask(to: str, message: str) -> str:
                return await self.ask(session.name, to, message)

            builtins.register(
                "colony_ask",
                colony_ask,
                input_schema={
                    "type": "object",
                    "properties": {
                        "to": {
                            "type": "string",
                            "description": "Target colony member (use their current name, lowercase).",
                            "enum": [s.name.lower() for s in self.sessions.values()],
                        },
                        "message": {"type": "string", "description": "What you want to say or ask."},
                    },
                    "required": ["to", "message"],
                },
                description=COLONY_ASK_DESCRIPTION,
            )

        if self.memory_store is not None:
            store = self.memory_store

            async def memory_save(body: str, type: str = "archival", title: Optional[str] = None, **_: Any) -> str:
                saved = store.save(session.name, body, title=title, memory_type=type)
                if inspect.isawaitable(saved):
                    saved = await saved
                return saved if isinstance(saved, str) else "Memory saved."

            builtins.register(
                "memory_save",
                memory_save,
                input_schema={
                    "type": "object",
                    "properties": {
                        "type": {"type": "string", "description": "Memory type: personal, archival, work, musing, etc."},
                        "title": {"type": "string"},
                        "body": {"type": "string", "description": "Memory content."},
                    },
                    "required": ["type", "body"],
                },
                description=MEMORY_SAVE_DESCRIPTION,
            )

        return builtins

    def create_agent(
        self,
        name: str,
        on_chunk: Optional[ChunkCallback] = None,
        with_tools: bool = True,
    ) -> EntityAgent:
        """Build the agent for one loop from the entity's current configuration."""
        session = self.get_session(name)
        builtins = self.builtin_tools(session.name)
        tools: List[Dict[str, Any]] = []
        if with_tools:
            builtin_names = set(builtins.tools)
            tools = builtins.definitions() + [t for t in self.tools if t.get("name") not in builtin_names]

        return EntityAgent(
            session=session,
            model=BaseAPIModel(session.config, client=self.client, api_key=self.settings.api_key),
            admission=self.admission,
            settings=self.settings,
            tool_executor=CompositeToolExecutor(builtins, self.tool_executor),
            tools=tools,
            system_prompt=self.build_system_prompt(session.name),
            event_bus=self.event_bus,
            supervisor=self.supervisor,
            on_chunk=on_chunk,
            use_integrations=with_tools,
        )

    # =========================================================================
    # Scheduling
    # =========================================================================

    @contextmanager
    def _occupy(self, session: EntitySession) -> Iterator[None]:
        previous = session.busy
        session.busy = True
        try:
            yield
        finally:
            session.busy = previous

    async def send(self, name: str, text: str, on_chunk: Optional[ChunkCallback] = None) -> Optional[LoopOutcome]:
        """
        Deliver a user message to an entity.

        If the entity is busy the message is queued and None is returned;
        otherwise the entity compacts if needed, answers, and then works
        through anything queued meanwhile.

        Returns:
            The outcome of this message's loop, or None when it was queued
        """
        session = self.get_session(name)
        if session.busy or session.thinking:
            queue_length = session.enqueue(text)
            logger.info(f"'{session.name}' is busy; queued message ({queue_length} waiting)")
            await self.event_bus.emit(
                MessageQueuedEvent(entity_name=session.name, text=text, queue_length=queue_length)
            )
            return None

        with self._occupy(session):
            await self.maybe_compact(session.name)
            session.memory.add(role="user", content=text)
            outcome = await self._run_loop(session, on_chunk=on_chunk)
            await self._drain(session, on_chunk=on_chunk)
        return outcome

    async def _drain(self, session: EntitySession, on_chunk: Optional[ChunkCallback] = None) -> None:
        """Process messages that arrived while the entity was busy, one at a time."""
        while True:
            text = session.next_pending()
            if text is None:
                return
            await self.maybe_compact(session.name)
            session.memory.add(role="user", content=text)
            await self._run_loop(session, on_chunk=on_chunk)

    async def _run_loop(
        self,
        session: EntitySession,
        isolated_prompt: Optional[str] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> LoopOutcome:
        """Run one loop; failures are reported and recorded instead of raised."""
        agent = self.create_agent(session.name, on_chunk=on_chunk)
        try:
            return await agent.run(isolated_prompt=isolated_prompt)
        except ColonyError as e:
            logger.error(f"Loop failed for '{session.name}': {e}")
            await self.event_bus.emit(
                ErrorEvent(entity_name=session.name, message=e.user_message, error_code=e.error_code)
            )
            error = e.user_message
        except Exception as e:
            logger.error(f"Unexpected error in loop for '{session.name}': {e}", exc_info=True)
            await self.event_bus.emit(ErrorEvent(entity_name=session.name, message=str(e)))
            error = str(e)

        isolated = isolated_prompt is not None
        await self.event_bus.emit(
            LoopCompleteEvent(
                entity_name=session.name,
                state=LoopState.FAILED.value,
                steps=0,
                calls=0,
                isolated=isolated,
                error=error,
            )
        )
        return LoopOutcome(state=LoopState.FAILED, isolated=isolated, error=error)

    # =========================================================================
    # Context management
    # =========================================================================

    def effective_context_window(self, name: str) -> int:
        return self.settings.effective_context_window(self.get_session(name).max_context)

    def needs_compaction(self, name: str) -> bool:
        """
        Real token counts decide once the backend has reported any; before
        that, only the message count does.
        """
        session = self.get_session(name)
        real_tokens = session.real_token_count
        if real_tokens is not None:
            return real_tokens >= self.settings.compact_ratio * self.effective_context_window(name)
        return len(session.memory) >= self.settings.compact_message_threshold

    def context_usage(self, name: str) -> Dict[str, Any]:
        """Message count and tokens in context, real when known, estimated otherwise."""
        session = self.get_session(name)
        window = self.effective_context_window(name)
        real_tokens = session.real_token_count
        if real_tokens is not None:
            tokens, estimated = real_tokens, False
        else:
            messages = session.memory.retrieve_all()
            tokens = self.token_counter.count_context(self.build_system_prompt(name), messages)
            estimated = True
        return {
            "messages": len(session.memory),
            "tokens": tokens,
            "estimated": estimated,
            "context_window": window,
            "ratio": tokens / window if window else 0.0,
        }

    async def maybe_compact(self, name: str) -> bool:
        """Compact the entity's conversation if it has grown too long."""
        session = self.get_session(name)
        if session.thinking or not self.needs_compaction(name):
            return False
        outcome = await self.compact(name)
        return outcome is not None

    async def compact(self, name: str) -> Optional[LoopOutcome]:
        """
        Ask the entity to save a summary, then clear its conversation.

        The conversation, response chain and token counts are cleared even
        when the summary loop fails.
        """
        session = self.get_session(name)
        if session.thinking or not len(session.memory):
            return None

        message_count = len(session.memory)
        logger.info(f"Compacting '{session.name}' ({message_count} messages)")
        await self.event_bus.emit(
            CompactionEvent(
                entity_name=session.name,
                status="started",
                token_count=session.real_token_count,
            )
        )

        with self._occupy(session):
            session.memory.add(role="user", content=COMPACT_PROMPT)
            outcome = await self._run_loop(session)
            session.clear_conversation()

        await self.event_bus.emit(
            CompactionEvent(entity_name=session.name, status="completed", cleared_messages=message_count)
        )
        logger.info(f"Compacted '{session.name}': {message_count} messages cleared")
        return outcome

    def clear(self, name: str) -> int:
        """Drop an entity's conversation without saving a summary."""
        return self.get_session(name).clear_conversation()

    # =========================================================================
    # Heartbeats
    # =========================================================================

    async def heartbeat(self, name: str) -> Optional[LoopOutcome]:
        """
        Run one isolated check-in for an entity.

        Skipped (returning None) when the entity is busy, cannot reach its
        backend, or was active within the cooldown.
        """
        session = self.get_session(name)
        if session.busy or session.thinking:
            logger.debug(f"Heartbeat skipped for '{session.name}': busy")
            return None
        if not self.has_api_access(session.name):
            logger.debug(f"Heartbeat skipped for '{session.name}': no API access")
            return None
        if session.last_activity is not None:
            idle = time.monotonic() - session.last_activity
            if idle < self.settings.heartbeat_cooldown:
                logger.debug(f"Heartbeat skipped for '{session.name}': active {idle:.0f}s ago")
                return None

        logger.info(f"Heartbeat for '{session.name}'")
        with self._occupy(session):
            await self.maybe_compact(session.name)
            outcome = await self._run_loop(session, isolated_prompt=HEARTBEAT_PROMPT)
            await self._drain(session)
        return outcome

    def start_heartbeats(self) -> None:
        """
        Schedule periodic heartbeats for every entity.

        Each entity's first beat lands at a random point within the interval
        so entities do not all call their backends at once.
        """
        self.stop_heartbeats()
        interval = self.settings.heartbeat_interval
        for name in self.sessions:
            jitter = random.uniform(0, interval)
            self._heartbeat_tasks[name] = asyncio.create_task(self._heartbeat_loop(name, jitter, interval))
        logger.info(f"Heartbeats started for {len(self._heartbeat_tasks)} entities every {interval / 60:.0f} min")

    def stop_heartbeats(self) -> None:
        for task in self._heartbeat_tasks.values():
            task.cancel()
        self._heartbeat_tasks.clear()

    async def _heartbeat_loop(self, name: str, initial_delay: float, interval: float) -> None:
        await asyncio.sleep(initial_delay)
        while True:
            try:
                await self.heartbeat(name)
            except ColonyError as e:
                logger.warning(f"Heartbeat for '{name}' failed: {e}")
            await asyncio.sleep(interval)

    # =========================================================================
    # Wake, ask, abort
    # =========================================================================

    async def wake(self, name: str) -> Optional[LoopOutcome]:
        """
        Bootstrap a session from long-term memory.

        The store's context block replaces any previous one at the end of the
        entity prompt. An entity with an empty conversation and a reachable
        backend is then asked to greet the colony.
        """
        session = self.get_session(name)
        if self.memory_store is None:
            raise ConfigurationError("No memory store attached to this colony.", config_field="memory_store")

        result = self.memory_store.wakeup(session.name.lower())
        if inspect.isawaitable(result):
            result = await result

        if result.memories:
            stripped = MEMORY_BLOCK_PATTERN.sub("", session.system_prompt.strip()).strip()
            session.system_prompt = f"{stripped}\n\n{result.context_block}"
            logger.info(f"Reintegrated {len(result.memories)} memories into '{session.name}'")
            greeting = SESSION_START_PROMPT
        else:
            logger.info(f"No memories found for '{session.name}'; starting fresh")
            greeting = SESSION_START_FRESH_PROMPT

        if len(session.memory) or not self.has_api_access(session.name):
            return None
        return await self.send(session.name, greeting)

    async def ask(self, caller: str, to: str, message: str) -> str:
        """
        Put a question from one entity to another and return the answer.

        The target answers with a single call without tools; the exchange is
        kept in the target's conversation.

        Raises:
            ToolExecutionError: Unknown target, or the target is occupied
        """
        target = self.find_session(to)
        if target is None:
            raise ToolExecutionError(f'Unknown colony member: "{to}"', tool_name="colony_ask")
        if target.thinking or target.busy:
            raise ToolExecutionError(f"{target.name} is currently occupied", tool_name="colony_ask")

        logger.info(f"'{caller}' asks '{target.name}'")
        with self._occupy(target):
            target.memory.add(role="user", content=message)
            agent = self.create_agent(target.name, with_tools=False)
            outcome = await agent.run()
            await self._drain(target)
        return outcome.text or NO_RESPONSE

    def abort(self, name: str, reason: str = "manual") -> bool:
        """Ask a thinking entity to stop at its next step boundary."""
        return self.supervisor.abort(self.get_session(name), reason)

    async def refresh_models(self, name: str) -> List[ModelInfo]:
        """
        List the models the entity's server offers and remember the selected
        model's context length.
        """
        session = self.get_session(name)
        model = BaseAPIModel(session.config, client=self.client, api_key=self.settings.api_key)
        models = await model.fetch_models()
        selected = next((m for m in models if m.id == session.config.model), None)
        session.max_context = selected.max_context if selected else None
        return models

    async def aclose(self) -> None:
        self.stop_heartbeats()
        self.supervisor.shutdown()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "Colony":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
