"""
The agent loop.

An EntityAgent drives one entity through a single loop: call the model, run
any tools it asks for, feed the results back, and repeat until the model
answers with text or the tool step cap forces a final call without tools.
"""

import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from colony.coordination.execution.tool_executor import ToolExecutor, ToolResult, execute_tool_calls
from colony.coordination.status.events import (
    LoopCompleteEvent,
    ResponseEvent,
    ServerToolCallsEvent,
    StreamChunkEvent,
    ThinkingChangedEvent,
)
from colony.models.adapters import CompletionRequest
from colony.models.adapters.base import ChunkCallback
from colony.models.dialects import WireDialect
from colony.models.models import BaseAPIModel
from colony.models.response_models import NO_RESPONSE, UnifiedCompletionResult

from .exceptions import EntityBusyError
from .session import EntitySession

if TYPE_CHECKING:
    from colony.coordination.admission import AdmissionController
    from colony.coordination.config import ColonySettings
    from colony.coordination.event_bus import EventBus
    from colony.coordination.supervisor import CancellationSupervisor

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    TOOL_DISPATCH = "tool_dispatch"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class LoopOutcome:
    """
    How a loop ended.

    Attributes:
        state: DONE, ABORTED, or FAILED (the last only set by the scheduler)
        text: Final assistant text when DONE
        reasoning: Reasoning of the final call, if the model produced any
        steps: Tool rounds executed
        calls: Model calls made
        result: The last completion result
        isolated: The loop ran on a private buffer
        error: Error message for FAILED outcomes
    """

    state: LoopState
    text: Optional[str] = None
    reasoning: Optional[str] = None
    steps: int = 0
    calls: int = 0
    result: Optional[UnifiedCompletionResult] = None
    isolated: bool = False
    error: Optional[str] = None
    tool_calls: List[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.state == LoopState.DONE


class EntityAgent:
    """
    Runs the tool loop for one entity.

    A normal loop reads and extends the entity's conversation and chains
    the stateful response id. An isolated loop (heartbeat, scheduled
    check-in) works on a private buffer seeded with one prompt: nothing it
    produces is persisted, it never chains, and publishing tools are
    withheld.
    """

    def __init__(
        self,
        session: EntitySession,
        model: BaseAPIModel,
        admission: "AdmissionController",
        settings: "ColonySettings",
        tool_executor: Optional[ToolExecutor] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
        event_bus: Optional["EventBus"] = None,
        supervisor: Optional["CancellationSupervisor"] = None,
        on_chunk: Optional[ChunkCallback] = None,
        use_integrations: bool = True,
    ) -> None:
        """
        Args:
            session: The entity's state
            model: Client for the entity's backend
            admission: Shared admission controller gating every call
            settings: Colony settings (step cap, streaming, integrations)
            tool_executor: Runs client-side tools
            tools: Canonical tool definitions offered to the model
            system_prompt: Fully assembled system prompt
            event_bus: Receives status events
            supervisor: Arms the thinking timer for the loop's duration
            on_chunk: Extra per-chunk callback when streaming
            use_integrations: Offer server-side integrations (stateful local dialect)
        """
        self.session = session
        self.model = model
        self.admission = admission
        self.settings = settings
        self.tool_executor = tool_executor
        self.tools = tools or []
        self.system_prompt = system_prompt
        self.event_bus = event_bus
        self.supervisor = supervisor
        self.on_chunk = on_chunk
        self.use_integrations = use_integrations
        self.state = LoopState.IDLE

    @property
    def name(self) -> str:
        return self.session.name

    def step_cap(self, dialect: Optional[WireDialect]) -> int:
        """Tool rounds allowed; server-side-tool dialects get none."""
        if dialect is None or not dialect.supports_client_tools:
            return 0
        return self.settings.tool_step_cap

    def tools_for(self, isolated: bool) -> List[Dict[str, Any]]:
        if not isolated:
            return list(self.tools)
        withheld: Set[str] = self.settings.publishing_tools
        return [tool for tool in self.tools if tool.get("name") not in withheld]

    def integrations_for(self, isolated: bool) -> Optional[List[Dict[str, Any]]]:
        exclude = {"colony_ask"}
        if isolated:
            exclude |= self.settings.publishing_tools
        return self.settings.integrations(exclude=exclude)

    async def run(self, isolated_prompt: Optional[str] = None) -> LoopOutcome:
        """
        Run one loop to completion.

        Args:
            isolated_prompt: When given, run isolated on a buffer holding only
                this prompt instead of on the entity's conversation

        Returns:
            LoopOutcome with state DONE or ABORTED

        Raises:
            EntityBusyError: The entity is already thinking
            ConfigurationError: Missing endpoint, model or messages
            ModelAPIError: Transport failure (not retried)
            ModelResponseError: Undecodable response body
        """
        session = self.session
        if session.thinking:
            raise EntityBusyError(f"'{self.name}' is already thinking", entity_name=self.name)

        isolated = isolated_prompt is not None
        buffer: Optional[List[Dict[str, Any]]] = (
            [{"role": "user", "content": isolated_prompt}] if isolated else None
        )
        dialect = self.model.config.dialect
        cap = self.step_cap(dialect)
        tools = self.tools_for(isolated) if cap > 0 else []
        integrations = None
        if dialect == WireDialect.LOCAL_STATEFUL and self.use_integrations:
            integrations = self.integrations_for(isolated)

        outcome = LoopOutcome(state=LoopState.ABORTED, isolated=isolated)
        # A stale flag from a previous loop must not abort this one
        session.abort_requested = False
        await self._set_thinking(True, isolated)

        try:
            for step in range(cap + 1):
                if session.consume_abort():
                    logger.info(f"'{self.name}' aborted before step {step + 1} ({session.abort_reason})")
                    self.state = LoopState.ABORTED
                    break

                final_call = step == cap
                self.state = LoopState.CALLING
                request = CompletionRequest(
                    conversation=buffer if isolated else session.memory.retrieve_all(),
                    system_prompt=self.system_prompt,
                    tools=[] if final_call else tools,
                    previous_response_id=None if isolated else session.last_response_id,
                    store=False if isolated else None,
                    integrations=integrations,
                    max_tokens=self.model.config.max_tokens,
                )
                result = await self._call(request)
                outcome.calls += 1
                outcome.result = result

                if not isolated:
                    session.record_result(result)
                if result.server_tool_calls:
                    await self._publish_server_tool_calls(result)

                if final_call or not result.has_tool_calls() or not tools:
                    self.state = LoopState.DONE
                    break

                self.state = LoopState.TOOL_DISPATCH
                outcome.steps += 1
                outcome.tool_calls.extend(call.name for call in result.tool_use)
                self._append_assistant_turn(result, buffer)
                tool_results = await self._dispatch_tools(result)
                self._append_tool_results(result.mode, tool_results, buffer)

            outcome.state = self.state
            if self.state == LoopState.DONE:
                result = outcome.result
                outcome.text = result.text or NO_RESPONSE
                outcome.reasoning = result.reasoning
                if not isolated:
                    session.memory.add(role="assistant", content=outcome.text)
                await self._publish_response(outcome)

            logger.debug(
                f"'{self.name}' loop ended: {outcome.state.value} after "
                f"{outcome.calls} call(s), {outcome.steps} tool step(s)"
            )
            await self._publish_complete(outcome)
            return outcome
        finally:
            await self._set_thinking(False, isolated)
            session.abort_requested = False
            if not isolated:
                session.touch()

    async def _call(self, request: CompletionRequest) -> UnifiedCompletionResult:
        """One admitted model call."""
        async with self.admission.slot():
            if self.settings.stream:
                return await self.model.arun_streaming(request, self._handle_chunk)
            return await self.model.arun(request)

    async def _handle_chunk(self, chunk: Any) -> None:
        if self.event_bus:
            await self.event_bus.emit(StreamChunkEvent(entity_name=self.name, chunk=chunk))
        if self.on_chunk is not None:
            outcome = self.on_chunk(chunk)
            if inspect.isawaitable(outcome):
                await outcome

    async def _dispatch_tools(self, result: UnifiedCompletionResult) -> List[ToolResult]:
        return await execute_tool_calls(
            self.tool_executor,
            result.tool_use,
            entity_name=self.name,
            event_bus=self.event_bus,
        )

    # --- Conversation updates ---

    def _append(self, entry: Dict[str, Any], buffer: Optional[List[Dict[str, Any]]]) -> None:
        if buffer is not None:
            buffer.append(entry)
        else:
            self.session.memory.add(
                role=entry["role"],
                content=entry.get("content"),
                tool_calls=entry.get("tool_calls"),
                tool_call_id=entry.get("tool_call_id"),
            )

    def _append_assistant_turn(self, result: UnifiedCompletionResult, buffer: Optional[List[Dict[str, Any]]]) -> None:
        """Re-append the model's tool-requesting turn in its native shape."""
        if result.mode == WireDialect.ANTHROPIC:
            self._append({"role": "assistant", "content": result.raw_content}, buffer)
            return

        raw_calls = (result.raw_content or {}).get("tool_calls") or []
        tool_calls = []
        for raw, call in zip(raw_calls, result.tool_use):
            # Ids generated by the parser must match the tool messages below
            tool_calls.append({**raw, "id": raw.get("id") or call.id})
        self._append({"role": "assistant", "content": result.text, "tool_calls": tool_calls}, buffer)

    def _append_tool_results(
        self,
        mode: WireDialect,
        tool_results: List[ToolResult],
        buffer: Optional[List[Dict[str, Any]]],
    ) -> None:
        if mode == WireDialect.ANTHROPIC:
            blocks = [
                {"type": "tool_result", "tool_use_id": r.call.id, "content": r.content}
                for r in tool_results
            ]
            self._append({"role": "user", "content": blocks}, buffer)
            return

        for r in tool_results:
            self._append({"role": "tool", "tool_call_id": r.call.id, "content": r.content}, buffer)

    # --- Events ---

    async def _set_thinking(self, thinking: bool, isolated: bool) -> None:
        self.session.set_thinking(thinking)
        if self.supervisor is not None:
            if thinking:
                self.supervisor.arm(self.session)
            else:
                self.supervisor.disarm(self.session)
        if self.event_bus:
            await self.event_bus.emit(
                ThinkingChangedEvent(entity_name=self.name, thinking=thinking, isolated=isolated)
            )

    async def _publish_server_tool_calls(self, result: UnifiedCompletionResult) -> None:
        names = [call.get("tool") or call.get("name") for call in result.server_tool_calls]
        logger.info(f"'{self.name}' server-side tool calls: {names}")
        if self.event_bus:
            await self.event_bus.emit(
                ServerToolCallsEvent(entity_name=self.name, tool_calls=result.server_tool_calls)
            )

    async def _publish_complete(self, outcome: LoopOutcome) -> None:
        if not self.event_bus:
            return
        await self.event_bus.emit(
            LoopCompleteEvent(
                entity_name=self.name,
                state=outcome.state.value,
                steps=outcome.steps,
                calls=outcome.calls,
                isolated=outcome.isolated,
            )
        )

    async def _publish_response(self, outcome: LoopOutcome) -> None:
        if not self.event_bus:
            return
        stats = outcome.result.stats.model_dump() if outcome.result and outcome.result.stats else None
        await self.event_bus.emit(
            ResponseEvent(
                entity_name=self.name,
                text=outcome.text,
                reasoning=outcome.reasoning,
                stats=stats,
                isolated=outcome.isolated,
                metadata={"completed_at": time.time(), "calls": outcome.calls},
            )
        )
