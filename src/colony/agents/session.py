"""
Per-entity session state.

All state an entity's loop reads or writes lives on its EntitySession, and
is changed only through the methods below.
"""

import dataclasses
import logging
import time
from collections import deque
from typing import Deque, Optional

from colony.models.models import ModelConfig
from colony.models.response_models import CompletionStats, UnifiedCompletionResult

from .memory import ConversationMemory

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class EntitySession:
    """
    One entity's conversation and loop state.

    Attributes:
        name: Entity name, unique within a colony
        config: Model backend configuration
        system_prompt: Entity prompt (the colony adds base and operator sections)
        memory: Conversation history
        last_response_id: Chain id for the stateful local dialect
        last_stats: Token counts reported by the last persisted call
        max_context: Context length advertised by the model server, if known
        last_activity: Monotonic time of the last non-isolated loop exit
        thinking: An agent loop is running
        busy: The entity is running a loop, compacting, or draining its queue
        pending: Messages received while busy, in arrival order
    """

    name: str
    config: ModelConfig = dataclasses.field(default_factory=ModelConfig)
    system_prompt: str = ""
    memory: ConversationMemory = dataclasses.field(default_factory=ConversationMemory)
    last_response_id: Optional[str] = None
    last_stats: Optional[CompletionStats] = None
    max_context: Optional[int] = None
    last_activity: Optional[float] = None
    thinking: bool = False
    busy: bool = False
    abort_requested: bool = False
    abort_reason: Optional[str] = None
    pending: Deque[str] = dataclasses.field(default_factory=deque)

    def set_endpoint(self, endpoint: Optional[str]) -> None:
        """Point the entity at a new endpoint; the old response chain is meaningless there."""
        self.config = ModelConfig.model_validate({**self.config.model_dump(), "endpoint": endpoint})
        self.last_response_id = None
        self.max_context = None

    def set_thinking(self, thinking: bool) -> None:
        self.thinking = thinking
        if not thinking:
            self.abort_reason = None

    def request_abort(self, reason: str = "manual") -> bool:
        """
        Ask the running loop to stop at its next step boundary.

        Returns:
            True if a loop was running and the request was recorded
        """
        if not self.thinking:
            return False
        self.abort_requested = True
        self.abort_reason = reason
        return True

    def consume_abort(self) -> bool:
        """Check and clear the abort flag."""
        if not self.abort_requested:
            return False
        self.abort_requested = False
        return True

    def record_result(self, result: UnifiedCompletionResult) -> None:
        """Keep the chain id and real token counts of a persisted call."""
        if result.response_id:
            self.last_response_id = result.response_id
        if result.stats is not None and result.stats.input_tokens is not None:
            self.last_stats = CompletionStats(
                input_tokens=result.stats.input_tokens,
                output_tokens=result.stats.output_tokens,
            )

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def clear_conversation(self) -> int:
        """Drop the whole history along with anything derived from it."""
        count = len(self.memory)
        self.memory.reset_memory()
        self.last_response_id = None
        self.last_stats = None
        return count

    def enqueue(self, text: str) -> int:
        self.pending.append(text)
        return len(self.pending)

    def next_pending(self) -> Optional[str]:
        return self.pending.popleft() if self.pending else None

    @property
    def real_token_count(self) -> Optional[int]:
        """Input plus output tokens of the last call, when the backend reported them."""
        if self.last_stats is None:
            return None
        return self.last_stats.total_tokens
