import dataclasses
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from .exceptions import ColonyError

logger = logging.getLogger(__name__)

VALID_ROLES = ("user", "assistant", "tool")


@dataclasses.dataclass
class Message:
    """
    One conversation entry, with a unique ID.

    ``content`` is plain text or a dialect-native block list (text, tool_use,
    tool_result blocks). ``tool_calls`` holds the dialect-native tool-call list
    of an assistant turn that requested tools. The ``message_id`` is internal
    and is never sent to a backend.
    """

    role: str
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    message_id: str = dataclasses.field(default_factory=lambda: str(uuid.uuid4()))
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None

    def __post_init__(self):
        if self.role not in VALID_ROLES:
            raise ValueError(f"role must be one of {VALID_ROLES}, got: {self.role}")

    def to_llm_dict(self) -> Dict[str, Any]:
        """Wire representation: role and content, plus tool fields when set."""
        result: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls is not None:
            result["tool_calls"] = self.tool_calls
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        return result


class ConversationMemory:
    """
    Memory module that stores conversation history as a list of Message objects.

    Messages are addressed by ID, not position, so edits and deletions stay
    correct while the list grows.
    """

    def __init__(self, messages: Optional[List[Dict[str, Any]]] = None) -> None:
        """
        Args:
            messages: Optional wire-format entries to start from
        """
        self.memory: List[Message] = []
        for entry in messages or []:
            self.add(
                role=entry["role"],
                content=entry.get("content"),
                tool_calls=entry.get("tool_calls"),
                tool_call_id=entry.get("tool_call_id"),
            )

    def __len__(self) -> int:
        return len(self.memory)

    def add(
        self,
        message: Optional[Message] = None,
        *,
        role: Optional[str] = None,
        content: Optional[Union[str, List[Dict[str, Any]]]] = None,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
        tool_call_id: Optional[str] = None,
    ) -> str:
        """
        Adds a message to the history and returns its ID.
        If `message` is provided it is used directly, otherwise one is built
        from the keyword arguments.
        """
        if message is None:
            if role is None:
                raise ColonyError(
                    "Either a Message object or role must be provided to add.",
                    error_code="MESSAGE_ERROR",
                )
            message = Message(
                role=role,
                content=content,
                tool_calls=tool_calls,
                tool_call_id=tool_call_id,
            )
        self.memory.append(message)
        return message.message_id

    def update(self, message_id: str, content: Union[str, List[Dict[str, Any]]]) -> None:
        """Replace the content of an existing message, keeping its ID."""
        for msg in self.memory:
            if msg.message_id == message_id:
                msg.content = content
                return
        raise ColonyError(
            f"Message with ID '{message_id}' not found in memory.",
            error_code="MESSAGE_NOT_FOUND",
        )

    def retrieve_all(self) -> List[Dict[str, Any]]:
        """All messages in wire format."""
        return [msg.to_llm_dict() for msg in self.memory]

    def retrieve_by_id(self, message_id: str) -> Optional[Message]:
        for msg in self.memory:
            if msg.message_id == message_id:
                return msg
        return None

    def remove_by_id(self, message_id: str) -> bool:
        """Removes a message by its ID. Returns True if removed, False if not found."""
        for i, msg in enumerate(self.memory):
            if msg.message_id == message_id:
                del self.memory[i]
                return True
        return False

    def reset_memory(self) -> None:
        """Clears the conversation history."""
        self.memory.clear()


# --- Long-term memory collaborator ---

@dataclasses.dataclass
class WakeupResult:
    """What a memory store hands back when an entity wakes."""
    memories: List[Dict[str, Any]] = dataclasses.field(default_factory=list)
    context_block: str = ""


@runtime_checkable
class MemoryStore(Protocol):
    """
    Long-term memory owned outside the runtime.

    Used only to persist compaction summaries and to bootstrap a session;
    either method may be sync or async.
    """

    def save(
        self,
        entity: str,
        summary: str,
        title: Optional[str] = None,
        memory_type: str = "archival",
    ) -> Any:
        ...

    def wakeup(self, entity: str) -> WakeupResult:
        ...
