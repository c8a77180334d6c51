"""
Event bus for observers of the colony.

Status events (thinking state, aborts, queued messages, compaction, stream
chunks, tool calls) are routed to listeners by event class name.
"""

import inspect
import logging
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventBus:
    """
    Simple event bus for colony events.

    Listeners may be plain functions or coroutines. A listener that keeps
    failing is removed so it cannot stall the loop that emits.
    """

    def __init__(self, history_size: int = 1000):
        """
        Args:
            history_size: How many recent events to keep for inspection
        """
        self.events: Deque[Any] = deque(maxlen=history_size)
        self.listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._listener_errors: Dict[str, int] = defaultdict(int)
        self._max_listener_errors = 5  # Prevent runaway error listeners

    async def emit(self, event: Any) -> None:
        """
        Emit an event to all listeners.

        Args:
            event: The event object to emit
        """
        self.events.append(event)

        event_type = type(event).__name__
        targets = list(self.listeners.get(event_type, [])) + list(self.listeners.get("*", []))

        for listener in targets:
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                listener_id = f"{event_type}:{id(listener)}"
                self._listener_errors[listener_id] += 1

                logger.error(f"Error in event listener for {event_type}: {e}")

                if self._listener_errors[listener_id] >= self._max_listener_errors:
                    logger.warning(f"Removing failing listener for {event_type} after {self._max_listener_errors} errors")
                    for key in (event_type, "*"):
                        if listener in self.listeners.get(key, []):
                            self.listeners[key].remove(listener)

    def subscribe(self, event_type: str, listener: Callable) -> None:
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Name of the event class to subscribe to, or "*" for all
            listener: Callable (sync or async) to handle events
        """
        if listener not in self.listeners[event_type]:
            self.listeners[event_type].append(listener)
            logger.debug(f"Subscribed listener to {event_type}")

    def unsubscribe(self, event_type: str, listener: Callable) -> None:
        if event_type in self.listeners and listener in self.listeners[event_type]:
            self.listeners[event_type].remove(listener)
            logger.debug(f"Unsubscribed listener from {event_type}")

    def clear_listeners(self, event_type: Optional[str] = None) -> None:
        if event_type:
            self.listeners.pop(event_type, None)
        else:
            self.listeners.clear()
            self._listener_errors.clear()

    def get_event_count(self, event_type: Optional[str] = None) -> int:
        """
        Get count of events in history.

        Args:
            event_type: Optional event class name. If None, counts all.
        """
        if event_type:
            return sum(1 for e in self.events if type(e).__name__ == event_type)
        return len(self.events)

    def events_of(self, event_type: str) -> List[Any]:
        return [e for e in self.events if type(e).__name__ == event_type]
