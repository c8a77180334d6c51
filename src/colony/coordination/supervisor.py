"""
Cancellation supervisor.

Watches thinking entities and requests a cooperative abort when a loop runs
past its wall-clock limit, or when an operator asks for one. The loop itself
notices the flag at its next step boundary; an in-flight call always runs to
completion.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, Optional, Set

from .status.events import AbortRequestedEvent

if TYPE_CHECKING:
    from colony.agents.session import EntitySession

    from .event_bus import EventBus

logger = logging.getLogger(__name__)


class CancellationSupervisor:
    """Per-entity thinking timers plus manual abort."""

    def __init__(self, event_bus: Optional["EventBus"] = None, timeout: float = 120.0):
        """
        Args:
            event_bus: Bus that receives AbortRequestedEvent
            timeout: Seconds an entity may stay thinking before it is asked to stop
        """
        self.event_bus = event_bus
        self.timeout = timeout
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._pending_emits: Set[asyncio.Task] = set()

    def arm(self, session: "EntitySession") -> None:
        """Start the thinking timer for a session entering the thinking state."""
        self.disarm(session)
        loop = asyncio.get_running_loop()
        self._timers[session.name] = loop.call_later(self.timeout, self._on_timeout, session)

    def disarm(self, session: "EntitySession") -> None:
        timer = self._timers.pop(session.name, None)
        if timer is not None:
            timer.cancel()

    def is_armed(self, session: "EntitySession") -> bool:
        return session.name in self._timers

    def abort(self, session: "EntitySession", reason: str = "manual") -> bool:
        """
        Set the abort flag and publish the request.

        Returns:
            False when the session was not thinking (nothing to abort)
        """
        if not session.request_abort(reason):
            logger.debug(f"Abort ignored for '{session.name}': not thinking")
            return False

        logger.info(f"Abort requested for '{session.name}' ({reason})")
        self._publish(AbortRequestedEvent(entity_name=session.name, reason=reason))
        return True

    def _on_timeout(self, session: "EntitySession") -> None:
        self._timers.pop(session.name, None)
        logger.warning(f"'{session.name}' exceeded {self.timeout}s of thinking")
        self.abort(session, "timeout")

    def _publish(self, event: AbortRequestedEvent) -> None:
        if self.event_bus is None:
            return
        task = asyncio.get_running_loop().create_task(self.event_bus.emit(event))
        self._pending_emits.add(task)
        task.add_done_callback(self._pending_emits.discard)

    def shutdown(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
