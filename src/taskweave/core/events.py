"""Task lifecycle events.

The engine publishes an :class:`Event` on every status change.  Callers
that want to react to them listen here instead of polling
:meth:`TaskEngine.get_task_status`; the HTTP layer forwards them to
WebSocket clients.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(Enum):
    TASK_ADDED = "task.added"
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_RETRYING = "task.retrying"
    TASK_FAILED = "task.failed"
    TASK_CANCELLED = "task.cancelled"


@dataclass(frozen=True)
class Event:
    """Something that happened to a task, with a snapshot of its state."""

    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def task_id(self) -> str | None:
        return self.payload.get("task_id")

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


Listener = Callable[[Event], Awaitable[None]]

# Key under which wildcard listeners are stored.
_ANY: None = None


class EventBus:
    """Fans events out to async listeners.

    Listeners for the event's type and wildcard listeners all run
    concurrently.  A listener that raises is logged; the publisher and
    the remaining listeners carry on.
    """

    def __init__(self) -> None:
        self._listeners: dict[EventType | None, list[Listener]] = defaultdict(list)

    def subscribe(self, event_type: EventType | None, listener: Listener) -> Callable[[], None]:
        """Call *listener* for *event_type* (``None`` means every type).

        Returns a function that removes the subscription again.
        """
        self._listeners[event_type].append(listener)
        return lambda: self.unsubscribe(event_type, listener)

    def subscribe_all(self, listener: Listener) -> Callable[[], None]:
        return self.subscribe(_ANY, listener)

    def unsubscribe(self, event_type: EventType | None, listener: Listener) -> bool:
        try:
            self._listeners[event_type].remove(listener)
        except ValueError:
            return False
        return True

    def listener_count(self, event_type: EventType | None = _ANY) -> int:
        return len(self._listeners.get(event_type, ()))

    async def publish(self, event: Event) -> None:
        listeners = [*self._listeners.get(event.event_type, ()), *self._listeners.get(_ANY, ())]
        if not listeners:
            return
        outcomes = await asyncio.gather(*(fn(event) for fn in listeners), return_exceptions=True)
        for fn, outcome in zip(listeners, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Listener %s failed on %s: %s",
                    getattr(fn, "__qualname__", repr(fn)),
                    event.event_type.value,
                    outcome,
                )
