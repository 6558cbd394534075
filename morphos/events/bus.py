"""Event bus — where the evolution loop announces what it is doing.

The engine publishes `evolution.*` cycle events, the pipeline publishes
per-candidate `evolution.*` events and the safety controller publishes
`safety.*` events. Subscribers match topics with shell-style patterns
("safety.rollback_*", "*"). A broken subscriber is logged and skipped; it
never fails the cycle that emitted the event.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from morphos.types import new_id, utcnow

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


class Event(BaseModel):
    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""  # emitting component, e.g. "safety_controller"
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def cycle_id(self) -> str | None:
        return self.data.get("cycle_id")


class EventBus:
    """Async publish/subscribe with pattern topics and a bounded history."""

    def __init__(self, history_limit: int = 500) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []
        self._history: deque[Event] = deque(maxlen=history_limit)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions.append((pattern, handler))

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        if (pattern, handler) in self._subscriptions:
            self._subscriptions.remove((pattern, handler))

    async def emit(self, topic: str, data: dict | None = None, source: str = "") -> Event:
        """Record the event and deliver it to every matching handler concurrently."""
        event = Event(topic=topic, data=data or {}, source=source)
        self._history.append(event)

        matching = [h for pattern, h in self._subscriptions if fnmatch.fnmatchcase(topic, pattern)]
        if not matching:
            return event

        outcomes = await asyncio.gather(*(h(event) for h in matching), return_exceptions=True)
        for handler, outcome in zip(matching, outcomes):
            if isinstance(outcome, Exception):
                _logger.warning(
                    "Subscriber %s failed on '%s': %s",
                    getattr(handler, "__qualname__", handler), topic, outcome,
                )
        return event

    def history(self, topic_filter: str = "*", limit: int = 50) -> list[Event]:
        """Most recent events first, optionally restricted to a topic pattern."""
        found: list[Event] = []
        for event in reversed(self._history):
            if fnmatch.fnmatchcase(event.topic, topic_filter):
                found.append(event)
                if len(found) >= limit:
                    break
        return found

    def cycle_events(self, cycle_id: str) -> list[Event]:
        """Everything recorded for one evolution cycle, in emission order."""
        return [e for e in self._history if e.cycle_id == cycle_id]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def topics(self) -> list[str]:
        """Distinct topics in the history, in order of first appearance."""
        return list(dict.fromkeys(e.topic for e in self._history))
