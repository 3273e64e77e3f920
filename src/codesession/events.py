"""Per-project event channel.

Events are JSON-serializable dataclasses. Every event carries the
``project_id`` it belongs to, and listeners see events in the order they
were emitted.

Event Flow:
    add_message          -> messageAdded
    provider chunk       -> streamingUpdate (full snapshot, not a diff)
    final answer         -> messageAdded, generationFinished
    transport/cap error  -> generationFailed
"""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

from .models import Message, ToolCall

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """All event types emitted by the session engine."""

    STREAMING_UPDATE = "streamingUpdate"
    MESSAGE_ADDED = "messageAdded"
    GENERATION_FINISHED = "generationFinished"
    GENERATION_FAILED = "generationFailed"


@dataclass
class Event:
    """Base class for all events."""

    type: EventType
    project_id: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class StreamingUpdate(Event):
    """Snapshot of the draft message after one provider chunk."""

    type: EventType = field(default=EventType.STREAMING_UPDATE, init=False)
    project_id: str = ""
    content: str = ""
    reasoning_content: str | None = None
    tool_calls: List[ToolCall] | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "project_id": self.project_id,
            "content": self.content,
            "reasoning_content": self.reasoning_content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls] if self.tool_calls else None,
        }


@dataclass
class MessageAdded(Event):
    type: EventType = field(default=EventType.MESSAGE_ADDED, init=False)
    project_id: str = ""
    message: Message | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "project_id": self.project_id,
            "message": self.message.to_dict() if self.message else None,
        }


@dataclass
class GenerationFinished(Event):
    type: EventType = field(default=EventType.GENERATION_FINISHED, init=False)
    project_id: str = ""
    message: Message | None = None
    iterations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "project_id": self.project_id,
            "message": self.message.to_dict() if self.message else None,
            "iterations": self.iterations,
        }


@dataclass
class GenerationFailed(Event):
    type: EventType = field(default=EventType.GENERATION_FAILED, init=False)
    project_id: str = ""
    error: str = ""
    error_type: str = ""


Listener = Callable[[Event], None]


class Subscription:
    """Ordered async stream of one project's events.

    Usage:
        with bus.subscribe("p1") as events:
            async for event in events:
                ...
    """

    def __init__(self, bus: "EventBus", project_id: str) -> None:
        self._bus = bus
        self.project_id = project_id
        self._queue: "asyncio.Queue[Event]" = asyncio.Queue()
        self.closed = False

    def _push(self, event: Event) -> None:
        self._queue.put_nowait(event)

    async def get(self) -> Event:
        return await self._queue.get()

    def drain(self) -> List[Event]:
        """Return and remove every event already queued."""
        events: List[Event] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._remove_subscription(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class EventBus:
    """Dispatches engine events to listeners and per-project subscriptions."""

    def __init__(self) -> None:
        self._listeners: Dict[EventType, List[Listener]] = defaultdict(list)
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)

    def on(self, event_type: EventType, listener: Listener) -> None:
        """Register ``listener`` for every event of ``event_type``."""
        self._listeners[EventType(event_type)].append(listener)

    def off(self, event_type: EventType, listener: Listener) -> None:
        listeners = self._listeners.get(EventType(event_type), [])
        if listener in listeners:
            listeners.remove(listener)

    def subscribe(self, project_id: str) -> Subscription:
        subscription = Subscription(self, project_id)
        self._subscriptions[project_id].append(subscription)
        return subscription

    def _remove_subscription(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.project_id)
        if subscriptions and subscription in subscriptions:
            subscriptions.remove(subscription)
            if not subscriptions:
                del self._subscriptions[subscription.project_id]

    def emit(self, event: Event) -> None:
        """Deliver ``event`` synchronously, in registration order.

        A failing listener is logged and does not stop delivery to the rest.
        """
        for listener in list(self._listeners.get(event.type, [])):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Listener for %s failed (project %s)", event.type.value, event.project_id
                )
        for subscription in list(self._subscriptions.get(event.project_id, [])):
            subscription._push(event)
