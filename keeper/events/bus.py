"""
Event bus for keeper lifecycle events.

A bus instance is built by the service and handed to each component, so
tests can construct isolated buses and assert on what was published.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
import asyncio
import itertools
import logging

logger = logging.getLogger(__name__)

WILDCARD = "*"


class EventType(Enum):
    """Keeper event types."""
    # Crank events
    CRANK_SUCCESS = "crank.success"
    CRANK_FAILURE = "crank.failure"
    CRANK_SKIPPED = "crank.skipped"
    CYCLE_COMPLETED = "crank.cycle_completed"

    # Market lifecycle
    MARKET_DISCOVERED = "market.discovered"
    MARKET_REMOVED = "market.removed"
    MARKET_DEACTIVATED = "market.deactivated"
    MARKET_REACTIVATED = "market.reactivated"
    DISCOVERY_FAILED = "discovery.failed"

    # Prices
    PRICE_UPDATED = "price.updated"
    PRICE_UNAVAILABLE = "price.unavailable"

    # Account stream
    STREAM_CONNECTED = "stream.connected"
    STREAM_DISCONNECTED = "stream.disconnected"
    STREAM_EXHAUSTED = "stream.exhausted"


_event_ids = itertools.count(1)


@dataclass
class Event:
    """Standard event structure."""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    source: str = "keeper"
    timestamp: datetime = field(default_factory=datetime.utcnow)
    id: int = field(default_factory=lambda: next(_event_ids))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class EventHandler:
    """Registered event handler."""
    callback: Callable
    event_types: Set[str]
    name: str = ""

    def __post_init__(self):
        if not self.name:
            self.name = getattr(self.callback, "__name__", repr(self.callback))


class EventBus:
    """
    In-process publish/subscribe.

    Handlers may be sync or async. A failing handler is logged and never
    reaches the publisher.
    """

    def __init__(self, max_history: int = 500):
        self._handlers: List[EventHandler] = []
        self._history: List[Event] = []
        self._max_history = max_history

    def subscribe(self, event_types, callback: Callable) -> Callable[[], None]:
        """Register ``callback`` and return a function that removes it.

        ``event_types`` is a single type, a list of types, or ``"*"``.
        """
        if isinstance(event_types, (str, EventType)):
            event_types = [event_types]
        types = {_type_name(t) for t in event_types}
        handler = EventHandler(callback=callback, event_types=types)
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def on(self, event_types) -> Callable:
        """Decorator form of :meth:`subscribe`."""
        def decorator(func: Callable) -> Callable:
            self.subscribe(event_types, func)
            return func
        return decorator

    async def publish(self, event: Event) -> int:
        """Deliver ``event`` to matching handlers. Returns the delivery count."""
        self._add_to_history(event)

        executed = 0
        for handler in list(self._handlers):
            if event.type not in handler.event_types and WILDCARD not in handler.event_types:
                continue
            try:
                result = handler.callback(event)
                if asyncio.iscoroutine(result):
                    await result
                executed += 1
            except Exception as e:
                logger.error(f"Error in event handler {handler.name}: {e}")

        logger.debug(f"Event {event.type} delivered to {executed} handlers")
        return executed

    async def emit(self, event_type, data: Optional[Dict[str, Any]] = None, source: str = "keeper") -> int:
        """Create and publish an event."""
        event = Event(type=_type_name(event_type), data=data or {}, source=source)
        return await self.publish(event)

    def subscriber_count(self, event_type=None) -> int:
        if event_type is None:
            return len(self._handlers)
        name = _type_name(event_type)
        return sum(1 for h in self._handlers if name in h.event_types)

    def _add_to_history(self, event: Event) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

    def get_history(self, event_types: Optional[List] = None, limit: int = 100) -> List[Event]:
        """Get event history with optional filtering."""
        history = self._history
        if event_types:
            names = {_type_name(t) for t in event_types}
            history = [e for e in history if e.type in names]
        return history[-limit:]

    def clear_history(self) -> None:
        self._history = []

    def get_stats(self) -> Dict[str, Any]:
        event_counts: Dict[str, int] = {}
        for event in self._history:
            event_counts[event.type] = event_counts.get(event.type, 0) + 1
        return {
            "handlers": len(self._handlers),
            "history_size": len(self._history),
            "event_counts": event_counts,
        }


def _type_name(event_type) -> str:
    if isinstance(event_type, EventType):
        return event_type.value
    return str(event_type)
