from keeper.events.bus import WILDCARD, Event, EventBus, EventHandler, EventType

__all__ = ["WILDCARD", "Event", "EventBus", "EventHandler", "EventType"]
