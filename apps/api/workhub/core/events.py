from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class DomainEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[DomainEvent], None]


class InProcessEventBus:
    """Synchronous dispatch; a name ending in ``.*`` subscribes to every event under that prefix."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        handlers = list(self._subscribers.get(event_name, []))
        for pattern, subscribed in self._subscribers.items():
            if pattern.endswith(".*") and event_name.startswith(pattern[:-1]):
                handlers.extend(handler for handler in subscribed if handler not in handlers)
        return handlers

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = DomainEvent(name=event_name, payload=payload)
        for handler in self.handlers_for(event_name):
            handler(event)


event_bus = InProcessEventBus()
