import logging
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)

MESSAGES_CHANGED = "messages_changed"
FAVORITES_CHANGED = "favorites_changed"

Handler = Callable[[Any], None]


class EventBus:

    def __init__(self) -> None:
        self.subscribers: Dict[str, List[Handler]] = {}

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        if topic not in self.subscribers:
            self.subscribers[topic] = []
        self.subscribers[topic].append(handler)
        return lambda: self.unsubscribe(topic, handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        if topic in self.subscribers:
            try:
                self.subscribers[topic].remove(handler)
            except ValueError:
                pass
            if not self.subscribers[topic]:
                del self.subscribers[topic]

    def publish(self, topic: str, payload: Any = None) -> int:
        delivered = 0
        for handler in list(self.subscribers.get(topic, [])):
            try:
                handler(payload)
                delivered += 1
            except Exception:
                logger.exception("Handler for topic %s failed", topic)
        return delivered


_event_bus = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
