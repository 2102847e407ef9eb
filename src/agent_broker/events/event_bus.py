import logging
from typing import Callable, List

from agent_broker.domain.plugins import PluginEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[PluginEvent], None]


class LifecycleEventBus:
    """In-process fan-out of persisted plugin lifecycle events."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def publish(self, event: PluginEvent) -> PluginEvent:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.warning("Lifecycle subscriber failed for %s/%s", event.plugin_id, event.event_type, exc_info=True)
        return event
