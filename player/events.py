"""
Broadcast publish/subscribe for playback events.

Several independent subscribers (now-playing bar, media-session bridge, CLI)
observe the same stream. Subscriptions are explicit handles so consumers can
unsubscribe on teardown.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class Topic(Enum):
    STATE = "state"          # PlaybackState
    TRACK = "track"          # Optional[Track]
    MODE = "mode"            # PlaybackMode
    BUFFERING = "buffering"  # float in [0, 1]
    POSITION = "position"    # float seconds
    NOTICE = "notice"        # str, one-line user-facing message


class Subscription:
    """Handle returned by EventBus.subscribe."""

    def __init__(self, bus: 'EventBus', topic: Topic, callback: Callable[[Any], None]):
        self._bus = bus
        self.topic = topic
        self.callback = callback
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """Typed-topic broadcast. Callbacks run on the publishing thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[Topic, List[Subscription]] = {topic: [] for topic in Topic}

    def subscribe(self, topic: Topic, callback: Callable[[Any], None]) -> Subscription:
        subscription = Subscription(self, topic, callback)
        with self._lock:
            self._subscribers[topic].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers[subscription.topic]
            if subscription in subscribers:
                subscribers.remove(subscription)

    def publish(self, topic: Topic, payload: Any) -> None:
        """Deliver payload to every subscriber of topic; one failing subscriber does not stop the rest."""
        with self._lock:
            subscribers = list(self._subscribers[topic])
        for subscription in subscribers:
            try:
                subscription.callback(payload)
            except Exception:
                logger.exception("Error in %s subscriber %r", topic.value, subscription.callback)

    def subscriber_count(self, topic: Topic) -> int:
        with self._lock:
            return len(self._subscribers[topic])

    def clear(self) -> None:
        with self._lock:
            for subscribers in self._subscribers.values():
                for subscription in subscribers:
                    subscription.active = False
                subscribers.clear()
