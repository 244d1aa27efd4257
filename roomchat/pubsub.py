"""
In-process publish/subscribe used to push room updates to live sessions.

Delivery is best-effort and at-most-once: publish() hands the event to the
subscribers registered at that moment and forgets it. A session that joins
later has to load the room state itself.
"""

import itertools
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List

from roomchat.metrics import record_chat_event
from roomchat.schemas import RoomEvent

logger = logging.getLogger(__name__)

Handler = Callable[[RoomEvent], None]


def topic(room_id: int) -> str:
    """Topic name for a room's live updates."""
    return f"chat_room:{room_id}"


class Subscription:
    def __init__(self, sub_id: int, topic_name: str, handler: Handler) -> None:
        self.id = sub_id
        self.topic = topic_name
        self.handler = handler

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, topic='{self.topic}')>"


class PubSub:
    def __init__(self) -> None:
        self._topics: Dict[str, Dict[int, Subscription]] = defaultdict(dict)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, topic_name: str, handler: Handler) -> Subscription:
        with self._lock:
            sub = Subscription(next(self._ids), topic_name, handler)
            self._topics[topic_name][sub.id] = sub
        logger.debug(f"Subscribed {sub!r}")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._topics.get(sub.topic)
            if subs is None:
                return
            subs.pop(sub.id, None)
            if not subs:
                self._topics.pop(sub.topic, None)
        logger.debug(f"Unsubscribed {sub!r}")

    def subscribers(self, topic_name: str) -> List[Subscription]:
        with self._lock:
            return list(self._topics.get(topic_name, {}).values())

    def publish(self, topic_name: str, event: RoomEvent) -> int:
        """
        Deliver an event to every current subscriber of a topic.

        Returns the number of handlers that accepted the event. A handler
        that raises is logged and skipped, it never fails the publisher.
        """
        subs = self.subscribers(topic_name)
        delivered = 0
        for sub in subs:
            try:
                sub.handler(event)
                delivered += 1
            except Exception:
                logger.exception(f"Subscriber {sub!r} failed to handle {event.event}")
        record_chat_event(event.event)
        logger.info(
            f"Published {event.event} on {topic_name}",
            extra={"topic": topic_name, "chat_event": event.event, "delivered": delivered},
        )
        return delivered


# Process-wide broker shared by the services and the live sessions
broker = PubSub()
