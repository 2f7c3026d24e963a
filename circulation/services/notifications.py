import logging
import threading
from typing import Any, Callable, Dict, List, Protocol

logger = logging.getLogger(__name__)

AVAILABILITY_CHANGED = "book_availability_changed"


def penalty_topic(member_id: int) -> str:
    return f"penalty_updated_{member_id}"


class NotificationChannel(Protocol):
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


Listener = Callable[[str, Dict[str, Any]], None]


class Broadcaster:
    """In-process at-most-once pub/sub.

    A listener that raises is logged and skipped; publishing never fails.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(topic, payload)
            except Exception as e:
                logger.warning(f"Notification listener failed on {topic}: {e}")
