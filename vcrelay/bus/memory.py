"""In-process pub/sub bus."""

import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)


class InMemoryBus:
    """Thread-safe bus living inside one process.

    There are two directions, matching a provider talking to its clients:

    - ``subscribe`` registers handlers for messages that other participants
      ``publish`` to us
    - ``broadcast`` sends to every callback attached with ``listen``

    Everything broadcast is also kept in ``history``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[str, List[Callable[[str], None]]] = defaultdict(list)
        self._listeners: Dict[str, List[Callable[[str], None]]] = defaultdict(list)
        self.history: List[Tuple[str, str]] = []

    def broadcast(self, topic: str, payload: str):
        with self._lock:
            self.history.append((topic, payload))
            listeners = list(self._listeners[topic])
        self._deliver(topic, payload, listeners)

    def subscribe(self, topic: str, handler: Callable[[str], None]):
        with self._lock:
            self._handlers[topic].append(handler)

    def publish(self, topic: str, payload: str):
        """Deliver ``payload`` to the handlers subscribed to ``topic``."""
        with self._lock:
            handlers = list(self._handlers[topic])
        if not handlers:
            logger.debug(f"No subscribers for topic {topic}")
        self._deliver(topic, payload, handlers)

    def listen(self, topic: str, callback: Callable[[str], None]):
        """Receive everything broadcast on ``topic``."""
        with self._lock:
            self._listeners[topic].append(callback)

    def close(self):
        with self._lock:
            self._handlers.clear()
            self._listeners.clear()

    def _deliver(self, topic, payload, callbacks):
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception(f"Bus callback for {topic} failed")
