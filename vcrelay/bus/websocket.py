"""
Websocket Bus Client

Talks to the hub served by ``vcrelay hub``. Each topic is its own websocket
at ``{url}/topics/{topic}``; the hub forwards every text frame to the other
connections on the same topic.
"""

import logging
import threading
from typing import Callable, Dict, List
from urllib.parse import quote

from websockets.exceptions import ConnectionClosed
from websockets.sync.client import ClientConnection, connect

logger = logging.getLogger(__name__)

DEFAULT_OPEN_TIMEOUT = 10.0


class WebSocketBus:
    """MessageBus backed by the websocket hub."""

    def __init__(self, url: str, open_timeout: float = DEFAULT_OPEN_TIMEOUT):
        """Initialize the bus client.

        Args:
            url: Base websocket URL of the hub, e.g. ws://127.0.0.1:8765
            open_timeout: Seconds to wait for each topic connection
        """
        self.url = url.rstrip("/")
        self.open_timeout = open_timeout

        self._lock = threading.Lock()
        self._connections: Dict[str, ClientConnection] = {}
        self._send_locks: Dict[str, threading.Lock] = {}
        self._handlers: Dict[str, List[Callable[[str], None]]] = {}
        self._threads: List[threading.Thread] = []
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def broadcast(self, topic: str, payload: str):
        conn = self._connection(topic)
        with self._send_locks[topic]:
            conn.send(payload)

    def subscribe(self, topic: str, handler: Callable[[str], None]):
        conn = self._connection(topic)
        with self._lock:
            handlers = self._handlers.get(topic)
            if handlers is not None:
                handlers.append(handler)
                return
            self._handlers[topic] = [handler]
            thread = threading.Thread(
                target=self._receive_loop,
                args=(topic, conn),
                daemon=True,
                name=f"bus-{topic}",
            )
            self._threads.append(thread)
        thread.start()
        logger.info(f"Subscribed to bus topic {topic}")

    def close(self):
        """Close every topic connection and stop the receive threads."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            connections = list(self._connections.values())
            threads = list(self._threads)

        for conn in connections:
            try:
                conn.close()
            except Exception as e:
                logger.debug(f"Error closing bus connection: {e}")

        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout=2)

    def _connection(self, topic: str) -> ClientConnection:
        with self._lock:
            if self._closed:
                raise ConnectionError("Bus client is closed")
            conn = self._connections.get(topic)
            if conn is None:
                url = f"{self.url}/topics/{quote(topic, safe='')}"
                conn = connect(url, open_timeout=self.open_timeout)
                self._connections[topic] = conn
                self._send_locks[topic] = threading.Lock()
                logger.debug(f"Connected to bus topic {url}")
            return conn

    def _receive_loop(self, topic: str, conn: ClientConnection):
        try:
            for message in conn:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                self._dispatch(topic, message)
        except ConnectionClosed as e:
            if not self._closed:
                logger.warning(f"Bus connection for {topic} closed: {e}")
        logger.debug(f"Bus receive loop ended for {topic}")

    def _dispatch(self, topic: str, message: str):
        with self._lock:
            handlers = list(self._handlers.get(topic, ()))
        for handler in handlers:
            try:
                handler(message)
            except Exception:
                logger.exception(f"Bus handler for {topic} failed")
