"""
Pub/sub bus adapters.

The bridge only needs two capabilities from a bus, captured by MessageBus:
broadcast a text payload on a topic, and subscribe a handler to a topic.

- InMemoryBus: in-process, used standalone and in tests
- WebSocketBus: client of the websocket hub (``vcrelay hub``)
"""

from .base import MessageBus
from .memory import InMemoryBus
from .websocket import WebSocketBus

__all__ = [
    "MessageBus",
    "InMemoryBus",
    "WebSocketBus",
]
