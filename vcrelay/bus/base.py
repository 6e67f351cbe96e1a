"""The two capabilities the bridge needs from a pub/sub bus."""

from typing import Callable, Protocol


class MessageBus(Protocol):
    def broadcast(self, topic: str, payload: str) -> None: ...

    def subscribe(self, topic: str, handler: Callable[[str], None]) -> None: ...
