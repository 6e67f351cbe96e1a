"""
Websocket Bus Hub

A small FastAPI application that lets local processes share topics. Every
text frame received on ``/topics/{topic}`` is forwarded to all other
connections on that topic. Served by ``vcrelay hub``.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class TopicHub:
    """Tracks websocket connections per topic and fans messages out."""

    def __init__(self):
        self._topics: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def join(self, topic: str, websocket: WebSocket):
        async with self._lock:
            self._topics[topic].add(websocket)
        logger.debug(f"Peer joined topic {topic}")

    async def leave(self, topic: str, websocket: WebSocket):
        async with self._lock:
            peers = self._topics.get(topic)
            if peers is not None:
                peers.discard(websocket)
                if not peers:
                    del self._topics[topic]
        logger.debug(f"Peer left topic {topic}")

    async def fan_out(self, topic: str, sender: WebSocket, message: str) -> int:
        """Send ``message`` to every peer on ``topic`` except the sender."""
        async with self._lock:
            peers = [ws for ws in self._topics.get(topic, ()) if ws is not sender]

        delivered = 0
        dead_peers = []
        for peer in peers:
            try:
                await peer.send_text(message)
                delivered += 1
            except Exception:
                dead_peers.append(peer)

        for peer in dead_peers:
            await self.leave(topic, peer)
        return delivered

    def counts(self) -> Dict[str, int]:
        return {topic: len(peers) for topic, peers in self._topics.items()}


def create_app(hub: Optional[TopicHub] = None) -> FastAPI:
    hub = hub or TopicHub()
    app = FastAPI(title="vcrelay bus hub")
    app.state.hub = hub

    @app.get("/health")
    async def health():
        return {"status": "ok", "topics": hub.counts()}

    @app.websocket("/topics/{topic}")
    async def topic_socket(websocket: WebSocket, topic: str):
        await websocket.accept()
        await hub.join(topic, websocket)
        try:
            while True:
                message = await websocket.receive_text()
                await hub.fan_out(topic, websocket, message)
        except WebSocketDisconnect:
            pass
        finally:
            await hub.leave(topic, websocket)

    return app


app = create_app()
