"""Tests for the bus adapters and the websocket hub."""

import socket
import threading
import time

import pytest
import uvicorn
from fastapi.testclient import TestClient

from vcrelay.bus import InMemoryBus, WebSocketBus
from vcrelay.bus.hub import TopicHub, create_app


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestInMemoryBus:
    def test_publish_reaches_subscribers(self):
        bus = InMemoryBus()
        got = []
        bus.subscribe("t", got.append)
        bus.subscribe("other", lambda p: pytest.fail("wrong topic"))

        bus.publish("t", "hi")

        assert got == ["hi"]

    def test_broadcast_reaches_listeners_not_subscribers(self):
        bus = InMemoryBus()
        heard, handled = [], []
        bus.listen("t", heard.append)
        bus.subscribe("t", handled.append)

        bus.broadcast("t", "out")

        assert heard == ["out"]
        assert handled == []
        assert bus.history == [("t", "out")]

    def test_failing_handler_is_isolated(self):
        bus = InMemoryBus()
        got = []

        def broken(payload):
            raise RuntimeError("boom")

        bus.subscribe("t", broken)
        bus.subscribe("t", got.append)
        bus.publish("t", "still delivered")

        assert got == ["still delivered"]

    def test_close_drops_handlers(self):
        bus = InMemoryBus()
        got = []
        bus.subscribe("t", got.append)
        bus.close()

        bus.publish("t", "ignored")

        assert got == []


@pytest.fixture
def client():
    with TestClient(create_app()) as test_client:
        yield test_client


class TestHub:
    def test_uses_given_hub(self):
        hub = TopicHub()

        assert create_app(hub).state.hub is hub
        assert isinstance(create_app().state.hub, TopicHub)

    def test_health(self, client):
        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "topics": {}}

    def test_fan_out_to_other_peers(self, client):
        with client.websocket_connect("/topics/proxy-request") as a, client.websocket_connect(
            "/topics/proxy-request"
        ) as b:
            assert wait_for(lambda: client.get("/health").json()["topics"].get("proxy-request") == 2)

            a.send_text("from a")
            assert b.receive_text() == "from a"

            b.send_text("from b")
            assert a.receive_text() == "from b"

    def test_topics_are_isolated(self, client):
        with client.websocket_connect("/topics/one") as one, client.websocket_connect(
            "/topics/two"
        ) as two, client.websocket_connect("/topics/one") as one_more:
            assert wait_for(lambda: client.get("/health").json()["topics"] == {"one": 2, "two": 1})

            two.send_text("only two")
            one.send_text("only one")

            assert one_more.receive_text() == "only one"

    def test_leaving_peer_is_removed(self, client):
        with client.websocket_connect("/topics/t"):
            assert wait_for(lambda: client.get("/health").json()["topics"] == {"t": 1})

        assert wait_for(lambda: client.get("/health").json()["topics"] == {})


@pytest.fixture
def hub_url():
    port = free_port()
    config = uvicorn.Config(create_app(), host="127.0.0.1", port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    assert wait_for(lambda: server.started, timeout=10)
    yield f"ws://127.0.0.1:{port}"
    server.should_exit = True
    thread.join(timeout=5)


class TestWebSocketBus:
    def test_broadcast_and_subscribe_through_hub(self, hub_url):
        with WebSocketBus(hub_url) as ours, WebSocketBus(hub_url) as theirs:
            received = []
            arrived = threading.Event()

            def handler(payload):
                received.append(payload)
                arrived.set()

            ours.subscribe("proxy-request", handler)
            theirs.subscribe("proxy-request", lambda p: None)
            time.sleep(0.2)

            theirs.broadcast("proxy-request", '{"type":"fdc3.contact"}')

            assert arrived.wait(5)
            assert received == ['{"type":"fdc3.contact"}']

    def test_closed_bus_refuses_to_send(self, hub_url):
        bus = WebSocketBus(hub_url)
        bus.close()

        with pytest.raises(ConnectionError):
            bus.broadcast("t", "x")

    def test_second_subscriber_shares_connection(self, hub_url):
        with WebSocketBus(hub_url) as ours, WebSocketBus(hub_url) as theirs:
            first, second = threading.Event(), threading.Event()
            ours.subscribe("t", lambda p: first.set())
            ours.subscribe("t", lambda p: second.set())
            theirs.subscribe("t", lambda p: None)
            time.sleep(0.2)

            theirs.broadcast("t", "ping")

            assert first.wait(5)
            assert second.wait(5)
            assert len(ours._threads) == 1
