"""Tests for the relay bridge."""

import threading
import time

import pytest

from vcrelay.bridge import RelayBridge, encode_payload
from vcrelay.bus import InMemoryBus
from vcrelay.errors import RelayClosed
from vcrelay.relay import VirtualChannel

TOKEN = b"token"


@pytest.fixture
def linked(relay_server, socket_dir):
    relay = VirtualChannel.open("pipe://echo-4242", timeout=5, pipe_dir=socket_dir, idle_timeout=0.05)
    conn = relay_server.accept()
    relay.authenticate(TOKEN)
    assert relay_server.recv_exactly(len(TOKEN)) == TOKEN
    yield relay, conn
    relay.close()


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestEncodePayload:
    def test_text_is_utf8(self):
        assert encode_payload("héllo") == "héllo".encode("utf-8")

    def test_bytes_pass_through(self):
        assert encode_payload(bytearray(b"\x00\x01")) == b"\x00\x01"

    def test_structured_payload_is_json(self):
        assert encode_payload({"type": "fdc3.instrument"}) == b'{"type": "fdc3.instrument"}'


class TestRelayBridge:
    def test_relay_bytes_are_broadcast(self, linked):
        relay, conn = linked
        bus = InMemoryBus()
        received = []
        bus.listen("proxy-request", received.append)
        bridge = RelayBridge(relay, bus)
        bridge.start()

        conn.sendall(b"hello")

        assert wait_for(lambda: received == ["hello"])
        assert bus.history == [("proxy-request", "hello")]
        bridge.stop()

    def test_split_utf8_character(self, linked):
        relay, conn = linked
        bus = InMemoryBus()
        received = []
        bus.listen("proxy-request", received.append)
        bridge = RelayBridge(relay, bus)
        bridge.start()

        data = "é".encode("utf-8")
        conn.sendall(data[:1])
        time.sleep(0.2)
        conn.sendall(data[1:])

        assert wait_for(lambda: "".join(received) == "é")
        bridge.stop()

    def test_bus_messages_are_written(self, linked, relay_server):
        relay, conn = linked
        bus = InMemoryBus()
        bridge = RelayBridge(relay, bus, topic="custom")
        bridge.start()

        bus.publish("custom", "from the bus")
        bus.publish("custom", {"n": 1})

        expected = b'from the bus{"n": 1}'
        assert relay_server.recv_exactly(len(expected)) == expected
        assert wait_for(lambda: bridge.payloads_sent == 2)
        bridge.stop()

    def test_send_queues_payload(self, linked, relay_server):
        relay, conn = linked
        bridge = RelayBridge(relay, InMemoryBus())
        bridge.start()

        bridge.send("Extension message")

        assert relay_server.recv_exactly(17) == b"Extension message"
        bridge.stop()
        with pytest.raises(RelayClosed):
            bridge.send("too late")

    def test_stop_closes_relay_and_pumps(self, linked):
        relay, conn = linked
        bridge = RelayBridge(relay, InMemoryBus())
        bridge.start()
        assert bridge.running

        bridge.stop()
        bridge.stop()

        assert relay.closed
        assert not bridge.running
        assert not bridge._inbound_thread.is_alive()
        assert not bridge._outbound_thread.is_alive()

    def test_peer_close_stops_bridge(self, linked, relay_server):
        relay, conn = linked
        bridge = RelayBridge(relay, InMemoryBus())
        bridge.start()

        conn.close()
        relay_server.conn = None

        assert bridge.wait(timeout=5)
        assert relay.closed

    def test_read_limit(self, linked):
        relay, conn = linked
        bridge = RelayBridge(relay, InMemoryBus(), max_reads=3)
        bridge.start()

        # Three idle reads of 0.05s each, then the pump gives up
        assert bridge.wait(timeout=5)
        assert bridge.chunks_received == 0
        assert relay.closed

    def test_bus_failure_does_not_stop_pump(self, linked):
        relay, conn = linked

        class FlakyBus(InMemoryBus):
            def __init__(self):
                super().__init__()
                self.calls = 0

            def broadcast(self, topic, payload):
                self.calls += 1
                if self.calls == 1:
                    raise ConnectionError("bus down")
                super().broadcast(topic, payload)

        bus = FlakyBus()
        bridge = RelayBridge(relay, bus)
        bridge.start()

        conn.sendall(b"one")
        assert wait_for(lambda: bus.calls == 1)
        conn.sendall(b"two")

        assert wait_for(lambda: bus.history == [("proxy-request", "two")])
        assert bridge.running
        bridge.stop()

    def test_stop_from_bus_thread(self, linked):
        relay, conn = linked
        bus = InMemoryBus()
        bridge = RelayBridge(relay, bus)
        bridge.start()

        stopper = threading.Thread(target=bridge.stop)
        stopper.start()
        stopper.join(timeout=5)

        assert not stopper.is_alive()
        assert bridge.wait(timeout=1)

    def test_truncated_character_flushed_at_end_of_stream(self, linked, relay_server):
        relay, conn = linked
        bus = InMemoryBus()
        bridge = RelayBridge(relay, bus)
        bridge.start()

        # First two bytes of "€", then the peer goes away
        conn.sendall(b"\xe2\x82")
        conn.close()
        relay_server.conn = None

        assert bridge.wait(timeout=5)
        assert bridge.chunks_received == 1
        assert bus.history == [("proxy-request", "\ufffd")]

    def test_invalid_utf8_is_replaced(self, linked):
        relay, conn = linked
        bus = InMemoryBus()
        bridge = RelayBridge(relay, bus)
        bridge.start()

        conn.sendall(b"ok\xff")

        assert wait_for(lambda: bus.history == [("proxy-request", "ok\ufffd")])
        bridge.stop()
