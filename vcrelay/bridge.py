"""
Relay Bridge

Pumps bytes between a connected VirtualChannel and a pub/sub bus:

- inbound: relay.read -> bus.broadcast(topic, text), in arrival order
- outbound: bus message on topic -> relay.write

Each direction runs on its own thread so a slow bus never starves the relay
and vice versa. Stopping the bridge closes the relay, which wakes whichever
pump is still blocked.
"""

import codecs
import json
import logging
import queue
import threading
from typing import Optional, Union

from .bus.base import MessageBus
from .errors import RelayClosed
from .relay import VirtualChannel

logger = logging.getLogger(__name__)

DATA_CHUNK = 100 * 1024
DEFAULT_TOPIC = "proxy-request"

_STOP = object()

Payload = Union[bytes, bytearray, str, dict, list]


def encode_payload(payload: Payload) -> bytes:
    """Turn a bus payload into the bytes written on the relay.

    Text goes out as UTF-8, structured payloads as UTF-8 JSON.
    """
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload).encode("utf-8")


class RelayBridge:
    """Two pump threads between a relay and a bus topic."""

    def __init__(
        self,
        relay: VirtualChannel,
        bus: MessageBus,
        topic: str = DEFAULT_TOPIC,
        chunk_size: int = DATA_CHUNK,
        max_reads: Optional[int] = None,
    ):
        """Initialize the bridge.

        Args:
            relay: Authenticated relay, ready for streaming
            bus: Bus to broadcast received data on and take outgoing data from
            topic: Bus topic used in both directions
            chunk_size: Size of the relay read buffer
            max_reads: Stop after this many relay reads (None reads until closed)
        """
        self.relay = relay
        self.bus = bus
        self.topic = topic
        self.chunk_size = chunk_size
        self.max_reads = max_reads

        self.chunks_received = 0
        self.payloads_sent = 0

        self._outbox: "queue.Queue" = queue.Queue()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stopped = threading.Event()
        self._stop_lock = threading.Lock()
        self._inbound_thread: Optional[threading.Thread] = None
        self._outbound_thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._inbound_thread is not None and not self._stopped.is_set()

    def start(self):
        """Subscribe to the bus and start both pumps."""
        if self._inbound_thread is not None:
            return

        self.bus.subscribe(self.topic, self._on_bus_message)

        self._inbound_thread = threading.Thread(
            target=self._inbound_pump, daemon=True, name="relay-inbound"
        )
        self._outbound_thread = threading.Thread(
            target=self._outbound_pump, daemon=True, name="relay-outbound"
        )
        self._inbound_thread.start()
        self._outbound_thread.start()
        logger.info(f"Bridge started between {self.relay.address} and topic {self.topic}")

    def send(self, payload: Payload):
        """Queue a payload for the relay, as if it came from the bus."""
        if self._stopped.is_set():
            raise RelayClosed("Bridge is stopped")
        self._outbox.put(payload)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the bridge has shut down. Returns False on timeout."""
        if not self._stopped.wait(timeout):
            return False
        self._join()
        return True

    def stop(self):
        """Shut the bridge down. Safe to call from any thread, more than once."""
        with self._stop_lock:
            if self._stopped.is_set():
                return
            self._stopped.set()

        logger.info("Stopping bridge")
        self.relay.close()
        self._outbox.put(_STOP)
        self._join()

    def _join(self):
        for thread in (self._inbound_thread, self._outbound_thread):
            if thread and thread is not threading.current_thread():
                thread.join(timeout=5)

    def _on_bus_message(self, payload: Payload):
        if self._stopped.is_set():
            logger.debug(f"Bridge stopped, dropping bus message on {self.topic}")
            return
        logger.info(f"Bus message on {self.topic} for the relay")
        self._outbox.put(payload)

    def _inbound_pump(self):
        buffer = bytearray(self.chunk_size)
        reads = 0
        try:
            while not self._stopped.is_set():
                if self.max_reads is not None and reads >= self.max_reads:
                    logger.info(f"Read limit of {self.max_reads} reached")
                    break
                reads += 1

                count = self.relay.read(buffer)
                if count == 0:
                    logger.debug("zero read, continue")
                    continue

                chunk = bytes(buffer[:count])
                self.chunks_received += 1
                logger.debug(f"Received bytes: {chunk.hex('-')}")
                self._forward(chunk)
        except RelayClosed as e:
            logger.info(f"Inbound pump ended: {e}")
        except Exception:
            logger.exception("Inbound pump failed")
        finally:
            self._flush_decoder()
            self.stop()

    def _forward(self, chunk: bytes):
        # Multi-byte characters may be split across reads
        self._broadcast(self._decoder.decode(chunk))

    def _flush_decoder(self):
        # Bytes of a character cut off by end of stream are still forwarded
        self._broadcast(self._decoder.decode(b"", final=True))

    def _broadcast(self, text: str):
        if not text:
            return
        try:
            self.bus.broadcast(self.topic, text)
        except Exception:
            logger.exception(f"Broadcast on {self.topic} failed")

    def _outbound_pump(self):
        try:
            while True:
                payload = self._outbox.get()
                if payload is _STOP:
                    break
                data = encode_payload(payload)
                self.relay.write(data)
                self.payloads_sent += 1
                logger.debug(f"Sent bytes: {data.hex('-')}")
        except RelayClosed as e:
            logger.info(f"Outbound pump ended: {e}")
        except Exception:
            logger.exception("Outbound pump failed")
        finally:
            self.stop()
