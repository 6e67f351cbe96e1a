import os
import shutil
import socket
import sys
import tempfile
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vcrelay.control.processor import ControlChannelProcessor
from vcrelay.control.protocol import (
    EnvelopeReader,
    encode_envelope,
    make_event,
    make_response,
)
from vcrelay.errors import StreamClosed


class FakeRemote:
    """Remote end of the control channel, driven by the test.

    Two pipes stand in for stdin/stdout: the processor reads what we write
    and we read what the processor writes.
    """

    def __init__(self):
        to_ext_r, to_ext_w = os.pipe()
        from_ext_r, from_ext_w = os.pipe()

        # Processor side
        self.inbound = os.fdopen(to_ext_r, "rb")
        self.outbound = os.fdopen(from_ext_w, "wb")

        # Remote side
        self._writer = os.fdopen(to_ext_w, "wb")
        self._reader_stream = os.fdopen(from_ext_r, "rb")
        self._reader = EnvelopeReader(self._reader_stream)
        self._write_lock = threading.Lock()
        self._serve_thread = None
        self.handled = []

    def next_request(self):
        return self._reader.read_envelope()

    def send(self, envelope):
        self.send_raw(encode_envelope(envelope))

    def send_raw(self, data: bytes):
        with self._write_lock:
            self._writer.write(data)
            self._writer.flush()

    def respond(self, request, payload=None):
        self.send(make_response(request.id, request.name, payload))

    def emit(self, name, payload=None):
        self.send(make_event(name, payload))

    def hang_up(self):
        """Close our write end: the processor sees end of stream."""
        with self._write_lock:
            if not self._writer.closed:
                self._writer.close()

    def serve(self, handlers):
        """Answer requests in the background.

        ``handlers`` maps a request name to a callable taking the request and
        returning the response payload (or None to send nothing).
        """

        def loop():
            while True:
                try:
                    request = self.next_request()
                except (StreamClosed, ValueError, OSError):
                    return
                self.handled.append(request)
                handler = handlers.get(request.name)
                if handler is None:
                    self.respond(request, {"error": f"unknown request {request.name}"})
                    continue
                payload = handler(request)
                if payload is not None:
                    self.respond(request, payload)

        self._serve_thread = threading.Thread(target=loop, daemon=True)
        self._serve_thread.start()

    def close(self):
        self.hang_up()
        # Closing the processor's write end lets the serve loop see EOF
        for stream in (self.outbound, self.inbound):
            try:
                stream.close()
            except (OSError, ValueError):
                pass
        if self._serve_thread:
            self._serve_thread.join(timeout=2)
        self._reader_stream.close()


class RelayServer:
    """Unix socket listener playing the remote side of the relay pipe."""

    def __init__(self, path: str):
        self.path = path
        self.listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.listener.bind(path)
        self.listener.listen(1)
        self.listener.settimeout(5)
        self.conn = None

    def accept(self) -> socket.socket:
        self.conn, _ = self.listener.accept()
        self.conn.settimeout(5)
        return self.conn

    def recv_exactly(self, size: int) -> bytes:
        data = b""
        while len(data) < size:
            chunk = self.conn.recv(size - len(data))
            if not chunk:
                break
            data += chunk
        return data

    def close(self):
        if self.conn:
            self.conn.close()
        self.listener.close()


@pytest.fixture
def socket_dir():
    # AF_UNIX paths are limited to ~108 bytes, so stay out of tmp_path
    path = tempfile.mkdtemp(prefix="vcr-")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def remote():
    fake = FakeRemote()
    yield fake
    fake.close()


@pytest.fixture
def processor(remote):
    proc = ControlChannelProcessor(remote.inbound, remote.outbound, request_timeout=5)
    proc.start()
    yield proc
    remote.hang_up()
    proc.close()


@pytest.fixture
def relay_server(socket_dir):
    server = RelayServer(os.path.join(socket_dir, "echo-4242"))
    yield server
    server.close()
