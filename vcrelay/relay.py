"""
Virtual Channel Relay

The relay is the byte pipe negotiated over the control channel. The remote
session exposes it as a Unix domain socket; the address handed out by
negotiation (``pipe://echo-4242``) names a socket inside the pipe directory.

Lifecycle:
    disconnected -> connecting -> authenticating -> ready -> streaming -> closed
    (failed is reachable from any state that is not yet closed)

The first bytes written after connecting must be the raw auth token. The
remote confirms acceptance on the control channel (channel-ready), not here.
Payloads are opaque: no framing is added on top of the socket.
"""

import logging
import os
import select
import socket
import threading
from enum import Enum
from typing import Optional

from .errors import ConnectRefused, ConnectTimeout, RelayClosed, RelayError

logger = logging.getLogger(__name__)

PIPE_SCHEME = "pipe://"
UNIX_SCHEME = "unix://"
DEFAULT_PIPE_DIR = "/tmp/vcrelay/pipes"
DEFAULT_IDLE_TIMEOUT = 1.0  # Longest a read waits before reporting no data


class RelayState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    STREAMING = "streaming"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = (RelayState.CLOSED, RelayState.FAILED)


def resolve_address(address: str, pipe_dir: Optional[str] = None) -> str:
    """Map a relay address to a Unix socket path.

    ``pipe://name`` lives in ``pipe_dir``; ``unix:///abs/path`` and absolute
    paths are used as they are.
    """
    if address.startswith(PIPE_SCHEME):
        name = address[len(PIPE_SCHEME):]
        if not name or "/" in name or name in (".", ".."):
            raise ValueError(f"Invalid pipe name in relay address: {address}")
        return os.path.join(pipe_dir or DEFAULT_PIPE_DIR, name)
    if address.startswith(UNIX_SCHEME):
        return address[len(UNIX_SCHEME):]
    if os.path.isabs(address):
        return address
    raise ValueError(f"Unsupported relay address: {address}")


class VirtualChannel:
    """Authenticated, bidirectional byte pipe to the remote session.

    ``read`` and ``write`` may be used from different threads at the same
    time. ``close`` may be called from any thread, any number of times, and
    unblocks a pending ``read`` or ``write`` with RelayClosed.
    """

    def __init__(
        self,
        address: str,
        pipe_dir: Optional[str] = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    ):
        self.address = address
        self.path = resolve_address(address, pipe_dir)
        self.idle_timeout = idle_timeout

        self._sock: Optional[socket.socket] = None
        self._state = RelayState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()

    @classmethod
    def open(
        cls,
        address: str,
        timeout: Optional[float] = None,
        pipe_dir: Optional[str] = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    ) -> "VirtualChannel":
        """Create a relay for ``address`` and connect it."""
        channel = cls(address, pipe_dir=pipe_dir, idle_timeout=idle_timeout)
        channel.connect(timeout=timeout)
        return channel

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        return f"VirtualChannel({self.address!r}, state={self._state.value})"

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state in TERMINAL_STATES

    def connect(self, timeout: Optional[float] = None):
        """Open the connection to the relay socket.

        Raises:
            ConnectTimeout: the connection did not complete within ``timeout``
            ConnectRefused: nothing listens at the address
        """
        with self._state_lock:
            if self._state != RelayState.DISCONNECTED:
                raise RelayError(f"Cannot connect relay in state {self._state.value}")
            self._state = RelayState.CONNECTING

        logger.debug(f"Connecting relay {self.address} at {self.path}")
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        try:
            sock.connect(self.path)
        except socket.timeout as e:
            sock.close()
            self._fail()
            raise ConnectTimeout(f"Timed out connecting to {self.address} after {timeout}s") from e
        except OSError as e:
            sock.close()
            self._fail()
            raise ConnectRefused(f"Cannot connect to {self.address}: {e}") from e
        sock.settimeout(None)

        with self._state_lock:
            if self._state != RelayState.CONNECTING:
                # Closed while we were connecting
                sock.close()
                raise RelayClosed(f"Relay {self.address} closed during connect")
            self._sock = sock
            self._state = RelayState.AUTHENTICATING

        logger.info(f"Relay connected: {self.address}")

    def authenticate(self, token: bytes):
        """Send the auth token as the first bytes on the connection.

        Success only means the bytes left this process; wait for the
        channel-ready event on the control channel before streaming.
        """
        with self._state_lock:
            state = self._state
        if state in TERMINAL_STATES:
            raise RelayClosed(f"Relay {self.address} is {state.value}")
        if state != RelayState.AUTHENTICATING:
            raise RelayError(f"Cannot authenticate relay in state {state.value}")

        self._send(token)

        with self._state_lock:
            if self._state == RelayState.AUTHENTICATING:
                self._state = RelayState.READY
        logger.info(f"Sent auth token to {self.address}")

    def read(self, buffer) -> int:
        """Read whatever is available into ``buffer``.

        Waits at most ``idle_timeout`` seconds. Returns the number of bytes
        read; 0 means nothing arrived yet, not end of stream, so callers
        should simply read again.

        Raises:
            RelayClosed: the relay was closed, the peer hung up or I/O failed
        """
        if memoryview(buffer).nbytes == 0:
            raise ValueError("Read buffer must not be empty")

        sock = self._streaming_socket()
        try:
            readable, _, _ = select.select([sock], [], [], self.idle_timeout)
            if not readable:
                if self.closed:
                    raise RelayClosed(f"Relay {self.address} closed")
                return 0
            count = sock.recv_into(buffer)
        except (OSError, ValueError) as e:
            raise self._io_failure(e) from e

        if count == 0:
            if not self.closed:
                logger.info(f"Relay peer closed {self.address}")
                self.close()
            raise RelayClosed(f"Relay {self.address} closed")

        self._mark_streaming()
        return count

    def write(self, data: bytes):
        """Write all of ``data``. Concurrent writes never interleave."""
        self._streaming_socket()
        self._send(data)
        self._mark_streaming()

    def close(self):
        """Close the relay and release the socket exactly once."""
        self._release(RelayState.CLOSED)

    def _send(self, data: bytes):
        with self._write_lock:
            with self._state_lock:
                sock = self._sock
            if sock is None or self.closed:
                raise RelayClosed(f"Relay {self.address} closed")
            try:
                sock.sendall(data)
            except (OSError, ValueError) as e:
                raise self._io_failure(e) from e

    def _streaming_socket(self) -> socket.socket:
        with self._state_lock:
            state = self._state
            sock = self._sock
        if state in TERMINAL_STATES:
            raise RelayClosed(f"Relay {self.address} is {state.value}")
        if state not in (RelayState.READY, RelayState.STREAMING):
            raise RelayError(f"Relay {self.address} is not ready ({state.value})")
        return sock

    def _mark_streaming(self):
        with self._state_lock:
            if self._state == RelayState.READY:
                self._state = RelayState.STREAMING

    def _io_failure(self, error: Exception) -> RelayClosed:
        if self.closed:
            return RelayClosed(f"Relay {self.address} closed")
        logger.error(f"Relay I/O error on {self.address}: {error}")
        self._release(RelayState.FAILED)
        return RelayClosed(f"Relay {self.address} failed: {error}")

    def _fail(self):
        with self._state_lock:
            if self._state not in TERMINAL_STATES:
                self._state = RelayState.FAILED

    def _release(self, final_state: RelayState):
        with self._state_lock:
            if self._state in TERMINAL_STATES:
                return
            self._state = final_state
            sock, self._sock = self._sock, None

        if sock is None:
            return

        # shutdown wakes any thread blocked in select/recv/sendall
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()
        logger.info(f"Relay {self.address} {final_state.value}")
