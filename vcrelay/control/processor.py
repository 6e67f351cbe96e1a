"""
Control Channel Processor

Owns the two control streams (stdin/stdout in deployment). Requests are
written as envelopes; a single reader thread decodes everything the remote
sends and routes it:

- responses resolve the pending request with the same id
- events update the readiness state and wake waiters
- anything else is logged and dropped

Callers block on their own pending slot, so responses may arrive in any order.
"""

import itertools
import logging
import threading
from typing import Callable, Dict, List, Optional

from ..errors import (
    ChannelClosed,
    MalformedMessage,
    NegotiationRefused,
    ProtocolError,
    StreamClosed,
    Timeout,
)
from .protocol import (
    STATUS_OK,
    ChannelGrant,
    Envelope,
    EnvelopeKind,
    EnvelopeReader,
    EventName,
    HostInfo,
    HostRole,
    ManifestLocation,
    Operation,
    decode_bytes,
    encode_envelope,
    make_request,
    peek_id,
)

logger = logging.getLogger(__name__)


class PendingRequest:
    """Slot a caller waits on until its response arrives."""

    def __init__(self, req_id: int, name: str):
        self.id = req_id
        self.name = name
        self._done = threading.Event()
        self._response: Optional[Envelope] = None
        self._error: Optional[Exception] = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def resolve(self, envelope: Envelope):
        self._response = envelope
        self._done.set()

    def fail(self, error: Exception):
        self._error = error
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def result(self) -> Envelope:
        if self._error is not None:
            raise self._error
        return self._response


class ControlChannelProcessor:
    """Request/response/event processor over a pair of byte streams.

    Example:
        processor = ControlChannelProcessor(sys.stdin.buffer, sys.stdout.buffer)
        processor.start()
        info = processor.discover_host()
    """

    def __init__(self, inbound, outbound, request_timeout: Optional[float] = None):
        """Initialize the processor.

        Args:
            inbound: Binary stream the remote writes envelopes to
            outbound: Binary stream we write envelopes to
            request_timeout: Default deadline in seconds for requests (None waits forever)
        """
        self._inbound = inbound
        self._outbound = outbound
        self._reader = EnvelopeReader(inbound)
        self.request_timeout = request_timeout

        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingRequest] = {}
        self._pending_lock = threading.Lock()
        self._write_lock = threading.Lock()

        # Event state, guarded by the condition's lock
        self._events = threading.Condition()
        self._ready_channels: set = set()
        self._any_ready = False
        self._listeners: Dict[str, List[Callable[[Envelope], None]]] = {}

        # Set once no response can arrive any more
        self._inbound_done = False
        self._close_reason = ""
        self._closed = False
        self._close_lock = threading.Lock()
        self._reader_thread: Optional[threading.Thread] = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed or self._inbound_done

    def start(self):
        """Start the background reader thread."""
        if self._reader_thread is not None:
            return
        self._reader_thread = threading.Thread(
            target=self._read_loop,
            daemon=True,
            name="control-reader",
        )
        self._reader_thread.start()

    def close(self):
        """Close the processor.

        Every pending request fails with ChannelClosed and the outbound stream
        is closed. Safe to call more than once.
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        self._shutdown("Control channel processor closed")

        with self._write_lock:
            try:
                self._outbound.close()
            except (OSError, ValueError) as e:
                logger.debug(f"Error closing outbound control stream: {e}")

        thread = self._reader_thread
        if thread and thread is not threading.current_thread():
            # The reader exits once the remote closes its end
            thread.join(timeout=2)
            if thread.is_alive():
                logger.debug("Control reader still blocked on inbound stream")
            else:
                self._close_inbound()
        else:
            self._close_inbound()

    # ------------------------------------------------------------------
    # Typed operations
    # ------------------------------------------------------------------

    def discover_host(self, timeout: Optional[float] = None) -> HostInfo:
        """Ask the remote which role it plays."""
        response = self.request(Operation.GET_HOST_INFO.value, timeout=timeout)
        role = response.payload.get("role")
        try:
            return HostInfo(role=HostRole(role))
        except ValueError:
            raise ProtocolError(f"Invalid host role: {role!r}")

    def fetch_manifest(self, timeout: Optional[float] = None) -> ManifestLocation:
        """Ask the remote where the extension manifest lives."""
        response = self.request(Operation.GET_MANIFEST.value, timeout=timeout)
        path = response.payload.get("path")
        if not isinstance(path, str) or not path:
            raise ProtocolError(f"Invalid manifest path: {path!r}")
        return ManifestLocation(path=path)

    def negotiate_channel(
        self, name: str, requester_id: int, timeout: Optional[float] = None
    ) -> ChannelGrant:
        """Ask the remote to set up a virtual channel.

        Returns the relay address to connect to and the single-use token to
        authenticate with.

        Raises:
            NegotiationRefused: the remote reported the channel unavailable
            ProtocolError: the grant is missing its address or token
        """
        response = self.request(
            Operation.SETUP_VIRTUAL_CHANNEL.value,
            {"channel_name": name, "requester_id": requester_id},
            timeout=timeout,
            check_error=False,
        )
        payload = response.payload
        status = payload.get("status", STATUS_OK)
        if response.error or status != STATUS_OK:
            raise NegotiationRefused(name, response.error or status)

        relay_address = payload.get("relay_path")
        if not isinstance(relay_address, str) or not relay_address:
            raise ProtocolError(f"Invalid relay path: {relay_address!r}")

        token = payload.get("auth_token")
        try:
            auth_token = decode_bytes(token)
        except ValueError as e:
            raise ProtocolError(f"Invalid auth token: {e}") from e
        if not auth_token:
            raise ProtocolError("Empty auth token")

        return ChannelGrant(channel_name=name, relay_address=relay_address, auth_token=auth_token)

    def await_channel_ready(self, name: Optional[str] = None, timeout: Optional[float] = None):
        """Block until the remote raises the channel-ready event.

        Readiness arrives asynchronously on the control channel after the
        relay token has been accepted. An event seen before this call counts.

        Args:
            name: Only accept readiness for this channel (None accepts any)
            timeout: Seconds to wait (None waits forever)
        """

        def is_ready():
            if name is None:
                return self._any_ready
            return name in self._ready_channels or None in self._ready_channels

        with self._events:
            finished = self._events.wait_for(lambda: is_ready() or self._inbound_done, timeout)
            if is_ready():
                return
            if not finished:
                raise Timeout(f"Virtual channel not ready after {timeout}s")
            raise ChannelClosed(self._close_reason)

    def close_channel(self, name: str, timeout: Optional[float] = None):
        """Tell the remote we are done with a virtual channel.

        Best effort: a refusal is logged, transport errors propagate. Local
        resources (the relay) are not touched.
        """
        response = self.request(
            Operation.CLOSE_VIRTUAL_CHANNEL.value,
            {"channel_name": name},
            timeout=timeout,
            check_error=False,
        )
        status = response.payload.get("status", STATUS_OK)
        if response.error or status != STATUS_OK:
            logger.warning(f"Remote did not close virtual channel {name}: {response.error or status}")

    def add_event_listener(self, name: str, callback: Callable[[Envelope], None]):
        """Call ``callback`` on the reader thread for every event named ``name``."""
        with self._events:
            self._listeners.setdefault(name, []).append(callback)

    # ------------------------------------------------------------------
    # Request/response plumbing
    # ------------------------------------------------------------------

    def request(
        self,
        name: str,
        payload: Optional[dict] = None,
        timeout: Optional[float] = None,
        check_error: bool = True,
    ) -> Envelope:
        """Send a request and block until its response arrives.

        Raises:
            ChannelClosed: the control stream closed before the response came
            Timeout: no response within the deadline
            ProtocolError: the remote answered with an error (if check_error)
            MalformedMessage: the response could not be decoded
        """
        if timeout is None:
            timeout = self.request_timeout

        with self._pending_lock:
            if self.closed:
                raise ChannelClosed(self._close_reason or "Control channel closed")
            req_id = next(self._ids)
            slot = PendingRequest(req_id, name)
            self._pending[req_id] = slot

        try:
            self._send(make_request(req_id, name, payload))
        except ChannelClosed:
            self._discard(req_id)
            raise

        if not slot.wait(timeout):
            self._discard(req_id)
            # The reader may have resolved it between the wait and the discard
            if not slot.done:
                raise Timeout(f"No response to {name} (id={req_id}) after {timeout}s")

        response = slot.result()
        if check_error and response.error:
            raise ProtocolError(f"{name} failed: {response.error}")
        return response

    def _send(self, envelope: Envelope):
        data = encode_envelope(envelope)
        with self._write_lock:
            if self._closed:
                raise ChannelClosed("Control channel processor closed")
            try:
                self._outbound.write(data)
                self._outbound.flush()
            except (OSError, ValueError) as e:
                raise ChannelClosed(f"Control stream write failed: {e}") from e
        logger.debug(f"Sent {envelope.kind.value} {envelope.name} (id={envelope.id})")

    def _discard(self, req_id: int) -> Optional[PendingRequest]:
        with self._pending_lock:
            return self._pending.pop(req_id, None)

    def _read_loop(self):
        logger.debug("Control reader started")
        reason = "Control stream closed"
        try:
            while True:
                try:
                    envelope = self._reader.read_envelope()
                except MalformedMessage as e:
                    self._handle_malformed(e)
                    continue
                self._dispatch(envelope)
        except StreamClosed:
            logger.info("Control stream closed by remote")
        except (OSError, ValueError) as e:
            # ValueError: the stream object was closed under us
            if not self._closed:
                logger.error(f"Control stream read failed: {e}")
            reason = f"Control stream failed: {e}"
        finally:
            self._shutdown(reason)
            logger.debug("Control reader ended")

    def _dispatch(self, envelope: Envelope):
        if envelope.kind == EnvelopeKind.RESPONSE:
            slot = self._discard(envelope.id)
            if slot is None:
                logger.warning(f"Dropping response {envelope.name} for unknown request id {envelope.id}")
                return
            slot.resolve(envelope)
        elif envelope.kind == EnvelopeKind.EVENT:
            self._handle_event(envelope)
        else:
            logger.warning(f"Ignoring unsupported request from remote: {envelope.name}")

    def _handle_event(self, envelope: Envelope):
        logger.debug(f"Received event {envelope.name}")
        with self._events:
            if envelope.name == EventName.CHANNEL_READY.value:
                self._ready_channels.add(envelope.payload.get("channel_name"))
                self._any_ready = True
            elif envelope.name == EventName.CHANNEL_CLOSED.value:
                self._ready_channels.discard(envelope.payload.get("channel_name"))
                if not self._ready_channels:
                    self._any_ready = False
            self._events.notify_all()
            listeners = list(self._listeners.get(envelope.name, ()))

        for callback in listeners:
            try:
                callback(envelope)
            except Exception:
                logger.exception(f"Event listener for {envelope.name} failed")

    def _handle_malformed(self, error: MalformedMessage):
        req_id = peek_id(self._reader.last_line)
        slot = self._discard(req_id) if req_id is not None else None
        if slot is None:
            logger.warning(f"Discarding malformed envelope: {error}")
            return
        logger.warning(f"Malformed response to {slot.name} (id={req_id}): {error}")
        slot.fail(error)

    def _shutdown(self, reason: str):
        with self._pending_lock:
            if not self._close_reason:
                self._close_reason = reason
            self._inbound_done = True
            pending = list(self._pending.values())
            self._pending.clear()

        if pending:
            logger.warning(f"Failing {len(pending)} pending request(s): {reason}")
        for slot in pending:
            slot.fail(ChannelClosed(reason))

        with self._events:
            self._events.notify_all()

    def _close_inbound(self):
        try:
            self._inbound.close()
        except (OSError, ValueError) as e:
            logger.debug(f"Error closing inbound control stream: {e}")
