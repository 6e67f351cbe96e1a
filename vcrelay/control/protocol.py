"""
Control Channel Protocol Definitions

This module defines the envelopes exchanged with the remote desktop session
over the control channel and the codec that reads and writes them.

Protocol Flow:
1. Extension sends a request envelope (get-host-info, get-manifest, ...)
2. Remote answers with a response envelope carrying the same id
3. Remote may push event envelopes at any time (channel-ready, ...)
4. Responses can arrive in any order; the id is the only correlation

Message Format:
All envelopes are JSON objects followed by a newline character.
Binary data is base64-encoded within JSON for simplicity.

    {"kind": "request", "id": 1, "name": "get-host-info", "payload": {}}
    {"kind": "response", "id": 1, "name": "get-host-info", "payload": {"role": "server"}}
    {"kind": "event", "name": "channel-ready", "payload": {"channel_name": "echo"}}
"""

import base64
import binascii
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import MalformedMessage, StreamClosed


class EnvelopeKind(str, Enum):
    """Envelope kinds on the control channel."""

    REQUEST = "request"
    RESPONSE = "response"
    EVENT = "event"


class Operation(str, Enum):
    """Request names understood by the remote."""

    GET_HOST_INFO = "get-host-info"
    GET_MANIFEST = "get-manifest"
    SETUP_VIRTUAL_CHANNEL = "setup-virtual-channel"
    CLOSE_VIRTUAL_CHANNEL = "close-virtual-channel"


class EventName(str, Enum):
    """Events pushed by the remote."""

    CHANNEL_READY = "channel-ready"
    CHANNEL_CLOSED = "channel-closed"


class HostRole(str, Enum):
    """Role of the remote control endpoint."""

    SERVER = "server"
    CLIENT = "client"


# Status values carried by setup/close responses
STATUS_OK = "ok"
STATUS_UNAVAILABLE = "unavailable"

# Constants
READ_SIZE = 64 * 1024
MAX_LINE_BYTES = 4 * 1024 * 1024  # A single envelope never gets this large


@dataclass
class Envelope:
    """One unit on the control channel.

    ``id`` is set for requests and responses and is None for events.
    """

    kind: EnvelopeKind
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @property
    def error(self) -> Optional[str]:
        """Error text attached to a response by the remote, if any."""
        return self.payload.get("error")

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "kind": self.kind.value,
            "name": self.name,
            "payload": self.payload,
        }
        if self.id is not None:
            result["id"] = self.id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Envelope":
        try:
            kind = EnvelopeKind(data["kind"])
        except (KeyError, ValueError):
            raise MalformedMessage(f"Unknown envelope kind: {data.get('kind')!r}")

        name = data.get("name")
        if not isinstance(name, str):
            raise MalformedMessage(f"Envelope name must be a string, got {name!r}")

        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise MalformedMessage("Envelope payload must be an object")

        env_id = data.get("id")
        if kind == EnvelopeKind.EVENT:
            env_id = None
        elif not isinstance(env_id, int) or isinstance(env_id, bool):
            raise MalformedMessage(f"{kind.value} envelope requires an integer id")

        return cls(kind=kind, name=name, payload=payload, id=env_id)


@dataclass(frozen=True)
class HostInfo:
    """Identifies the remote control endpoint."""

    role: HostRole


@dataclass(frozen=True)
class ManifestLocation:
    """Where the remote keeps the extension manifest."""

    path: str


@dataclass(frozen=True)
class ChannelGrant:
    """Result of a successful virtual channel negotiation.

    The token is single use: it only authenticates the first connection
    made to ``relay_address``.
    """

    channel_name: str
    relay_address: str
    auth_token: bytes


def make_request(req_id: int, name: str, payload: Optional[Dict[str, Any]] = None) -> Envelope:
    return Envelope(EnvelopeKind.REQUEST, name, dict(payload or {}), req_id)


def make_response(req_id: int, name: str, payload: Optional[Dict[str, Any]] = None) -> Envelope:
    return Envelope(EnvelopeKind.RESPONSE, name, dict(payload or {}), req_id)


def make_event(name: str, payload: Optional[Dict[str, Any]] = None) -> Envelope:
    return Envelope(EnvelopeKind.EVENT, name, dict(payload or {}))


def encode_bytes(data: bytes) -> str:
    """Encode binary payload values for transport inside JSON."""
    return base64.b64encode(data).decode("ascii")


def decode_bytes(text: str) -> bytes:
    """Decode a base64 payload value.

    Raises ValueError if the value is not valid base64.
    """
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
        raise ValueError(f"Invalid base64 value: {e}") from e


def encode_envelope(envelope: Envelope) -> bytes:
    """Encode an envelope to bytes for transmission."""
    return json.dumps(envelope.to_dict(), separators=(",", ":")).encode("utf-8") + b"\n"


def decode_envelope(line: bytes) -> Envelope:
    """Decode a single line (without or with its newline) into an envelope."""
    try:
        data = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"Invalid envelope: {e}") from e

    if not isinstance(data, dict):
        raise MalformedMessage("Envelope must be a JSON object")

    return Envelope.from_dict(data)


def peek_id(line: bytes) -> Optional[int]:
    """Best-effort extraction of the id from a line that failed to decode."""
    try:
        data = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if isinstance(data, dict) and isinstance(data.get("id"), int):
        return data["id"]
    return None


class EnvelopeReader:
    """Reads envelopes from a binary stream.

    Bytes are buffered until a newline is seen, so partial reads are fine and
    bytes belonging to the next envelope stay in the buffer for the next call.
    """

    def __init__(self, stream):
        self._stream = stream
        self._buffer = bytearray()
        # BufferedReader.read(n) waits for n bytes; read1 returns what is there
        self._read = getattr(stream, "read1", None) or stream.read
        self.last_line: bytes = b""

    def read_envelope(self) -> Envelope:
        """Block until one complete envelope is available.

        Raises:
            MalformedMessage: the next line could not be parsed. The line is
                consumed, so the reader can be called again.
            StreamClosed: end of stream was reached.
        """
        self.last_line = b""
        while True:
            line = self._next_line()
            if line.strip():
                break

        self.last_line = line
        return decode_envelope(line)

    def _next_line(self) -> bytes:
        while True:
            newline = self._buffer.find(b"\n")
            if newline >= 0:
                line = bytes(self._buffer[:newline])
                del self._buffer[: newline + 1]
                return line

            if len(self._buffer) > MAX_LINE_BYTES:
                self._buffer.clear()
                self._discard_until_newline()
                raise MalformedMessage(f"Envelope exceeds {MAX_LINE_BYTES} bytes")

            chunk = self._read(READ_SIZE)
            if not chunk:
                if self._buffer:
                    self._buffer.clear()
                raise StreamClosed("Control stream closed")
            self._buffer += chunk

    def _discard_until_newline(self):
        while True:
            chunk = self._read(READ_SIZE)
            if not chunk:
                raise StreamClosed("Control stream closed")
            newline = chunk.find(b"\n")
            if newline >= 0:
                self._buffer += chunk[newline + 1 :]
                return
