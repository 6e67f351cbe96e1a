"""
vcrelay

Relays opaque binary payloads between a host application and a remote
desktop session over a negotiated virtual channel, and bridges that traffic
to a pub/sub bus so other local processes can take part.

Architecture:
- Control channel (stdin/stdout) negotiates the virtual channel
- VirtualChannel connects to the relay socket and authenticates with the token
- RelayBridge pumps bytes between the relay and the bus until shutdown
"""

from .bridge import DATA_CHUNK, RelayBridge
from .config import RelayConfig
from .control import ControlChannelProcessor
from .errors import (
    ChannelClosed,
    ConnectRefused,
    ConnectTimeout,
    MalformedMessage,
    NegotiationRefused,
    ProtocolError,
    RelayClosed,
    RelayError,
    StreamClosed,
    Timeout,
    VcRelayError,
)
from .relay import RelayState, VirtualChannel

__version__ = "0.1.0"

__all__ = [
    "DATA_CHUNK",
    "RelayBridge",
    "RelayConfig",
    "ControlChannelProcessor",
    "RelayState",
    "VirtualChannel",
    # Errors
    "VcRelayError",
    "MalformedMessage",
    "StreamClosed",
    "ProtocolError",
    "NegotiationRefused",
    "ChannelClosed",
    "Timeout",
    "RelayError",
    "ConnectTimeout",
    "ConnectRefused",
    "RelayClosed",
]
