"""
Control channel: envelope codec and the request/response processor.

Usage:
    from vcrelay.control import ControlChannelProcessor

    with ControlChannelProcessor(sys.stdin.buffer, sys.stdout.buffer) as processor:
        grant = processor.negotiate_channel("echo", os.getpid())
"""

from .protocol import (
    ChannelGrant,
    Envelope,
    EnvelopeKind,
    EnvelopeReader,
    EventName,
    HostInfo,
    HostRole,
    ManifestLocation,
    Operation,
    decode_envelope,
    encode_envelope,
)
from .processor import ControlChannelProcessor

__all__ = [
    # Protocol types
    "ChannelGrant",
    "Envelope",
    "EnvelopeKind",
    "EventName",
    "HostInfo",
    "HostRole",
    "ManifestLocation",
    "Operation",
    # Codec
    "EnvelopeReader",
    "decode_envelope",
    "encode_envelope",
    # Processor
    "ControlChannelProcessor",
]
