"""
Error types raised by the control channel and the virtual channel relay.

Codec and protocol errors are delivered to the caller waiting on the
affected request. Transport errors (ChannelClosed, RelayClosed) are terminal
for every operation on that transport.
"""


class VcRelayError(Exception):
    """Base class for all vcrelay errors."""


class MalformedMessage(VcRelayError):
    """Bytes on the control stream could not be parsed as an envelope."""


class StreamClosed(VcRelayError):
    """The control stream reached end-of-stream."""


class ProtocolError(VcRelayError):
    """The remote returned a response the caller cannot interpret."""


class NegotiationRefused(ProtocolError):
    """The remote declined to open the requested virtual channel."""

    def __init__(self, channel_name: str, status: str):
        super().__init__(f"Virtual channel '{channel_name}' refused: {status}")
        self.channel_name = channel_name
        self.status = status


class ChannelClosed(VcRelayError):
    """The control stream ended while an operation was outstanding."""


class Timeout(VcRelayError, TimeoutError):
    """A caller-specified deadline elapsed."""


class RelayError(VcRelayError):
    """Base class for virtual channel relay failures."""


class ConnectTimeout(Timeout, RelayError):
    """Connecting to the relay address did not finish in time."""


class ConnectRefused(RelayError):
    """Nothing is listening on the relay address."""


class RelayClosed(RelayError):
    """The relay was closed before or during the operation."""
