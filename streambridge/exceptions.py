"""
Error taxonomy for stream sessions.

Errors raised while serving one stream are local to that stream: handlers
log them and close the stream. Only setup errors end the process.
"""


class StreamBridgeError(Exception):
    """Base class for all streambridge errors."""


class ProtocolError(StreamBridgeError):
    """Malformed or incomplete header, or a failed protocol negotiation."""


class TruncatedTransfer(StreamBridgeError, OSError):
    """The declared byte length was not matched by the bytes available."""

    def __init__(self, expected: int, received: int, filename: str = ''):
        self.expected = expected
        self.received = received
        self.filename = filename
        name = f" for {filename!r}" if filename else ''
        super().__init__(
            f"Transfer truncated{name}: expected {expected} bytes, got {received}"
        )


class AddressError(StreamBridgeError, ValueError):
    """Malformed peer address, or the remote peer is not who the address says."""


class CapacityExceeded(StreamBridgeError):
    """A stream arrived while the pairing registry was already full."""
