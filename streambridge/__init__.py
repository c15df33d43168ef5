"""
Stream Bridge

Two peers exchanging data over streams: a relay node that pairs two inbound
streams and forwards bytes between them, and a framed protocol for sending
named, exact-length files.
"""

from .config import Config, load_config
from .exceptions import (
    StreamBridgeError,
    ProtocolError,
    TruncatedTransfer,
    AddressError,
    CapacityExceeded,
)
from .node import StreamNode

__version__ = "0.1.0"

__all__ = [
    'Config',
    'load_config',
    'StreamNode',
    'StreamBridgeError',
    'ProtocolError',
    'TruncatedTransfer',
    'AddressError',
    'CapacityExceeded',
]
