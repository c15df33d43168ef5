"""
Relay Module - Two-Party Stream Rendezvous

Pairs two inbound streams on a relay node and forwards raw bytes between
them.
"""

from .bridge import RELAY_PROTOCOL, RelayStats, copy_stream, relay_streams
from .registry import PairingRegistry

__all__ = [
    'RELAY_PROTOCOL',
    'RelayStats',
    'copy_stream',
    'relay_streams',
    'PairingRegistry',
]
