"""
Host Module - Peer Identity, Addresses and Streams

The minimal peer-to-peer substrate the session protocols run on: stable
peer identities, streams to identified peers, and per-protocol handlers for
inbound streams.
"""

from .identity import PeerIdentity, make_identity, peer_id_from_public_bytes, is_valid_peer_id
from .address import PeerAddress
from .stream import Stream
from .host import Host, StreamHandler, get_local_ip

__all__ = [
    'PeerIdentity',
    'make_identity',
    'peer_id_from_public_bytes',
    'is_valid_peer_id',
    'PeerAddress',
    'Stream',
    'Host',
    'StreamHandler',
    'get_local_ip',
]
