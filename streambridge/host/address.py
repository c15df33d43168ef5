"""
Peer Addresses

Addresses use a multiaddr-style text form:

    /ip4/127.0.0.1/tcp/4001/p2p/<peer-id>
    /ip6/::1/tcp/4001/p2p/<peer-id>
    /dns4/relay.example.org/tcp/4001/p2p/<peer-id>

The peer id is mandatory: a stream is always opened to a specific peer, and
the dialer checks the id the listener announces against it.
"""

import ipaddress
from dataclasses import dataclass

from ..exceptions import AddressError
from .identity import is_valid_peer_id

HOST_PROTOCOLS = ('ip4', 'ip6', 'dns', 'dns4', 'dns6')


@dataclass(frozen=True)
class PeerAddress:
    """A parsed, immutable peer address."""
    family: str
    host: str
    port: int
    peer_id: str

    @classmethod
    def parse(cls, text: str) -> 'PeerAddress':
        """
        Parse a multiaddr-style address.

        Raises:
            AddressError: if the text is not a complete, valid address
        """
        if not isinstance(text, str) or not text.strip().startswith('/'):
            raise AddressError(f"Invalid peer address: {text!r}")

        parts = text.strip().rstrip('/').split('/')[1:]
        if len(parts) != 6:
            raise AddressError(
                f"Invalid peer address {text!r}: expected /<ip4|ip6|dns>/<host>/tcp/<port>/p2p/<peer-id>"
            )

        family, host, transport, port_text, p2p, peer_id = parts

        if family not in HOST_PROTOCOLS:
            raise AddressError(f"Unsupported address family {family!r} in {text!r}")
        if transport != 'tcp':
            raise AddressError(f"Unsupported transport {transport!r} in {text!r}")
        if p2p != 'p2p':
            raise AddressError(f"Missing /p2p/<peer-id> in {text!r}")

        try:
            if family == 'ip4':
                ipaddress.IPv4Address(host)
            elif family == 'ip6':
                ipaddress.IPv6Address(host)
        except ValueError as e:
            raise AddressError(f"Invalid {family} host in {text!r}: {e}") from e
        if not host:
            raise AddressError(f"Empty host in {text!r}")

        try:
            port = int(port_text)
        except ValueError:
            raise AddressError(f"Invalid port {port_text!r} in {text!r}") from None
        if not 0 < port < 65536:
            raise AddressError(f"Port out of range in {text!r}")

        if not is_valid_peer_id(peer_id):
            raise AddressError(f"Invalid peer id {peer_id!r} in {text!r}")

        return cls(family=family, host=host, port=port, peer_id=peer_id)

    @classmethod
    def for_host(cls, host: str, port: int, peer_id: str) -> 'PeerAddress':
        """Build an address from a host/port pair."""
        try:
            family = 'ip6' if ipaddress.ip_address(host).version == 6 else 'ip4'
        except ValueError:
            family = 'dns'
        return cls(family=family, host=host, port=port, peer_id=peer_id)

    def __str__(self) -> str:
        return f"/{self.family}/{self.host}/tcp/{self.port}/p2p/{self.peer_id}"
