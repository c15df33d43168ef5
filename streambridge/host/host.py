"""
Stream Host

Design Decision: Stream Transport
=================================

Options Considered:
1. One TCP connection multiplexed into many streams (yamux/mplex)
   - Fewer sockets, but needs a multiplexer with its own flow control
2. One TCP connection per stream
   - The kernel gives us flow control and half-close for free
   - Costs one handshake per stream

Decision: One TCP connection per stream, with a one-line negotiation.

Negotiation:
```
dialer   -> listener:  "<dialer-peer-id> <protocol-id>\n"
listener -> dialer:    "<listener-peer-id> <protocol-id>\n"   (accepted)
                       "<listener-peer-id> na\n"              (no handler)
```
After negotiation the connection carries application bytes only. Each
accepted stream is handed to the handler registered for its protocol id on
its own task; the handler owns the stream from then on.
"""

import asyncio
import logging
import socket
from typing import Awaitable, Callable, Dict, List, Optional, Set

from ..exceptions import AddressError, ProtocolError
from .address import PeerAddress
from .identity import PeerIdentity, is_valid_peer_id
from .stream import Stream

logger = logging.getLogger(__name__)

NEGOTIATION_TIMEOUT = 10.0
MAX_NEGOTIATION_LINE = 1024
NOT_AVAILABLE = 'na'

StreamHandler = Callable[[Stream], Awaitable[None]]


def get_local_ip() -> str:
    """Get the local IP address (best guess)."""
    try:
        # Connecting a UDP socket sends nothing, it only picks a route
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


def _parse_negotiation(line: bytes) -> Optional[tuple]:
    """Split a negotiation line into (peer_id, protocol_id)."""
    try:
        text = line.decode('utf-8').strip()
    except UnicodeDecodeError:
        return None
    parts = text.split(' ')
    if len(parts) != 2 or not parts[1]:
        return None
    peer_id, protocol_id = parts
    if not is_valid_peer_id(peer_id):
        return None
    return peer_id, protocol_id


class Host:
    """
    A peer that listens for streams and opens streams to other peers.
    """

    def __init__(self, identity: PeerIdentity, host: str = '0.0.0.0',
                 port: int = 0):
        self.identity = identity
        self.host = host
        self.port = port
        self.server: Optional[asyncio.AbstractServer] = None
        self._handlers: Dict[str, StreamHandler] = {}
        self._streams: Set[Stream] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def peer_id(self) -> str:
        return self.identity.peer_id

    @property
    def is_running(self) -> bool:
        return self._running

    def set_stream_handler(self, protocol_id: str, handler: StreamHandler):
        """Invoke handler for every inbound stream on protocol_id."""
        if not protocol_id or ' ' in protocol_id or protocol_id == NOT_AVAILABLE:
            raise ValueError(f"Invalid protocol id: {protocol_id!r}")
        self._handlers[protocol_id] = handler

    async def start(self):
        """Start listening."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self._running = True

        # Port 0 means "any available"; report the one we actually got
        self.port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Host {self.peer_id[:16]}... listening on {self.host}:{self.port}")

    async def stop(self):
        """Stop listening and close every open stream."""
        self._running = False
        if self.server:
            self.server.close()
        for stream in list(self._streams):
            await stream.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.server:
            await self.server.wait_closed()
            self.server = None
            logger.info("Host stopped")

    def listen_addresses(self) -> List[PeerAddress]:
        """Addresses other peers can dial to reach this host."""
        if self.host in ('0.0.0.0', ''):
            hosts = ['127.0.0.1']
            local_ip = get_local_ip()
            if local_ip not in hosts:
                hosts.append(local_ip)
        elif self.host == '::':
            hosts = ['::1']
        else:
            hosts = [self.host]
        return [PeerAddress.for_host(h, self.port, self.peer_id) for h in hosts]

    # === Outbound ===

    async def new_stream(self, address: PeerAddress, protocol_id: str,
                         timeout: float = NEGOTIATION_TIMEOUT) -> Stream:
        """
        Open a stream to a peer.

        Raises:
            OSError: connection failed
            AddressError: the peer at the address has a different peer id
            ProtocolError: the peer does not serve protocol_id
        """
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(address.host, address.port),
            timeout=timeout
        )
        try:
            writer.write(f"{self.peer_id} {protocol_id}\n".encode('utf-8'))
            await writer.drain()
            line = await asyncio.wait_for(reader.readline(), timeout=timeout)
        except BaseException:
            writer.close()
            raise

        parsed = _parse_negotiation(line)
        if parsed is None:
            writer.close()
            raise ProtocolError(f"Bad negotiation reply from {address}")
        remote_peer, reply = parsed

        if remote_peer != address.peer_id:
            writer.close()
            raise AddressError(
                f"Peer id mismatch: dialed {address.peer_id[:16]}..., got {remote_peer[:16]}..."
            )
        if reply != protocol_id:
            writer.close()
            raise ProtocolError(f"Peer {remote_peer[:16]}... does not support {protocol_id}")

        stream = self._track(Stream(reader, writer, protocol_id, remote_peer))
        logger.debug(f"Opened {stream!r} to {address}")
        return stream

    # === Inbound ===

    def _track(self, stream: Stream) -> Stream:
        self._streams.add(stream)
        stream.on_close(self._streams.discard)
        return stream

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Negotiate an inbound connection and dispatch it to its handler."""
        peername = writer.get_extra_info('peername')
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=NEGOTIATION_TIMEOUT)
        except (asyncio.TimeoutError, OSError, ValueError) as e:
            logger.warning(f"Negotiation with {peername} failed: {e}")
            writer.close()
            return

        parsed = _parse_negotiation(line[:MAX_NEGOTIATION_LINE])
        if parsed is None:
            logger.warning(f"Bad negotiation line from {peername}")
            writer.close()
            return
        remote_peer, protocol_id = parsed

        handler = self._handlers.get(protocol_id)
        if handler is None:
            logger.warning(f"No handler for {protocol_id} (peer {remote_peer[:16]}...)")
            writer.write(f"{self.peer_id} {NOT_AVAILABLE}\n".encode('utf-8'))
            try:
                await writer.drain()
            except OSError:
                pass
            writer.close()
            return

        stream = self._track(Stream(reader, writer, protocol_id, remote_peer))
        try:
            await stream.write(f"{self.peer_id} {protocol_id}\n".encode('utf-8'))
        except OSError as e:
            logger.warning(f"Could not acknowledge {stream!r}: {e}")
            await stream.close()
            return

        logger.debug(f"Got a new stream from {remote_peer[:16]}... ({protocol_id})")

        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            await handler(stream)
        except Exception as e:
            logger.error(f"Handler for {protocol_id} failed on {stream!r}: {e}")
            await stream.close()
        finally:
            if task is not None:
                self._tasks.discard(task)
