"""
Stream

A reliable, ordered, full-duplex byte channel to exactly one remote peer.
Reading and writing terminate independently: close_write() sends EOF to the
remote side while the local side can keep reading.

Closing a stream before reading the remote side to its end resets it, the
way a socket closed with unread data does. The remote side then gets an error
instead of a clean end of stream.
"""

import asyncio
import logging
import socket
import struct
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Stream:
    """
    One negotiated stream.

    Not safe for concurrent use in the same direction: at most one task
    reads and at most one task writes at any time.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter,
                 protocol_id: str,
                 remote_peer: str):
        self.reader = reader
        self.writer = writer
        self.protocol_id = protocol_id
        self.remote_peer = remote_peer
        self._closed = False
        self._write_closed = False
        self._on_close: Optional[Callable[['Stream'], None]] = None

    def __repr__(self) -> str:
        return f"<Stream {self.protocol_id} peer={self.remote_peer[:12]}>"

    @property
    def closed(self) -> bool:
        return self._closed

    def on_close(self, callback: Callable[['Stream'], None]):
        """Register a callback run once when the stream is closed."""
        self._on_close = callback

    # === Reading ===

    async def read(self, n: int = -1) -> bytes:
        """Read up to n bytes; b'' means the remote side closed its write end."""
        return await self.reader.read(n)

    async def readline(self) -> bytes:
        """Read one line including the trailing newline (if any)."""
        return await self.reader.readline()

    async def readexactly(self, n: int) -> bytes:
        return await self.reader.readexactly(n)

    # === Writing ===

    async def write(self, data: bytes):
        """Write data and wait until it has been handed to the transport."""
        if self._closed or self._write_closed:
            raise ConnectionError("Stream closed for writing")
        self.writer.write(data)
        await self.writer.drain()

    async def close_write(self):
        """Half-close: signal EOF to the remote side, keep reading."""
        if self._closed or self._write_closed:
            return
        self._write_closed = True
        try:
            if self.writer.can_write_eof():
                self.writer.write_eof()
        except (OSError, RuntimeError) as e:
            logger.debug(f"close_write on {self!r} failed: {e}")

    def _reset(self):
        # Zero linger turns the close into a TCP reset
        sock = self.writer.get_extra_info('socket')
        if sock is not None:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack('ii', 1, 0))
            except OSError as e:
                logger.debug(f"Could not set linger on {self!r}: {e}")
        self.writer.transport.abort()

    async def close(self):
        """
        Close both directions. Safe to call more than once.

        Resets the stream if the remote side has not finished sending or sent
        bytes that were never read.
        """
        if self._closed:
            return
        self._closed = True
        self._write_closed = True
        if self.reader.at_eof():
            self.writer.close()
        else:
            logger.debug(f"Resetting {self!r}: remote side not read to the end")
            self._reset()
        try:
            await self.writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug(f"Error while closing {self!r}: {e}")
        if self._on_close:
            callback, self._on_close = self._on_close, None
            callback(self)
