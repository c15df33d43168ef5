"""
Framed Transfer Codec

Design Decision: Frame Format
=============================

Options Considered:
1. Binary length prefix (4/8 bytes) + JSON header
   - Compact, but unreadable on the wire
2. Two text lines + raw payload
   - Trivial to debug with netcat
   - No escaping: filenames cannot contain newlines

Decision: Text header lines followed by the raw payload.

Frame Format:
```
<filename> "\n"
<decimal byte length> "\n"
<byte length> raw bytes
```

The reader never consumes more than the declared length, so several frames
can follow each other on one stream.
"""

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Tuple

from ..exceptions import ProtocolError, TruncatedTransfer
from ..host.stream import Stream

logger = logging.getLogger(__name__)

FILE_TRANSFER_PROTOCOL = "/file-transfer/1.0.0"

CHUNK_SIZE = 64 * 1024  # 64KB
MAX_HEADER_LINE = 4096

_LENGTH_RE = re.compile(r'[0-9]+')
_CONTROL_RE = re.compile(r'[\x00-\x1f\x7f]')


async def _maybe_await(value):
    """Support both plain and aiofiles file objects."""
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class TransferHeader:
    """Filename and exact payload length of one frame."""
    filename: str
    byte_length: int

    def to_bytes(self) -> bytes:
        """Serialize the header lines."""
        if _CONTROL_RE.search(self.filename):
            raise ProtocolError(f"Filename contains control characters: {self.filename!r}")
        if self.filename != self.filename.rstrip():
            raise ProtocolError(f"Filename ends with whitespace: {self.filename!r}")
        if self.byte_length < 0:
            raise ProtocolError(f"Negative byte length: {self.byte_length}")
        return f"{self.filename}\n{self.byte_length}\n".encode('utf-8')


class BoundedReader:
    """
    Reads the payload of one frame.

    Hands out at most `limit` bytes in total. Hitting end of stream before
    that raises TruncatedTransfer.
    """

    def __init__(self, stream: Stream, limit: int, filename: str = ''):
        self.stream = stream
        self.limit = limit
        self.filename = filename
        self._remaining = limit

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def consumed(self) -> int:
        return self.limit - self._remaining

    async def read(self, n: int = -1) -> bytes:
        """Read up to n bytes of payload (all remaining bytes if n < 0)."""
        if n < 0:
            parts = [chunk async for chunk in self.chunks()]
            return b''.join(parts)
        if self._remaining == 0 or n == 0:
            return b''

        data = await self.stream.read(min(n, self._remaining))
        if not data:
            raise TruncatedTransfer(self.limit, self.consumed, self.filename)
        self._remaining -= len(data)
        return data

    async def chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Iterate over the remaining payload."""
        while self._remaining > 0:
            yield await self.read(chunk_size)

    async def copy_to(self, sink: Any, chunk_size: int = CHUNK_SIZE) -> int:
        """Copy the remaining payload into a (sync or async) writable file."""
        copied = 0
        async for chunk in self.chunks(chunk_size):
            await _maybe_await(sink.write(chunk))
            copied += len(chunk)
        return copied

    async def discard(self) -> int:
        """Skip whatever payload is left so the next frame can be read."""
        skipped = 0
        async for chunk in self.chunks():
            skipped += len(chunk)
        return skipped


async def write_frame(stream: Stream, filename: str, source: Any,
                      byte_length: int, chunk_size: int = CHUNK_SIZE) -> int:
    """
    Write one frame: header lines, then exactly byte_length bytes of source.

    `source` is a binary file-like object; its read() may be sync or async.

    Raises:
        TruncatedTransfer: source ran out before byte_length bytes; the
            partial frame is left on the wire
        OSError: the stream write failed
    """
    header = TransferHeader(filename=filename, byte_length=byte_length)
    await stream.write(header.to_bytes())

    remaining = byte_length
    while remaining > 0:
        data = await _maybe_await(source.read(min(chunk_size, remaining)))
        if not data:
            raise TruncatedTransfer(byte_length, byte_length - remaining, filename)
        await stream.write(data)
        remaining -= len(data)

    logger.debug(f"Wrote frame {filename!r} ({byte_length} bytes)")
    return byte_length


async def _read_raw_line(stream: Stream, what: str) -> bytes:
    try:
        return await stream.readline()
    except ValueError as e:
        # asyncio raises ValueError when a line exceeds the reader limit
        raise ProtocolError(f"Header {what} line too long") from e


def _decode_header_line(line: bytes, what: str) -> str:
    if not line.endswith(b'\n'):
        raise ProtocolError(f"Stream closed before the {what} line was complete")
    if len(line) > MAX_HEADER_LINE:
        raise ProtocolError(f"Header {what} line too long ({len(line)} bytes)")

    try:
        return line.decode('utf-8').rstrip()
    except UnicodeDecodeError as e:
        raise ProtocolError(f"Header {what} line is not valid UTF-8") from e


async def read_frame(stream: Stream,
                     allow_eof: bool = False) -> Optional[Tuple[str, int, BoundedReader]]:
    """
    Read one frame header.

    With allow_eof, a stream that ends before the first header byte returns
    None instead of raising (the normal end of a multi-frame stream).

    Returns:
        (filename, byte_length, payload reader bounded to byte_length)

    Raises:
        ProtocolError: header missing, incomplete or malformed
    """
    line = await _read_raw_line(stream, 'filename')
    if not line and allow_eof:
        return None
    filename = _decode_header_line(line, 'filename')

    line = await _read_raw_line(stream, 'length')
    length_text = _decode_header_line(line, 'length').strip()
    if not _LENGTH_RE.fullmatch(length_text):
        raise ProtocolError(f"Invalid byte length: {length_text!r}")
    byte_length = int(length_text)

    logger.debug(f"Read frame header {filename!r} ({byte_length} bytes)")
    return filename, byte_length, BoundedReader(stream, byte_length, filename)


async def expect_end_of_stream(stream: Stream, timeout: float) -> None:
    """
    Wait for the remote side to finish the stream after the last frame.

    A peer that closes before consuming everything resets the stream, which
    surfaces here as OSError.

    Raises:
        ProtocolError: more bytes followed, or no end of stream within timeout
        OSError: the stream was reset
    """
    try:
        extra = await asyncio.wait_for(stream.read(1), timeout=timeout)
    except asyncio.TimeoutError:
        raise ProtocolError(f"No end of stream from {stream.remote_peer[:16]}... within {timeout}s") from None
    if extra:
        raise ProtocolError("Unexpected bytes after the end of the frame")
