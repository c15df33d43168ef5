"""
Transfer Sessions

One file per stream:
- FileSender opens a stream per file, writes one frame, half-closes and
  waits for the receiver to close. A receiver that stops early resets the
  stream, so the sender sees the failure.
- FileReceiver serves inbound streams: reads one frame into
  "received_<filename>", waits for the sender's end of stream and closes.

Plus two variants:
- Whole-stream transfer (no header): the receiver writes everything up to
  the sender's close into one pre-agreed file.
- FrameChannel: consecutive frames over one long-lived stream, used when
  two clients talk through a relay node.

Received files are written to "<name>.part" first and renamed only once the
full declared length has arrived.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional

import aiofiles
import aiofiles.os

from ..exceptions import ProtocolError, StreamBridgeError
from ..host import Host, PeerAddress, Stream
from ..host.host import NEGOTIATION_TIMEOUT
from .codec import (
    CHUNK_SIZE, FILE_TRANSFER_PROTOCOL, BoundedReader,
    expect_end_of_stream, read_frame, write_frame
)

logger = logging.getLogger(__name__)

RAW_TRANSFER_PROTOCOL = "/file-stream/1.0.0"
RECEIVED_PREFIX = "received_"
PARTIAL_SUFFIX = ".part"


@dataclass
class TransferResult:
    """Outcome of one completed send or receive."""
    filename: str
    byte_length: int
    path: Path
    peer: str
    direction: str  # 'sent' or 'received'
    elapsed: float = 0.0
    finished_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            'filename': self.filename,
            'byte_length': self.byte_length,
            'path': str(self.path),
            'peer': self.peer,
            'direction': self.direction,
            'elapsed': self.elapsed,
        }


ResultCallback = Callable[[TransferResult], None]


def validate_received_filename(filename: str) -> str:
    """
    Reject names that could escape the output directory.

    Raises:
        ProtocolError: empty name, '.'/'..', path separators or control
            characters
    """
    if not filename or filename in ('.', '..'):
        raise ProtocolError(f"Invalid filename: {filename!r}")
    if '/' in filename or '\\' in filename or os.sep in filename:
        raise ProtocolError(f"Filename contains a path separator: {filename!r}")
    if any(ord(c) < 32 or ord(c) == 127 for c in filename):
        raise ProtocolError(f"Filename contains control characters: {filename!r}")
    return filename


async def _remove_quietly(path: Path):
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove partial file {path}: {e}")


async def save_payload(payload: BoundedReader, output_dir: Path,
                       filename: str, chunk_size: int = CHUNK_SIZE) -> Path:
    """
    Copy a frame payload into output_dir/received_<filename>.

    The partial file is removed if the copy fails, so an incomplete transfer
    never looks like a finished one.
    """
    validate_received_filename(filename)
    output_dir = Path(output_dir)
    final_path = output_dir / f"{RECEIVED_PREFIX}{filename}"
    part_path = final_path.with_name(final_path.name + PARTIAL_SUFFIX)

    try:
        async with aiofiles.open(part_path, 'wb') as out:
            await payload.copy_to(out, chunk_size)
        await aiofiles.os.replace(part_path, final_path)
    except BaseException:
        await _remove_quietly(part_path)
        raise

    return final_path


class FileSender:
    """
    Sends local files to peers, one stream per file.

    Sessions are sequential per caller; independent callers may send
    concurrently on their own streams.
    """

    def __init__(self, host: Host, chunk_size: int = CHUNK_SIZE,
                 timeout: float = NEGOTIATION_TIMEOUT):
        self.host = host
        self.chunk_size = chunk_size
        self.timeout = timeout

        # Statistics
        self.files_sent = 0
        self.bytes_sent = 0

    async def send_file(self, address: PeerAddress, path: Path) -> TransferResult:
        """
        Send one file as a single frame on a new stream.

        Raises:
            OSError: local file unreadable, stream write failed, or the
                receiver closed before reading the whole frame
            TruncatedTransfer: file shrank while being sent
            ProtocolError: peer refused the protocol or never closed the stream
        """
        path = Path(path)
        stat = await aiofiles.os.stat(path)
        size = stat.st_size
        filename = path.name
        start = time.time()

        stream = await self.host.new_stream(address, FILE_TRANSFER_PROTOCOL)
        try:
            async with aiofiles.open(path, 'rb') as source:
                await write_frame(stream, filename, source, size, self.chunk_size)
            await stream.close_write()
            await expect_end_of_stream(stream, self.timeout)
        finally:
            await stream.close()

        self.files_sent += 1
        self.bytes_sent += size
        logger.info(f"Sent {filename} ({size:,} bytes) to {address.peer_id[:16]}...")
        return TransferResult(
            filename=filename, byte_length=size, path=path,
            peer=address.peer_id, direction='sent', elapsed=time.time() - start
        )

    async def send_raw(self, address: PeerAddress, path: Path) -> TransferResult:
        """Send a file without a header; half-closing the stream marks its end."""
        path = Path(path)
        start = time.time()
        sent = 0

        stream = await self.host.new_stream(address, RAW_TRANSFER_PROTOCOL)
        try:
            async with aiofiles.open(path, 'rb') as source:
                while True:
                    data = await source.read(self.chunk_size)
                    if not data:
                        break
                    await stream.write(data)
                    sent += len(data)
            await stream.close_write()
            await expect_end_of_stream(stream, self.timeout)
        finally:
            await stream.close()

        self.files_sent += 1
        self.bytes_sent += sent
        logger.info(f"Streamed {path.name} ({sent:,} bytes) to {address.peer_id[:16]}...")
        return TransferResult(
            filename=path.name, byte_length=sent, path=path,
            peer=address.peer_id, direction='sent', elapsed=time.time() - start
        )

    def get_stats(self) -> dict:
        return {
            'files_sent': self.files_sent,
            'bytes_sent': self.bytes_sent,
        }


class FileReceiver:
    """
    Serves inbound file-transfer streams.

    Register handle_stream() for FILE_TRANSFER_PROTOCOL. Each inbound stream
    runs on its own task with its own output file.
    """

    def __init__(self, output_dir: Path, chunk_size: int = CHUNK_SIZE,
                 timeout: float = NEGOTIATION_TIMEOUT):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.chunk_size = chunk_size
        self.timeout = timeout
        self._callbacks: List[ResultCallback] = []

        # Statistics
        self.files_received = 0
        self.bytes_received = 0
        self.failures = 0

    def on_received(self, callback: ResultCallback):
        """Register a callback for each completed file."""
        self._callbacks.append(callback)

    async def receive(self, stream: Stream) -> TransferResult:
        """
        Receive exactly one frame from stream, then close it.

        Raises:
            ProtocolError, TruncatedTransfer, OSError
        """
        start = time.time()
        try:
            filename, byte_length, payload = await read_frame(stream)
            path = await save_payload(payload, self.output_dir, filename, self.chunk_size)
            try:
                await expect_end_of_stream(stream, self.timeout)
            except BaseException:
                await _remove_quietly(path)
                raise
        finally:
            await stream.close()

        result = TransferResult(
            filename=filename, byte_length=byte_length, path=path,
            peer=stream.remote_peer, direction='received', elapsed=time.time() - start
        )
        self.record(result)
        return result

    async def handle_stream(self, stream: Stream) -> Optional[TransferResult]:
        """Stream handler: errors stay local to this stream."""
        try:
            return await self.receive(stream)
        except (StreamBridgeError, OSError) as e:
            self.failures += 1
            logger.error(f"Receive from {stream.remote_peer[:16]}... failed: {e}")
            return None

    def record(self, result: TransferResult):
        """Count a completed receive and notify callbacks."""
        self.files_received += 1
        self.bytes_received += result.byte_length
        logger.info(f"Received {result.filename} ({result.byte_length:,} bytes) -> {result.path}")
        for callback in self._callbacks:
            callback(result)

    def get_stats(self) -> dict:
        return {
            'files_received': self.files_received,
            'bytes_received': self.bytes_received,
            'failures': self.failures,
            'output_dir': str(self.output_dir),
        }


class RawFileReceiver(FileReceiver):
    """
    Whole-stream receiver: everything up to the sender's close goes into
    one fixed file. Only one file per stream; a later stream overwrites it.
    """

    def __init__(self, output_path: Path, chunk_size: int = CHUNK_SIZE,
                 timeout: float = NEGOTIATION_TIMEOUT):
        output_path = Path(output_path)
        super().__init__(output_path.parent, chunk_size, timeout)
        self.output_path = output_path

    async def receive(self, stream: Stream) -> TransferResult:
        start = time.time()
        part_path = self.output_path.with_name(self.output_path.name + PARTIAL_SUFFIX)
        received = 0

        try:
            async with aiofiles.open(part_path, 'wb') as out:
                while True:
                    data = await stream.read(self.chunk_size)
                    if not data:
                        break
                    await out.write(data)
                    received += len(data)
            await aiofiles.os.replace(part_path, self.output_path)
        except BaseException:
            await _remove_quietly(part_path)
            raise
        finally:
            await stream.close()

        result = TransferResult(
            filename=self.output_path.name, byte_length=received,
            path=self.output_path, peer=stream.remote_peer,
            direction='received', elapsed=time.time() - start
        )
        self.record(result)
        return result


class FrameChannel:
    """
    Consecutive frames over one long-lived stream.

    One task may send while another receives; the codec never reads past a
    frame, so frames stay aligned in both directions.
    """

    def __init__(self, stream: Stream, output_dir: Path,
                 chunk_size: int = CHUNK_SIZE):
        self.stream = stream
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.chunk_size = chunk_size
        self.frames_skipped = 0

    async def send_file(self, path: Path) -> TransferResult:
        """Write one file as the next outgoing frame."""
        path = Path(path)
        start = time.time()
        stat = await aiofiles.os.stat(path)

        async with aiofiles.open(path, 'rb') as source:
            await write_frame(self.stream, path.name, source, stat.st_size, self.chunk_size)

        logger.info(f"Sent {path.name} ({stat.st_size:,} bytes) over {self.stream!r}")
        return TransferResult(
            filename=path.name, byte_length=stat.st_size, path=path,
            peer=self.stream.remote_peer, direction='sent', elapsed=time.time() - start
        )

    async def receive_files(self) -> AsyncIterator[TransferResult]:
        """
        Yield each received file until the remote side closes cleanly.

        A stream that ends between frames is a normal end. Ending inside a
        header or payload raises. A frame with an unsafe filename is skipped
        and the stream stays usable.
        """
        while True:
            start = time.time()
            frame = await read_frame(self.stream, allow_eof=True)
            if frame is None:
                return
            filename, byte_length, payload = frame
            try:
                validate_received_filename(filename)
            except ProtocolError as e:
                await payload.discard()
                self.frames_skipped += 1
                logger.warning(f"Skipped frame ({byte_length:,} bytes): {e}")
                continue
            path = await save_payload(payload, self.output_dir, filename, self.chunk_size)
            logger.info(f"Received {filename} ({byte_length:,} bytes) -> {path}")
            yield TransferResult(
                filename=filename, byte_length=byte_length, path=path,
                peer=self.stream.remote_peer, direction='received',
                elapsed=time.time() - start
            )

    async def close(self):
        await self.stream.close()
