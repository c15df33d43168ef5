"""
Bidirectional Relay

Copies bytes between two paired streams, A->B and B->A, on two concurrent
tasks. Teardown waits for BOTH directions: one side finishing does not abort
the other, so both streams are fully drained before they are closed.

When a direction's source reaches end of stream, the destination is
half-closed so the peer on the other end sees EOF as well.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, List, Optional

from ..host.stream import Stream

logger = logging.getLogger(__name__)

RELAY_PROTOCOL = "/chat/1.0.0"
RELAY_CHUNK_SIZE = 32 * 1024


@dataclass
class RelayStats:
    """Counters for one relay session."""
    bytes_a_to_b: int = 0
    bytes_b_to_a: int = 0
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    errors: List[str] = field(default_factory=list)

    def record(self, direction: str, n: int):
        if direction == 'A->B':
            self.bytes_a_to_b += n
        else:
            self.bytes_b_to_a += n

    @property
    def duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    def to_dict(self) -> dict:
        return {
            'bytes_a_to_b': self.bytes_a_to_b,
            'bytes_b_to_a': self.bytes_b_to_a,
            'duration': self.duration,
            'errors': list(self.errors),
        }


async def copy_stream(source: Stream, dest: Stream,
                      idle_timeout: Optional[float] = None,
                      chunk_size: int = RELAY_CHUNK_SIZE,
                      on_copied: Optional[Callable[[int], None]] = None) -> int:
    """
    Copy source into dest until source reaches EOF.

    on_copied is called with the size of every chunk written, so progress
    is known even when the copy ends with an error.

    Raises:
        asyncio.TimeoutError: no data for idle_timeout seconds
        OSError: either side failed
    """
    copied = 0
    try:
        while True:
            if idle_timeout:
                data = await asyncio.wait_for(source.read(chunk_size), timeout=idle_timeout)
            else:
                data = await source.read(chunk_size)
            if not data:
                break
            await dest.write(data)
            copied += len(data)
            if on_copied:
                on_copied(len(data))
    finally:
        await dest.close_write()
    return copied


async def relay_streams(a: Stream, b: Stream,
                        idle_timeout: Optional[float] = None) -> RelayStats:
    """
    Relay bytes between a and b until both directions are done, then close
    both streams.
    """
    stats = RelayStats()
    logger.info(f"Starting bidirectional bridge {a.remote_peer[:12]} <-> {b.remote_peer[:12]}")

    try:
        results = await asyncio.gather(
            copy_stream(a, b, idle_timeout, on_copied=partial(stats.record, 'A->B')),
            copy_stream(b, a, idle_timeout, on_copied=partial(stats.record, 'B->A')),
            return_exceptions=True
        )
        for direction, result in zip(('A->B', 'B->A'), results):
            if isinstance(result, asyncio.TimeoutError):
                stats.errors.append(f"{direction}: idle timeout")
                logger.warning(f"Relay {direction} idle for {idle_timeout}s, disconnecting")
            elif isinstance(result, BaseException):
                stats.errors.append(f"{direction}: {result}")
                logger.warning(f"Relay {direction} ended with error: {result}")
    finally:
        await a.close()
        await b.close()
        stats.finished_at = time.time()

    logger.info(
        f"Bridge finished, closing streams "
        f"({stats.bytes_a_to_b:,} bytes A->B, {stats.bytes_b_to_a:,} bytes B->A)"
    )
    return stats
