"""
Stream Pairing Registry

Pairs the first two inbound relay streams and relays them to each other.

Each pairing cycle:
1. First stream arrives -> held in the first position
2. Second stream arrives -> held in the second position, relay starts
3. Any further stream while both positions are taken is closed at once
4. Relay finishes (both directions drained) -> both positions cleared

There is no queue: a third peer sees its stream closed and has to retry
after the current relay ends. Which peer becomes "first" depends on
network timing.
"""

import asyncio
import logging
from typing import Optional, Tuple

from ..exceptions import CapacityExceeded
from ..host.stream import Stream
from .bridge import RelayStats, relay_streams

logger = logging.getLogger(__name__)


class PairingRegistry:
    """
    Two-slot rendezvous for relay streams.

    One instance per relay node; register on_inbound_stream() as the handler
    for RELAY_PROTOCOL. The lock guards slot occupancy only and is never
    held across I/O.
    """

    def __init__(self, idle_timeout: Optional[float] = None):
        self.idle_timeout = idle_timeout
        self._lock = asyncio.Lock()
        self._first: Optional[Stream] = None
        self._second: Optional[Stream] = None
        self._relay_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

        # Statistics
        self.cycles_completed = 0
        self.streams_rejected = 0
        self.last_stats: Optional[RelayStats] = None

    @property
    def occupancy(self) -> int:
        return (self._first is not None) + (self._second is not None)

    @property
    def is_full(self) -> bool:
        return self.occupancy == 2

    @property
    def relay_active(self) -> bool:
        return self._relay_task is not None and not self._relay_task.done()

    async def on_inbound_stream(self, stream: Stream):
        """Handler for every inbound relay stream."""
        logger.info(f"Got a new stream from: {stream.remote_peer[:16]}...")

        pair: Optional[Tuple[Stream, Stream]] = None
        async with self._lock:
            if self._first is None:
                self._first = stream
                logger.info("Stream1 registered")
                return

            if self._second is None:
                self._second = stream
                logger.info("Stream2 registered")
                pair = (self._first, self._second)
                self._idle.clear()

        if pair is None:
            self.streams_rejected += 1
            err = CapacityExceeded(f"Already have 2 streams, closing extra from {stream.remote_peer[:16]}...")
            logger.warning(str(err))
            await stream.close()
            return

        self._relay_task = asyncio.create_task(self._run_relay(*pair))

    async def _run_relay(self, a: Stream, b: Stream):
        try:
            self.last_stats = await relay_streams(a, b, self.idle_timeout)
        except Exception as e:
            logger.error(f"Relay failed: {e}")
        finally:
            await self.reset()
            self.cycles_completed += 1
            self._idle.set()

    async def reset(self):
        """Clear both positions so a new pairing cycle can begin."""
        async with self._lock:
            self._first = None
            self._second = None
        logger.debug("Pairing registry reset")

    async def wait_idle(self):
        """Wait until no relay is running."""
        await self._idle.wait()

    async def close(self):
        """Stop any running relay and close waiting streams."""
        if self._relay_task is not None and not self._relay_task.done():
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass

        async with self._lock:
            waiting = [s for s in (self._first, self._second) if s is not None]
            self._first = None
            self._second = None
        for stream in waiting:
            await stream.close()

    def get_stats(self) -> dict:
        return {
            'occupancy': self.occupancy,
            'relay_active': self.relay_active,
            'cycles_completed': self.cycles_completed,
            'streams_rejected': self.streams_rejected,
            'last_relay': self.last_stats.to_dict() if self.last_stats else None,
        }
