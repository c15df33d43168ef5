"""
Stream Node - Session Director

The main controller. Picks the operating mode from configuration and wires
the host, the pairing registry and the transfer sessions together:

- relay:    wait for two inbound /chat streams and bridge them
- transfer: receive files on /file-transfer streams; with a destination,
            also prompt for local paths and send each on a new stream
- join:     open one /chat stream to a relay node and exchange framed
            files over it with whoever else joins
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from .config import Config
from .exceptions import StreamBridgeError
from .host import Host, PeerAddress, make_identity
from .relay import RELAY_PROTOCOL, PairingRegistry
from .transfer import (
    FILE_TRANSFER_PROTOCOL, RAW_TRANSFER_PROTOCOL,
    FileReceiver, FileSender, FrameChannel, RawFileReceiver
)

logger = logging.getLogger(__name__)

# Returns the next path typed by the operator, or None at end of input
PathPrompt = Callable[[], Awaitable[Optional[str]]]


async def read_line_in_thread(read_line: Callable[[], str]) -> Optional[str]:
    """
    Run a blocking line reader on a daemon thread.

    The thread is a daemon so a pending prompt never keeps the process
    alive. Returns None at end of input.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def deliver(value):
        if not future.done():
            future.set_result(value)

    def worker():
        try:
            line = read_line()
        except (EOFError, KeyboardInterrupt):
            line = None
        try:
            loop.call_soon_threadsafe(deliver, line)
        except RuntimeError:
            # Loop already closed; nobody is waiting for the answer
            pass

    threading.Thread(target=worker, name="path-prompt", daemon=True).start()
    return await future


async def stdin_prompt() -> Optional[str]:
    """Read one path from stdin without blocking the event loop."""
    return await read_line_in_thread(lambda: input("Enter file path > "))


class StreamNode:
    """
    A complete stream node.

    Combines all components into a unified interface:
    - start(): identity, listener and protocol handlers
    - run(): start, run the mode's loops, block until stop()
    - send_loop(): prompt for paths and send each file
    """

    def __init__(self, config: Config = None, prompt: PathPrompt = None):
        """
        Initialize a stream node.

        Args:
            config: Node configuration (uses defaults if not provided)
            prompt: Source of file paths for the send loop
        """
        self.config = config or Config()
        self.config.validate()
        self.mode = self.config.effective_mode
        self.prompt = prompt or stdin_prompt

        self.identity = make_identity(
            deterministic=self.config.deterministic_identity,
            seed=self.config.listen_port,
            key_path=self.config.key_file,
        )
        self.host = Host(
            self.identity,
            host=self.config.listen_host,
            port=self.config.listen_port
        )

        self.output_dir = Path(self.config.output_dir)

        # Components
        self.registry = PairingRegistry(idle_timeout=self.config.relay_idle_timeout)
        self.receiver = FileReceiver(
            self.output_dir, self.config.chunk_size, self.config.dial_timeout
        )
        self.sender = FileSender(self.host, self.config.chunk_size, self.config.dial_timeout)
        self.raw_receiver: Optional[RawFileReceiver] = None
        if self.config.raw_output:
            self.raw_receiver = RawFileReceiver(
                self.config.raw_output, self.config.chunk_size, self.config.dial_timeout
            )

        self.destination: Optional[PeerAddress] = None
        self.channel: Optional[FrameChannel] = None

        # State
        self._running = False
        self._stopped = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def peer_id(self) -> str:
        return self.identity.peer_id

    @property
    def is_running(self) -> bool:
        return self._running

    def listen_addresses(self) -> List[PeerAddress]:
        return self.host.listen_addresses()

    async def start(self):
        """
        Start the node.

        Setup errors (bad destination, cannot bind) propagate to the caller
        and are fatal.
        """
        if self._running:
            return

        # Parse first so a typo fails before we bind anything
        if self.config.destination:
            self.destination = PeerAddress.parse(self.config.destination)

        logger.info(f"Starting {self.mode} node {self.peer_id[:16]}...")

        if self.mode == 'relay':
            self.host.set_stream_handler(RELAY_PROTOCOL, self.registry.on_inbound_stream)
        elif self.mode == 'transfer':
            self.host.set_stream_handler(FILE_TRANSFER_PROTOCOL, self.receiver.handle_stream)
            if self.raw_receiver is not None:
                self.host.set_stream_handler(RAW_TRANSFER_PROTOCOL, self.raw_receiver.handle_stream)

        await self.host.start()
        self._running = True
        self._stopped.clear()

        addresses = self.listen_addresses()
        if self.mode == 'relay':
            logger.info(f"Run 'streambridge start --mode join -d {addresses[0]}' on another console.")
            logger.info("You can replace 127.0.0.1 with public IP as well.")
            logger.info("Waiting for incoming connection")
        elif self.destination is None:
            logger.info(f"Run 'streambridge start -d {addresses[0]}' on another console to send files.")

    async def stop(self):
        """Stop the node."""
        if not self._running:
            return

        logger.info("Stopping stream node...")
        self._running = False

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.registry.close()
        await self.host.stop()
        self._stopped.set()
        logger.info("Stream node stopped")

    async def run(self):
        """Start, run the mode's loops and block until stop() is called."""
        await self.start()
        try:
            if self.mode == 'transfer' and self.destination is not None:
                logger.info(f"Sending files to {self.destination}")
                self._spawn(self.send_loop())
            elif self.mode == 'join':
                await self.join()
            await self._stopped.wait()
        finally:
            await self.stop()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.append(task)
        return task

    # === Point-to-point transfer ===

    async def send_loop(self):
        """Prompt for paths and send each file on its own stream."""
        while self._running:
            path = await self._next_path()
            if path is None:
                logger.info("End of input, send loop finished")
                return
            try:
                await self.sender.send_file(self.destination, path)
            except (StreamBridgeError, OSError, asyncio.TimeoutError) as e:
                logger.error(f"Failed to send {path.name}: {e}")

    async def _next_path(self) -> Optional[Path]:
        """Next existing file from the prompt; None at end of input."""
        while True:
            text = await self.prompt()
            if text is None:
                return None
            text = text.strip()
            if not text:
                continue
            path = Path(text).expanduser()
            if not path.is_file():
                logger.error(f"Not a file: {path}")
                continue
            return path

    # === Relay client ===

    async def join(self):
        """Open the relay stream and start the framed send/receive loops."""
        stream = await asyncio.wait_for(
            self.host.new_stream(self.destination, RELAY_PROTOCOL),
            timeout=self.config.dial_timeout
        )
        logger.info("Established connection to destination")
        self.channel = FrameChannel(stream, self.output_dir, self.config.chunk_size)
        self._spawn(self.channel_send_loop())
        self._spawn(self.channel_receive_loop())

    async def channel_send_loop(self):
        """Prompt for paths and send each as the next frame on the relay stream."""
        while self._running:
            path = await self._next_path()
            if path is None:
                await self.channel.stream.close_write()
                logger.info("End of input, send loop finished")
                return
            try:
                await self.channel.send_file(path)
            except (StreamBridgeError, OSError) as e:
                logger.error(f"Failed to send {path.name}: {e}")
                if self.channel.stream.closed or isinstance(e, ConnectionError):
                    return

    async def channel_receive_loop(self):
        """Save every frame arriving on the relay stream."""
        try:
            async for result in self.channel.receive_files():
                self.receiver.record(result)
            logger.info("Relay stream closed by remote side")
        except (StreamBridgeError, OSError) as e:
            logger.error(f"Receive over relay failed: {e}")

    # === Info ===

    def get_full_stats(self) -> dict:
        """Get complete node statistics."""
        return {
            'peer_id': self.peer_id,
            'mode': self.mode,
            'running': self._running,
            'addresses': [str(a) for a in self.listen_addresses()] if self._running else [],
            'registry': self.registry.get_stats(),
            'sender': self.sender.get_stats(),
            'receiver': self.receiver.get_stats(),
        }
