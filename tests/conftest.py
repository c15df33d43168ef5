"""
Shared fixtures: loopback stream pairs and started hosts.
"""

import asyncio
from pathlib import Path
from typing import Callable, List

import pytest
import pytest_asyncio

from streambridge.host import Host, PeerIdentity, Stream

PEER_A = PeerIdentity.from_seed(1).peer_id
PEER_B = PeerIdentity.from_seed(2).peer_id


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0):
    """Poll predicate until it holds or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


async def read_all(stream: Stream) -> bytes:
    """Read until EOF; a reset connection counts as EOF."""
    parts = []
    while True:
        try:
            data = await stream.read(4096)
        except ConnectionError:
            break
        if not data:
            break
        parts.append(data)
    return b''.join(parts)


async def closed_by_remote(stream: Stream) -> bool:
    """True once the remote side has closed or reset the stream."""
    try:
        data = await asyncio.wait_for(stream.read(100), timeout=5)
    except ConnectionError:
        return True
    return data == b''


def scripted_prompt(lines: List[str]):
    """Prompt that answers with the given lines, then end of input."""
    remaining = iter(lines)

    async def prompt():
        return next(remaining, None)

    return prompt


@pytest_asyncio.fixture
async def make_stream_pair():
    """Factory for Streams connected over loopback TCP: returns (a, b)."""
    servers = []
    streams = []

    async def factory():
        accepted = asyncio.Queue()

        async def on_connection(reader, writer):
            await accepted.put((reader, writer))

        server = await asyncio.start_server(on_connection, '127.0.0.1', 0)
        servers.append(server)
        port = server.sockets[0].getsockname()[1]

        reader_a, writer_a = await asyncio.open_connection('127.0.0.1', port)
        reader_b, writer_b = await asyncio.wait_for(accepted.get(), timeout=5)

        a = Stream(reader_a, writer_a, 'test', PEER_B)
        b = Stream(reader_b, writer_b, 'test', PEER_A)
        streams.extend([a, b])
        return a, b

    yield factory

    for stream in streams:
        await stream.close()
    for server in servers:
        server.close()
        await server.wait_closed()


@pytest_asyncio.fixture
async def stream_pair(make_stream_pair):
    """Two Streams connected over loopback TCP: (a, b)."""
    return await make_stream_pair()


@pytest_asyncio.fixture
async def make_host():
    """Factory for started loopback hosts; all are stopped at teardown."""
    hosts = []

    async def factory(seed: int = None) -> Host:
        identity = PeerIdentity.from_seed(seed) if seed is not None else PeerIdentity.generate()
        host = Host(identity, host='127.0.0.1', port=0)
        await host.start()
        hosts.append(host)
        return host

    yield factory

    for host in hosts:
        await host.stop()


@pytest.fixture
def sample_file(tmp_path) -> Path:
    path = tmp_path / "a.txt"
    path.write_bytes(b"0123456789")
    return path
