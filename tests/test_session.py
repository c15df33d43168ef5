"""
Transfer Session Tests

Sender and receiver over real loopback hosts.
"""

import asyncio
import io

import pytest

from conftest import wait_until
from streambridge.exceptions import AddressError, ProtocolError, TruncatedTransfer
from streambridge.host import PeerAddress
from streambridge.transfer import (
    FILE_TRANSFER_PROTOCOL, RAW_TRANSFER_PROTOCOL,
    FileReceiver, FileSender, FrameChannel, RawFileReceiver,
    read_frame, validate_received_filename, write_frame
)


async def receiving_host(make_host, output_dir):
    host = await make_host()
    receiver = FileReceiver(output_dir)
    host.set_stream_handler(FILE_TRANSFER_PROTOCOL, receiver.handle_stream)
    return host, receiver


class TestFilenameValidation:

    @pytest.mark.parametrize("name", ["a.txt", "report 2024.pdf", "данные.bin", ".hidden"])
    def test_accepts_plain_names(self, name):
        assert validate_received_filename(name) == name

    @pytest.mark.parametrize("name", ["", ".", "..", "../etc/passwd", "dir/file", "dir\\file", "a\x00b"])
    def test_rejects_unsafe_names(self, name):
        with pytest.raises(ProtocolError):
            validate_received_filename(name)


class TestFileTransfer:

    @pytest.mark.asyncio
    async def test_end_to_end(self, make_host, tmp_path, sample_file):
        """a.txt with 10 bytes arrives as received_a.txt with the same bytes."""
        host, receiver = await receiving_host(make_host, tmp_path / "out")
        received = []
        receiver.on_received(received.append)

        sender = FileSender(await make_host())
        result = await sender.send_file(host.listen_addresses()[0], sample_file)
        assert result.filename == "a.txt"
        assert result.byte_length == 10

        await wait_until(lambda: received)
        assert received[0].filename == "a.txt"
        output = tmp_path / "out" / "received_a.txt"
        assert received[0].path == output
        assert output.read_bytes() == b"0123456789"
        assert sender.get_stats() == {'files_sent': 1, 'bytes_sent': 10}

    @pytest.mark.asyncio
    async def test_empty_file(self, make_host, tmp_path):
        host, receiver = await receiving_host(make_host, tmp_path / "out")
        empty = tmp_path / "empty.dat"
        empty.write_bytes(b"")

        await FileSender(await make_host()).send_file(host.listen_addresses()[0], empty)

        await wait_until(lambda: receiver.files_received == 1)
        assert (tmp_path / "out" / "received_empty.dat").read_bytes() == b""

    @pytest.mark.asyncio
    async def test_concurrent_transfers_do_not_interfere(self, make_host, tmp_path):
        host, receiver = await receiving_host(make_host, tmp_path / "out")
        address = host.listen_addresses()[0]
        files = []
        for i in range(5):
            path = tmp_path / f"file{i}.bin"
            path.write_bytes(bytes([i]) * (1000 * (i + 1)))
            files.append(path)

        senders = [FileSender(await make_host()) for _ in files]
        await asyncio.gather(*(s.send_file(address, f) for s, f in zip(senders, files)))

        await wait_until(lambda: receiver.files_received == 5)
        for i, path in enumerate(files):
            out = tmp_path / "out" / f"received_{path.name}"
            assert out.read_bytes() == path.read_bytes()

    @pytest.mark.asyncio
    async def test_path_traversal_rejected(self, make_host, tmp_path):
        host, receiver = await receiving_host(make_host, tmp_path / "out")
        client = await make_host()

        stream = await client.new_stream(host.listen_addresses()[0], FILE_TRANSFER_PROTOCOL)
        await write_frame(stream, "../evil.txt", io.BytesIO(b"pwned"), 5)
        await stream.close_write()

        await wait_until(lambda: receiver.failures == 1)
        assert not (tmp_path / "evil.txt").exists()
        assert list((tmp_path / "out").iterdir()) == []

    @pytest.mark.asyncio
    async def test_truncated_transfer_leaves_no_output(self, make_host, tmp_path):
        host, receiver = await receiving_host(make_host, tmp_path / "out")
        client = await make_host()

        stream = await client.new_stream(host.listen_addresses()[0], FILE_TRANSFER_PROTOCOL)
        await stream.write(b"big.bin\n100\n0123456789")
        await stream.close_write()

        await wait_until(lambda: receiver.failures == 1)
        assert receiver.files_received == 0
        assert list((tmp_path / "out").iterdir()) == []

    @pytest.mark.asyncio
    async def test_receive_raises_truncated(self, stream_pair, tmp_path):
        a, b = stream_pair
        receiver = FileReceiver(tmp_path / "out")

        await a.write(b"big.bin\n100\n0123456789")
        await a.close_write()

        with pytest.raises(TruncatedTransfer):
            await receiver.receive(b)
        assert b.closed
        assert not (tmp_path / "out" / "received_big.bin").exists()
        assert not (tmp_path / "out" / "received_big.bin.part").exists()

    @pytest.mark.asyncio
    async def test_receive_closes_stream_on_bad_header(self, stream_pair, tmp_path):
        a, b = stream_pair
        receiver = FileReceiver(tmp_path / "out")

        await a.write(b"name-only")
        await a.close_write()

        assert await receiver.handle_stream(b) is None
        assert b.closed
        assert receiver.failures == 1


class TestStreamSetup:

    @pytest.mark.asyncio
    async def test_unsupported_protocol(self, make_host, tmp_path, sample_file):
        host = await make_host()
        sender = FileSender(await make_host())

        with pytest.raises(ProtocolError):
            await sender.send_file(host.listen_addresses()[0], sample_file)

    @pytest.mark.asyncio
    async def test_peer_id_mismatch(self, make_host, tmp_path, sample_file):
        host, _ = await receiving_host(make_host, tmp_path / "out")
        impostor = await make_host(seed=99)
        address = host.listen_addresses()[0]
        wrong = PeerAddress(address.family, address.host, address.port, impostor.peer_id)

        with pytest.raises(AddressError):
            await FileSender(await make_host()).send_file(wrong, sample_file)


class TestRawTransfer:

    @pytest.mark.asyncio
    async def test_whole_stream_into_fixed_file(self, make_host, tmp_path):
        host = await make_host()
        target = tmp_path / "incoming.bin"
        receiver = RawFileReceiver(target)
        host.set_stream_handler(RAW_TRANSFER_PROTOCOL, receiver.handle_stream)

        source = tmp_path / "whatever-name.bin"
        source.write_bytes(b"raw payload " * 1000)

        result = await FileSender(await make_host()).send_raw(host.listen_addresses()[0], source)
        assert result.byte_length == 12000

        await wait_until(lambda: receiver.files_received == 1)
        assert target.read_bytes() == source.read_bytes()


class TestFrameChannel:

    @pytest.mark.asyncio
    async def test_several_files_over_one_stream(self, stream_pair, tmp_path):
        a, b = stream_pair
        first = tmp_path / "one.txt"
        first.write_bytes(b"first file")
        second = tmp_path / "two.txt"
        second.write_bytes(b"second")

        sending = FrameChannel(a, tmp_path / "a_out")
        receiving = FrameChannel(b, tmp_path / "b_out")

        async def send_both():
            await sending.send_file(first)
            await sending.send_file(second)
            await a.close_write()

        async def collect():
            return [r async for r in receiving.receive_files()]

        _, results = await asyncio.gather(send_both(), collect())

        assert [r.filename for r in results] == ["one.txt", "two.txt"]
        assert (tmp_path / "b_out" / "received_one.txt").read_bytes() == b"first file"
        assert (tmp_path / "b_out" / "received_two.txt").read_bytes() == b"second"

    @pytest.mark.asyncio
    async def test_stream_ending_mid_frame_raises(self, stream_pair, tmp_path):
        a, b = stream_pair
        await a.write(b"x.bin\n50\nshort")
        await a.close_write()

        channel = FrameChannel(b, tmp_path / "out")
        with pytest.raises(TruncatedTransfer):
            async for _ in channel.receive_files():
                pass
        assert list((tmp_path / "out").iterdir()) == []

    @pytest.mark.asyncio
    async def test_unsafe_name_is_skipped(self, stream_pair, tmp_path):
        a, b = stream_pair
        await write_frame(a, "../evil", io.BytesIO(b"bad"), 3)
        await write_frame(a, "good.txt", io.BytesIO(b"good"), 4)
        await a.close_write()

        channel = FrameChannel(b, tmp_path / "out")
        results = [r async for r in channel.receive_files()]

        assert [r.filename for r in results] == ["good.txt"]
        assert channel.frames_skipped == 1
        assert (tmp_path / "out" / "received_good.txt").read_bytes() == b"good"
        assert not (tmp_path / "evil").exists()


class TestEndOfTransfer:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [1000, 20000, 200000])
    async def test_sender_sees_receiver_stop_mid_payload(self, make_host, tmp_path, size):
        host = await make_host()

        async def read_ten_then_close(stream):
            _, _, payload = await read_frame(stream)
            await payload.read(10)
            await stream.close()

        host.set_stream_handler(FILE_TRANSFER_PROTOCOL, read_ten_then_close)
        source = tmp_path / "big.bin"
        source.write_bytes(b"z" * size)
        sender = FileSender(await make_host())

        with pytest.raises(OSError):
            await sender.send_file(host.listen_addresses()[0], source)
        assert sender.files_sent == 0

    @pytest.mark.asyncio
    async def test_sender_gives_up_without_end_of_stream(self, make_host, sample_file):
        host = await make_host()

        async def read_and_hold(stream):
            _, _, payload = await read_frame(stream)
            await payload.discard()

        host.set_stream_handler(FILE_TRANSFER_PROTOCOL, read_and_hold)
        sender = FileSender(await make_host(), timeout=0.3)

        with pytest.raises(ProtocolError):
            await sender.send_file(host.listen_addresses()[0], sample_file)

    @pytest.mark.asyncio
    async def test_trailing_bytes_fail_the_receive(self, stream_pair, tmp_path):
        a, b = stream_pair
        receiver = FileReceiver(tmp_path / "out")
        await a.write(b"a.txt\n3\nabcEXTRA")
        await a.close_write()

        with pytest.raises(ProtocolError):
            await receiver.receive(b)
        assert b.closed
        assert list((tmp_path / "out").iterdir()) == []
