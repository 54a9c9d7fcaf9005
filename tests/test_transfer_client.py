"""Tests for TransferClient against a real server and against misbehaving peers."""

import asyncio
import socket

import pytest

from common.config import TransferConfig
from common.exceptions import (
    AddressValidationError,
    ConnectionTimeoutError,
    ProtocolError,
    TransferCancelledError,
    TransportError,
)
from common.protocol import encode_header
from common.transfer_log import DIRECTION_RECEIVED, DIRECTION_SENT
from transfer.client import TransferClient


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def scripted_server(handler):
    """Start a one-off server whose handler plays a fixed script."""
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


class TestListing:

    @pytest.mark.asyncio
    async def test_listing_counts_all_files(self, client, server_root, make_file):
        for i in range(5):
            make_file(server_root, f"dir{i % 2}/f{i}.txt", b"x" * i)

        names = await client.request_file_list()

        assert sorted(names) == [f"f{i}.txt" for i in range(5)]

    @pytest.mark.asyncio
    async def test_large_listing(self, client, server_root, make_file):
        for i in range(300):
            make_file(server_root, f"{'n' * 200}{i:04d}", b"")

        assert len(await client.request_file_list()) == 300

    @pytest.mark.asyncio
    async def test_listing_error_line_raises(self, transfer_config):
        async def handler(reader, writer):
            await reader.readline()
            writer.write(b"ERROR:Permission denied\n")
            await writer.drain()
            writer.close()

        server, port = await scripted_server(handler)
        try:
            client = TransferClient("127.0.0.1", port=port, config=transfer_config)
            with pytest.raises(ProtocolError, match="Permission denied"):
                await client.request_file_list()
        finally:
            server.close()


class TestDownloads:

    @pytest.mark.asyncio
    async def test_download_exact_bytes(self, client, server_root, client_root, client_catalog, make_file, client_log):
        payload = b"\x00\xff" * 50000
        make_file(server_root, "nested/blob.bin", payload)

        assert await client.request_file("blob.bin", client_catalog) is True

        assert (client_root / "blob.bin").read_bytes() == payload
        assert client_log.names(DIRECTION_RECEIVED) == ["blob.bin"]

    @pytest.mark.asyncio
    async def test_download_empty_file(self, client, server_root, client_root, client_catalog, make_file):
        make_file(server_root, "empty.txt", b"")

        assert await client.request_file("empty.txt", client_catalog) is True
        assert (client_root / "empty.txt").read_bytes() == b""

    @pytest.mark.asyncio
    async def test_missing_file_creates_nothing(self, client, client_root, client_catalog, client_log):
        assert await client.request_file("ghost.txt", client_catalog) is False

        assert list(client_root.iterdir()) == []
        assert client_log.all_records() == []

    @pytest.mark.asyncio
    async def test_truncated_payload_leaves_no_file(self, transfer_config, client_root, client_catalog):
        async def handler(reader, writer):
            await reader.readline()
            writer.write(b"OK\n" + encode_header("big.bin", 1000) + b"y" * 10)
            await writer.drain()
            writer.close()

        server, port = await scripted_server(handler)
        try:
            client = TransferClient("127.0.0.1", port=port, config=transfer_config)
            assert await client.request_file("big.bin", client_catalog) is False
        finally:
            server.close()

        assert list(client_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_mismatched_header_name_fails(self, transfer_config, client_root, client_catalog):
        async def handler(reader, writer):
            await reader.readline()
            writer.write(b"OK\n" + encode_header("other.bin", 3) + b"abc")
            await writer.drain()
            writer.close()

        server, port = await scripted_server(handler)
        try:
            client = TransferClient("127.0.0.1", port=port, config=transfer_config)
            assert await client.request_file("wanted.bin", client_catalog) is False
        finally:
            server.close()

        assert list(client_root.iterdir()) == []


class TestUploads:

    @pytest.mark.asyncio
    async def test_upload_then_list(self, client, server_root, client_root, client_catalog, make_file, client_log, server_log):
        make_file(client_root, "photo.jpg", b"jpegdata" * 4096)
        entry = client_catalog.get_file("photo.jpg")

        assert await client.send_file(entry, client_catalog) is True

        assert (server_root / "photo.jpg").read_bytes() == b"jpegdata" * 4096
        assert "photo.jpg" in await client.request_file_list()
        assert client_log.names(DIRECTION_SENT) == ["photo.jpg"]
        assert server_log.names(DIRECTION_RECEIVED) == ["photo.jpg"]

    @pytest.mark.asyncio
    async def test_upload_over_nested_file_lists_once(self, client, server_root, client_root, client_catalog, make_file):
        make_file(server_root, "albums/a.txt", b"stale")
        make_file(client_root, "a.txt", b"fresh")

        assert await client.send_file(client_catalog.get_file("a.txt"), client_catalog) is True

        assert (await client.request_file_list()).count("a.txt") == 1
        assert (server_root / "albums" / "a.txt").read_bytes() == b"fresh"

    @pytest.mark.asyncio
    async def test_upload_reports_failed_completion(self, transfer_config, client_root, client_catalog, make_file):
        make_file(client_root, "doc.txt", b"abc")

        async def handler(reader, writer):
            await reader.readline()
            writer.write(b"READY\n")
            await writer.drain()
            await reader.readexactly(2 + len("doc.txt") + 8 + 3)
            writer.write(b"FAILED\n")
            await writer.drain()
            writer.close()

        server, port = await scripted_server(handler)
        try:
            client = TransferClient("127.0.0.1", port=port, config=transfer_config)
            assert await client.send_file(client_catalog.get_file("doc.txt"), client_catalog) is False
        finally:
            server.close()

    @pytest.mark.asyncio
    async def test_upload_requires_ready(self, transfer_config, client_root, client_catalog, make_file):
        make_file(client_root, "doc.txt", b"abc")

        async def handler(reader, writer):
            await reader.readline()
            writer.write(b"ERROR:Unknown command\n")
            await writer.drain()
            writer.close()

        server, port = await scripted_server(handler)
        try:
            client = TransferClient("127.0.0.1", port=port, config=transfer_config)
            assert await client.send_file(client_catalog.get_file("doc.txt"), client_catalog) is False
        finally:
            server.close()


class TestConnectionPolicy:

    def test_malformed_address_rejected_before_io(self):
        with pytest.raises(AddressValidationError):
            TransferClient("999.1.1.1")
        with pytest.raises(AddressValidationError):
            TransferClient("")

    @pytest.mark.asyncio
    async def test_refused_connection_is_retried(self):
        config = TransferConfig(connect_timeout=1.0, response_timeout=1.0, max_retries=3, retry_delay=0.01)
        client = TransferClient("127.0.0.1", port=unused_port(), config=config)

        with pytest.raises(TransportError, match="after 3 attempt"):
            await client.request_file_list()

    @pytest.mark.asyncio
    async def test_refused_download_returns_false(self, client_catalog):
        config = TransferConfig(connect_timeout=1.0, response_timeout=1.0, max_retries=1, retry_delay=0.0)
        client = TransferClient("127.0.0.1", port=unused_port(), config=config)

        assert await client.request_file("x", client_catalog) is False

    @pytest.mark.asyncio
    async def test_silent_peer_times_out(self):
        async def handler(reader, writer):
            await asyncio.sleep(5)

        server, port = await scripted_server(handler)
        config = TransferConfig(connect_timeout=1.0, response_timeout=0.1, max_retries=1, retry_delay=0.0)
        try:
            client = TransferClient("127.0.0.1", port=port, config=config)
            with pytest.raises(ConnectionTimeoutError):
                await client.request_file_list()
        finally:
            server.close()


class TestCleanup:

    @pytest.mark.asyncio
    async def test_cleanup_unblocks_pending_wait(self):
        async def handler(reader, writer):
            await asyncio.sleep(5)

        server, port = await scripted_server(handler)
        config = TransferConfig(connect_timeout=1.0, response_timeout=5.0, max_retries=1, retry_delay=0.0)
        try:
            client = TransferClient("127.0.0.1", port=port, config=config)
            pending = asyncio.create_task(client.request_file_list())
            await asyncio.sleep(0.1)

            client.cleanup()

            with pytest.raises(TransferCancelledError):
                await asyncio.wait_for(pending, timeout=1.0)
        finally:
            server.close()

    @pytest.mark.asyncio
    async def test_cleanup_interrupts_retry_delay(self):
        config = TransferConfig(connect_timeout=1.0, response_timeout=1.0, max_retries=5, retry_delay=10.0)
        client = TransferClient("127.0.0.1", port=unused_port(), config=config)
        pending = asyncio.create_task(client.request_file_list())
        await asyncio.sleep(0.1)

        client.cleanup()

        with pytest.raises(TransferCancelledError):
            await asyncio.wait_for(pending, timeout=1.0)

    @pytest.mark.asyncio
    async def test_cleanup_twice_is_noop(self, client):
        client.cleanup()
        client.cleanup()

        assert client.closed
        with pytest.raises(TransferCancelledError):
            await client.request_file_list()


class TestPushSubscription:

    @pytest.mark.asyncio
    async def test_pushed_file_is_stored(self, server, client, server_root, client_root, client_catalog, make_file, eventually):
        make_file(server_root, "pushed.txt", b"surprise")
        received = []
        listener = asyncio.create_task(client.listen_for_pushes(client_catalog, on_file=received.append))
        await eventually(lambda: server.ready_client_count == 1)

        assert await server.push_file("pushed.txt") == 1

        await eventually(lambda: received == ["pushed.txt"])
        assert (client_root / "pushed.txt").read_bytes() == b"surprise"

        client.cleanup()
        with pytest.raises(TransferCancelledError):
            await asyncio.wait_for(listener, timeout=1.0)

    @pytest.mark.asyncio
    async def test_subscription_ends_when_server_stops(self, server, client, client_catalog, eventually):
        listener = asyncio.create_task(client.listen_for_pushes(client_catalog))
        await eventually(lambda: server.ready_client_count == 1)

        await server.stop()

        assert await asyncio.wait_for(listener, timeout=2.0) == 0
