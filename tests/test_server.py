"""Tests for the distributed storage server."""

import asyncio
import contextlib
import socket
import struct
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tokenbucket.core.clock import ManualClock
from tokenbucket.core.config import BucketConfig
from tokenbucket.distributed.codec import encode_frame, read_frame
from tokenbucket.distributed.messages import AcquireRequest, AcquireResponse, Outcome
from tokenbucket.distributed.server import (
    ConnectionState,
    DistributedServer,
    ServerConnection,
    resolve_peers,
)
from tokenbucket.exceptions import ConfigurationError, MalformedFrameError
from tokenbucket.models import ErrorKind
from tokenbucket.storage import InMemoryStorage

LIMIT = 128 * 1024
IO_TIMEOUT = 2.0


def make_storage(capacity=1, refill_rate=1.0, auto_provision=True, overrides=None):
    return InMemoryStorage(
        capacity=capacity,
        refill_rate=refill_rate,
        clock=ManualClock(0.0),
        auto_provision=auto_provision,
        overrides=overrides or {},
    )


@contextlib.asynccontextmanager
async def running_server(storage=None, allowed_peers=()):
    server = DistributedServer(
        storage=storage if storage is not None else make_storage(),
        host="127.0.0.1",
        port=0,
        max_frame_size=LIMIT,
        allowed_peers=list(allowed_peers),
    )
    await server.start()
    try:
        yield server
    finally:
        await server.close()


@contextlib.asynccontextmanager
async def raw_connection(server):
    host, port = server.address
    reader, writer = await asyncio.open_connection(host, port)
    try:
        yield reader, writer
    finally:
        writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await writer.wait_closed()


async def roundtrip(reader, writer, request):
    writer.write(encode_frame(request))
    await writer.drain()
    return await asyncio.wait_for(read_frame(reader, LIMIT), IO_TIMEOUT)


async def assert_closed_by_server(reader):
    data = await asyncio.wait_for(reader.read(), IO_TIMEOUT)
    assert data == b""


async def wait_for_connection_count(server, count):
    async def poll():
        while server.connection_count != count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), IO_TIMEOUT)


class TestServerRequests:
    """Acquire requests over a live connection."""

    @pytest.mark.asyncio
    async def test_pipelined_requests_answered_in_order(self):
        async with running_server() as server:
            async with raw_connection(server) as (reader, writer):
                writer.write(
                    encode_frame(AcquireRequest(correlation_id=1, key=b"k", amount=1))
                    + encode_frame(AcquireRequest(correlation_id=2, key=b"k", amount=1))
                )
                await writer.drain()

                first = await asyncio.wait_for(read_frame(reader, LIMIT), IO_TIMEOUT)
                second = await asyncio.wait_for(read_frame(reader, LIMIT), IO_TIMEOUT)

        assert first == AcquireResponse(1, Outcome.GRANTED)
        assert second.correlation_id == 2
        assert second.outcome == Outcome.DENIED
        assert second.retry_after_ms == 1000

    @pytest.mark.asyncio
    async def test_invalid_amount_keeps_connection_open(self):
        async with running_server() as server:
            async with raw_connection(server) as (reader, writer):
                zero = await roundtrip(reader, writer, AcquireRequest(1, b"k", 0))
                too_many = await roundtrip(reader, writer, AcquireRequest(2, b"k", 2))
                ok = await roundtrip(reader, writer, AcquireRequest(3, b"k", 1))

        assert zero == AcquireResponse.error(1, ErrorKind.INVALID_AMOUNT)
        assert too_many == AcquireResponse.error(2, ErrorKind.INVALID_AMOUNT)
        assert ok.outcome == Outcome.GRANTED

    @pytest.mark.asyncio
    async def test_unknown_key_rejected(self):
        storage = make_storage(
            auto_provision=False,
            overrides={"known": BucketConfig(capacity=1, refill_rate=1.0)},
        )
        async with running_server(storage) as server:
            async with raw_connection(server) as (reader, writer):
                unknown = await roundtrip(reader, writer, AcquireRequest(1, b"other", 1))
                known = await roundtrip(reader, writer, AcquireRequest(2, b"known", 1))

        assert unknown.outcome == Outcome.ERROR
        assert unknown.error_kind == ErrorKind.UNKNOWN_KEY
        assert known.outcome == Outcome.GRANTED

    @pytest.mark.asyncio
    async def test_state_shared_across_connections(self):
        async with running_server() as server:
            async with raw_connection(server) as (r1, w1), raw_connection(server) as (r2, w2):
                first = await roundtrip(r1, w1, AcquireRequest(1, b"shared", 1))
                second = await roundtrip(r2, w2, AcquireRequest(1, b"shared", 1))

        assert first.outcome == Outcome.GRANTED
        assert second.outcome == Outcome.DENIED


class TestServerProtocolErrors:
    """Protocol violations close the offending connection only."""

    @pytest.mark.asyncio
    async def test_corrupt_frame_closes_connection(self):
        async with running_server() as server:
            async with raw_connection(server) as (bad_r, bad_w), raw_connection(server) as (r, w):
                frame = bytearray(encode_frame(AcquireRequest(1, b"k", 1)))
                frame[-1] ^= 0x01
                bad_w.write(bytes(frame))
                await bad_w.drain()
                await assert_closed_by_server(bad_r)

                # Bucket state is untouched and other connections still work.
                response = await roundtrip(r, w, AcquireRequest(2, b"k", 1))

        assert response.outcome == Outcome.GRANTED

    @pytest.mark.asyncio
    async def test_oversized_header_closes_connection(self):
        async with running_server() as server:
            async with raw_connection(server) as (reader, writer):
                writer.write(struct.pack(">II", LIMIT * 4, 0))
                await writer.drain()
                await assert_closed_by_server(reader)

    @pytest.mark.asyncio
    async def test_response_frame_from_client_closes_connection(self):
        async with running_server() as server:
            async with raw_connection(server) as (reader, writer):
                writer.write(encode_frame(AcquireResponse(1, Outcome.GRANTED)))
                await writer.drain()
                await assert_closed_by_server(reader)

    @pytest.mark.asyncio
    async def test_peer_outside_allowlist_rejected(self):
        async with running_server(allowed_peers=["192.0.2.10"]) as server:
            async with raw_connection(server) as (reader, writer):
                await assert_closed_by_server(reader)


class TestServerWriteFailures:
    """A failed response write closes that connection only."""

    @pytest.mark.asyncio
    async def test_reset_before_reading_response(self):
        """The peer resets its socket right after sending a request."""
        storage = make_storage(capacity=3)
        async with running_server(storage) as server:
            host, port = server.address
            reader, writer = await asyncio.open_connection(host, port)
            await wait_for_connection_count(server, 1)

            sock = writer.get_extra_info("socket")
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
            writer.write(encode_frame(AcquireRequest(1, b"k", 1)))
            await writer.drain()
            writer.transport.abort()
            await wait_for_connection_count(server, 0)

            # The reset request may or may not have been applied before the reset.
            remaining = int(storage.snapshot("k").tokens)
            assert remaining in (2, 3)

            async with raw_connection(server) as (r, w):
                granted = await roundtrip(r, w, AcquireRequest(2, b"k", remaining))
                denied = await roundtrip(r, w, AcquireRequest(3, b"k", 1))
                assert server.connection_count == 1

            await wait_for_connection_count(server, 0)

        assert granted == AcquireResponse(2, Outcome.GRANTED)
        assert denied == AcquireResponse(3, Outcome.DENIED, retry_after_ms=1000)

    @pytest.mark.asyncio
    async def test_write_error_while_responding(self):
        storage = make_storage(capacity=2)
        server = DistributedServer(storage=storage, allowed_peers=[])
        reader = asyncio.StreamReader()
        reader.feed_data(encode_frame(AcquireRequest(1, b"k", 1)))
        writer = MagicMock()
        writer.get_extra_info.return_value = ("198.51.100.1", 40000)
        writer.drain = AsyncMock(side_effect=ConnectionResetError("reset by peer"))
        writer.wait_closed = AsyncMock()
        connection = ServerConnection(server, reader, writer, connection_id=1)

        with patch("tokenbucket.distributed.server.logger") as mock_logger:
            await asyncio.wait_for(connection.run(), IO_TIMEOUT)

        assert connection.state == ConnectionState.CLOSED
        writer.close.assert_called()
        warnings = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert any(msg.startswith("Write failed") for msg in warnings)
        # The debit stands and the bucket keeps serving other requests.
        assert storage.snapshot("k").tokens == 1.0
        assert server.process(AcquireRequest(2, b"k", 1)).outcome == Outcome.GRANTED
        assert server.process(AcquireRequest(3, b"k", 1)).outcome == Outcome.DENIED


class TestServerLifecycle:
    def test_address_requires_start(self):
        server = DistributedServer(storage=make_storage(), port=0, allowed_peers=[])
        with pytest.raises(RuntimeError):
            server.address

    @pytest.mark.asyncio
    async def test_serve_forever_requires_a_bound_server(self):
        server = DistributedServer(storage=make_storage(), port=0, allowed_peers=[])
        with patch.object(server, "start", AsyncMock()):
            with pytest.raises(RuntimeError):
                await server.serve_forever()

    def test_frame_limit_below_header_rejected(self):
        with pytest.raises(ConfigurationError):
            DistributedServer(storage=make_storage(), max_frame_size=4, allowed_peers=[])

    @pytest.mark.asyncio
    async def test_close_drops_open_connections(self):
        async with running_server() as server:
            async with raw_connection(server) as (reader, writer):
                await roundtrip(reader, writer, AcquireRequest(1, b"k", 1))
                assert server.connection_count == 1
                await server.close()
                assert server.connection_count == 0
                await assert_closed_by_server(reader)


class TestProcess:
    """Direct calls to the single mutation point."""

    @pytest.fixture
    def server(self):
        return DistributedServer(storage=make_storage(capacity=3), allowed_peers=[])

    def test_granted_then_denied(self, server):
        assert server.process(AcquireRequest(1, b"k", 3)).outcome == Outcome.GRANTED
        denied = server.process(AcquireRequest(2, b"k", 2))
        assert denied.outcome == Outcome.DENIED
        assert denied.retry_after_ms == 2000

    def test_non_request_is_protocol_error(self, server):
        with pytest.raises(MalformedFrameError):
            server.process(AcquireResponse(1, Outcome.GRANTED))

    def test_unexpected_failure_reported_as_internal(self):
        storage = MagicMock()
        storage.acquire.side_effect = RuntimeError("boom")
        server = DistributedServer(storage=storage, allowed_peers=[])

        with patch("tokenbucket.distributed.server.logger") as mock_logger:
            response = server.process(AcquireRequest(9, b"k", 1))

        assert response == AcquireResponse.error(9, ErrorKind.INTERNAL)
        mock_logger.exception.assert_called_once()


class TestPeerAllowlist:
    def test_ip_literals_normalized(self):
        assert resolve_peers(["127.0.0.1", "::ffff:10.0.0.1", "::1"]) == {
            "127.0.0.1", "10.0.0.1", "::1",
        }

    def test_host_names_resolved(self):
        infos = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("192.0.2.7", 0))]
        with patch("socket.getaddrinfo", return_value=infos) as mock_getaddrinfo:
            assert resolve_peers(["limiter.internal"]) == {"192.0.2.7"}
        assert mock_getaddrinfo.call_args.args[0] == "limiter.internal"

    def test_unresolvable_host_is_configuration_error(self):
        with patch("socket.getaddrinfo", side_effect=socket.gaierror("no such host")):
            with pytest.raises(ConfigurationError):
                resolve_peers(["nowhere.invalid"])

    def test_is_peer_allowed(self):
        server = DistributedServer(storage=make_storage(), allowed_peers=["192.0.2.7"])
        assert server.is_peer_allowed("192.0.2.7") is True
        assert server.is_peer_allowed("::ffff:192.0.2.7") is True
        assert server.is_peer_allowed("192.0.2.8") is False
        assert server.is_peer_allowed("garbage") is False

    def test_empty_allowlist_allows_everyone(self):
        server = DistributedServer(storage=make_storage(), allowed_peers=[])
        assert server.is_peer_allowed("203.0.113.5") is True
