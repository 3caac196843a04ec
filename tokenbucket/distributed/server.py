"""Distributed storage server.

Owns the authoritative buckets and serves acquire requests over TCP. Each
accepted connection runs its own state machine in its own task::

    IDLE -> AWAITING_FRAME -> PROCESSING -> RESPONDING -> AWAITING_FRAME ...

Any state moves to CLOSED on end of stream, a read or write error, or a
protocol error. That closes the one connection only; bucket state and other
connections are unaffected.
"""

import asyncio
import contextlib
import ipaddress
import itertools
import socket
from enum import Enum
from typing import Iterable, Optional, Set, Tuple

from tokenbucket.core.config import settings
from tokenbucket.core.logging import get_logger
from tokenbucket.distributed.codec import HEADER_SIZE, encode_frame, read_frame
from tokenbucket.distributed.messages import AcquireRequest, AcquireResponse, Message
from tokenbucket.exceptions import (
    ConfigurationError,
    MalformedFrameError,
    ProtocolError,
    StorageError,
)
from tokenbucket.models import ErrorKind
from tokenbucket.storage.in_memory import InMemoryStorage

logger = get_logger(__name__)


class ConnectionState(Enum):
    IDLE = "idle"
    AWAITING_FRAME = "awaiting_frame"
    PROCESSING = "processing"
    RESPONDING = "responding"
    CLOSED = "closed"


def _normalize_host(host: str) -> str:
    address = ipaddress.ip_address(host.split("%", 1)[0])
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    return str(address)


def resolve_peers(peers: Iterable[str]) -> Set[str]:
    """Resolve allowlist entries (IPs or host names) to normalized IPs.

    Raises:
        ConfigurationError: If an entry cannot be resolved
    """
    resolved: Set[str] = set()
    for peer in peers:
        try:
            resolved.add(_normalize_host(peer))
            continue
        except ValueError:
            pass
        try:
            infos = socket.getaddrinfo(peer, None, proto=socket.IPPROTO_TCP)
        except socket.gaierror as e:
            raise ConfigurationError(f"Peer address {peer!r} not resolved: {e}") from e
        resolved.update(_normalize_host(info[4][0]) for info in infos)
    return resolved


class ServerConnection:
    """One client connection and its processing loop."""

    def __init__(
        self,
        server: "DistributedServer",
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        connection_id: int,
    ):
        self._server = server
        self._reader = reader
        self._writer = writer
        self.connection_id = connection_id
        peer = writer.get_extra_info("peername")
        self.peer = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        self.state = ConnectionState.IDLE

    def _log_extra(self) -> dict:
        return {
            "peer": self.peer,
            "connection_id": self.connection_id,
            "state": self.state.value,
        }

    async def run(self) -> None:
        logger.debug("Connection opened", extra=self._log_extra())
        try:
            while True:
                self.state = ConnectionState.AWAITING_FRAME
                message = await read_frame(self._reader, self._server.max_frame_size)
                if message is None:
                    break

                self.state = ConnectionState.PROCESSING
                response = self._server.process(message)

                self.state = ConnectionState.RESPONDING
                self._writer.write(encode_frame(response))
                await self._writer.drain()
        except ProtocolError as e:
            logger.warning(f"Closing connection after protocol error: {e}", extra=self._log_extra())
        except asyncio.IncompleteReadError:
            logger.debug("Peer closed the connection mid-frame", extra=self._log_extra())
        except (ConnectionError, OSError) as e:
            if self.state == ConnectionState.RESPONDING:
                logger.warning(f"Write failed: {e}", extra=self._log_extra())
            else:
                logger.debug(f"Connection error: {e}", extra=self._log_extra())
        finally:
            self.state = ConnectionState.CLOSED
            await self.close()
            logger.debug("Connection closed", extra=self._log_extra())

    async def close(self) -> None:
        self.state = ConnectionState.CLOSED
        self._writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self._writer.wait_closed()


class DistributedServer:
    """TCP server holding the authoritative bucket for every key.

    Keys are resolved by the wrapped InMemoryStorage, so the unknown-key
    policy (auto-provision or reject) is the storage's. Each key has its own
    lock; there is no global lock and no lock is held while awaiting I/O.

    Example:
        >>> async with DistributedServer(port=0) as server:
        ...     host, port = server.address
        ...     await server.serve_forever()
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        max_frame_size: Optional[int] = None,
        allowed_peers: Optional[Iterable[str]] = None,
    ):
        """Initialize the server (does not bind until ``start``).

        Args:
            storage: Bucket storage; built from settings if omitted
            host: Bind address (settings.server_host)
            port: Bind port, 0 for an ephemeral port (settings.server_port)
            max_frame_size: Largest accepted frame (settings.max_frame_size)
            allowed_peers: Hosts allowed to connect; empty allows any
                (settings.allowed_peers)

        Raises:
            ConfigurationError: For an unusable frame limit or peer list
        """
        self.storage = storage if storage is not None else InMemoryStorage()
        self.host = host if host is not None else settings.server_host
        self.port = port if port is not None else settings.server_port
        self.max_frame_size = (
            max_frame_size if max_frame_size is not None else settings.max_frame_size
        )
        if self.max_frame_size < HEADER_SIZE:
            raise ConfigurationError(f"max_frame_size must be at least {HEADER_SIZE} bytes")
        peers = allowed_peers if allowed_peers is not None else settings.allowed_peers
        self.allowed_peers = resolve_peers(peers)

        self._server: Optional[asyncio.Server] = None
        self._connections: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    @property
    def address(self) -> Tuple[str, int]:
        """Bound ``(host, port)``; only valid after ``start``."""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("server is not started")
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def is_peer_allowed(self, peer_host: str) -> bool:
        if not self.allowed_peers:
            return True
        try:
            return _normalize_host(peer_host) in self.allowed_peers
        except ValueError:
            return False

    def process(self, message: Message) -> AcquireResponse:
        """Apply one decoded message to bucket state and build the response.

        This is the single point of mutation. Logical rejections become
        ``Error`` responses; a frame that is not a request is a protocol
        violation.
        """
        if not isinstance(message, AcquireRequest):
            raise MalformedFrameError("Expected an acquire request")
        try:
            result = self.storage.acquire(message.key, message.amount)
        except StorageError as e:
            kind = e.kind if e.kind is not None else ErrorKind.INTERNAL
            logger.debug(
                f"Rejected request: {e}",
                extra={"key": message.key.decode("utf-8", "replace"),
                       "correlation_id": message.correlation_id},
            )
            return AcquireResponse.error(message.correlation_id, kind)
        except Exception:
            logger.exception(
                "Unexpected error while processing request",
                extra={"correlation_id": message.correlation_id},
            )
            return AcquireResponse.error(message.correlation_id, ErrorKind.INTERNAL)
        return AcquireResponse.from_result(message.correlation_id, result)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            peer = writer.get_extra_info("peername")
            if peer and not self.is_peer_allowed(peer[0]):
                logger.warning(
                    "Rejected connection from peer not in allowlist",
                    extra={"peer": f"{peer[0]}:{peer[1]}"},
                )
                writer.close()
                with contextlib.suppress(ConnectionError, OSError):
                    await writer.wait_closed()
                return

            connection = ServerConnection(self, reader, writer, next(self._ids))
            await connection.run()
        finally:
            if task is not None:
                self._connections.discard(task)

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        host, port = self.address
        logger.info(f"Token bucket server listening on {host}:{port}")

    async def serve_forever(self) -> None:
        await self.start()
        server = self._server
        if server is None:
            raise RuntimeError("server is not started")
        await server.serve_forever()

    async def close(self) -> None:
        """Stop accepting, close open connections and wait for them."""
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        tasks = list(self._connections)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await server.wait_closed()
        logger.info("Token bucket server stopped")

    async def __aenter__(self) -> "DistributedServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
