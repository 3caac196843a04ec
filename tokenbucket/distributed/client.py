"""Distributed storage client.

Implements the Storage capability against a DistributedServer. Requests are
pipelined over one connection; a background reader completes the pending
request whose correlation id matches each response, so responses may arrive
in any order.
"""

import asyncio
import contextlib
import itertools
from typing import Dict, Optional, Set

from tokenbucket.core.config import settings
from tokenbucket.core.logging import get_logger, get_log_context
from tokenbucket.distributed.codec import HEADER_SIZE, U64_MAX, encode_frame, read_frame
from tokenbucket.distributed.messages import AcquireRequest, AcquireResponse, Outcome
from tokenbucket.distributed.retry import RetryPolicy, with_retry
from tokenbucket.exceptions import (
    ConfigurationError,
    InvalidAmountError,
    MalformedFrameError,
    StorageError,
    StorageUnavailableError,
)
from tokenbucket.models import AcquireResult
from tokenbucket.storage.base import BucketKey, normalize_key

logger = get_logger(__name__)


class ClientConnection:
    """One TCP connection plus its table of in-flight requests."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_frame_size: int,
    ):
        self._reader = reader
        self._writer = writer
        self._max_frame_size = max_frame_size
        self._write_lock = asyncio.Lock()
        self.pending: Dict[int, asyncio.Future] = {}
        self.closed = False
        # Retired connections take no new requests and close once drained.
        self.retired = False
        peer = writer.get_extra_info("peername")
        self.peer = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        self._reader_task = asyncio.create_task(self._read_loop())

    def register(self, correlation_id: int) -> asyncio.Future:
        if correlation_id in self.pending:
            raise RuntimeError(f"correlation id {correlation_id} already in flight")
        future = asyncio.get_running_loop().create_future()
        self.pending[correlation_id] = future
        return future

    async def send(self, frame: bytes) -> None:
        if self.closed:
            raise ConnectionError("Connection is closed")
        async with self._write_lock:
            self._writer.write(frame)
            await self._writer.drain()

    def _fail_pending(self, exc: BaseException) -> None:
        pending, self.pending = self.pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    async def _read_loop(self) -> None:
        try:
            while True:
                message = await read_frame(self._reader, self._max_frame_size)
                if message is None:
                    raise ConnectionError("Server closed the connection")
                if not isinstance(message, AcquireResponse):
                    raise MalformedFrameError("Expected an acquire response")
                future = self.pending.pop(message.correlation_id, None)
                if future is None or future.done():
                    # Late answer to a request that timed out or was cancelled.
                    logger.debug(
                        "Dropping response with no pending request",
                        extra=get_log_context(peer=self.peer, correlation_id=message.correlation_id),
                    )
                    continue
                future.set_result(message)
        except asyncio.CancelledError:
            self._fail_pending(ConnectionError("Connection closed"))
            raise
        except Exception as e:
            logger.debug(f"Connection reader stopped: {type(e).__name__}: {e}",
                         extra=get_log_context(peer=self.peer))
            self._fail_pending(e)
        finally:
            self.closed = True
            self._writer.close()

    async def close(self) -> None:
        self.closed = True
        self._reader_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._reader_task
        self._writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self._writer.wait_closed()


class DistributedStorage:
    """Storage backend that forwards acquires to a DistributedServer.

    Failure policy:
    - Connection errors, timeouts and protocol errors retire the connection
      and are retried on a new one per ``retry_policy``; once retries are
      exhausted the call raises StorageUnavailableError.
    - A retired connection keeps serving the requests already in flight on
      it and closes when the last of them completes, so one timeout does not
      fail and resend its pipelined siblings. A connection that broke fails
      every request on it; those are resent, and a debit the server applied
      before the break is applied again.
    - ``request_timeout`` applies to each attempt, not to the whole call.
    - An ``Error`` response is a logical rejection and is raised as the
      matching StorageError without retrying.
    - Cancelling a call does not refund a debit the server already applied.
    - After ``close`` every call raises StorageUnavailableError, including
      calls that were in flight.

    The ``now`` argument of ``try_acquire`` is ignored; the server's clock is
    authoritative.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        connect_timeout: Optional[float] = None,
        request_timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_frame_size: Optional[int] = None,
    ):
        """Initialize the client; connects lazily on first use.

        Args:
            host: Server host (settings.client_host)
            port: Server port (settings.client_port)
            connect_timeout: Seconds per connection attempt (settings.connect_timeout)
            request_timeout: Seconds to wait for each response (settings.request_timeout)
            retry_policy: Retry count and backoff (built from settings)
            max_frame_size: Largest accepted frame (settings.max_frame_size)

        Raises:
            ConfigurationError: If a timeout or the frame limit is out of range
        """
        self.host = host if host is not None else settings.client_host
        self.port = port if port is not None else settings.client_port
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else settings.connect_timeout
        )
        self.request_timeout = (
            request_timeout if request_timeout is not None else settings.request_timeout
        )
        self.max_frame_size = (
            max_frame_size if max_frame_size is not None else settings.max_frame_size
        )
        if self.connect_timeout <= 0 or self.request_timeout <= 0:
            raise ConfigurationError("Timeout values must be positive")
        if self.max_frame_size < HEADER_SIZE:
            raise ConfigurationError(f"max_frame_size must be at least {HEADER_SIZE} bytes")
        self.retry_policy = retry_policy or RetryPolicy.from_settings()

        self._connection: Optional[ClientConnection] = None
        self._draining: Set[ClientConnection] = set()
        self._closed = False
        self._connect_lock = asyncio.Lock()
        self._ids = itertools.count(1)

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"

    def _next_correlation_id(self) -> int:
        return next(self._ids) & U64_MAX

    async def _get_connection(self) -> ClientConnection:
        async with self._connect_lock:
            if self._closed:
                raise StorageUnavailableError(f"Client for {self.target} is closed")
            connection = self._connection
            if connection is not None and not connection.closed:
                return connection
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
            self._connection = ClientConnection(reader, writer, self.max_frame_size)
            logger.debug("Connected", extra=get_log_context(peer=self.target))
            return self._connection

    def _retire(self, connection: ClientConnection) -> None:
        if self._connection is connection:
            self._connection = None
        if not connection.retired:
            connection.retired = True
            self._draining.add(connection)

    async def _release(self, connection: ClientConnection, correlation_id: int) -> None:
        connection.pending.pop(correlation_id, None)
        if connection.retired and not connection.pending:
            self._draining.discard(connection)
            await connection.close()

    async def _send_once(self, request: AcquireRequest) -> AcquireResponse:
        connection = await self._get_connection()
        future = connection.register(request.correlation_id)
        try:
            await connection.send(encode_frame(request))
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except Exception as e:
            if self.retry_policy.is_retryable(e):
                # The server may be stuck; later requests go to a new connection.
                self._retire(connection)
            raise
        finally:
            await self._release(connection, request.correlation_id)

    async def try_acquire(
        self,
        key: BucketKey,
        amount: int = 1,
        now: Optional[float] = None,
    ) -> AcquireResult:
        """Acquire ``amount`` tokens from the server's bucket for ``key``.

        Raises:
            InvalidAmountError: Amount rejected locally (not an unsigned
                64-bit integer) or by the server
            UnknownKeyError: Server does not provision unknown keys
            StorageUnavailableError: Retries exhausted or the client is closed
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or not 0 <= amount <= U64_MAX:
            raise InvalidAmountError(f"amount must be an unsigned 64-bit integer, got {amount!r}")
        request = AcquireRequest(
            correlation_id=self._next_correlation_id(),
            key=normalize_key(key),
            amount=amount,
        )

        send = with_retry(self.retry_policy)(self._send_once)
        try:
            response = await send(request)
        except StorageError:
            raise
        except Exception as e:
            if not self.retry_policy.is_retryable(e):
                raise
            logger.error(
                f"Storage unavailable after {self.retry_policy.max_attempts} attempts: "
                f"{type(e).__name__}: {e}",
                extra=get_log_context(peer=self.target, correlation_id=request.correlation_id),
            )
            raise StorageUnavailableError(
                f"Storage at {self.target} unavailable after "
                f"{self.retry_policy.max_attempts} attempts",
                attempts=self.retry_policy.max_attempts,
            ) from e

        if response.outcome == Outcome.ERROR:
            raise StorageError.from_kind(response.error_kind or 0)
        return response.to_result()

    async def close(self) -> None:
        """Close every connection; later and in-flight calls fail as unavailable."""
        self._closed = True
        async with self._connect_lock:
            connection, self._connection = self._connection, None
        connections = list(self._draining)
        self._draining.clear()
        if connection is not None:
            connections.append(connection)
        for connection in connections:
            await connection.close()

    async def __aenter__(self) -> "DistributedStorage":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
