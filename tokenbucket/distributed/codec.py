"""Frame codec for the distributed storage protocol.

Every message travels as one frame::

    [0:4)  length    u32 big-endian, 1 (type tag) + body length
    [4:8)  checksum  u32 big-endian, CRC32 over bytes [8 .. 8+length)
    [8:9)  type tag  u8, see MessageType
    [9:..] body

AcquireRequest body:  correlation_id u64, key_len u16, key, amount u64.
AcquireResponse body: correlation_id u64, outcome u8, then retry_after_ms u64
(DENIED) or error kind u8 (ERROR); nothing for GRANTED.

A decode failure means the stream is desynchronized. No resynchronization is
attempted; the caller closes the connection.
"""

import asyncio
import struct
import zlib
from typing import List, Optional

from tokenbucket.core.config import FRAME_HEADER_SIZE, settings
from tokenbucket.distributed.messages import (
    AcquireRequest,
    AcquireResponse,
    Message,
    MessageType,
    Outcome,
)
from tokenbucket.exceptions import (
    ChecksumMismatchError,
    ConfigurationError,
    FrameTooLargeError,
    MalformedFrameError,
)
from tokenbucket.storage.base import MAX_KEY_LENGTH

HEADER_SIZE = FRAME_HEADER_SIZE
U64_MAX = 0xFFFFFFFFFFFFFFFF

_HEADER = struct.Struct(">II")
_REQUEST_PREFIX = struct.Struct(">QH")
_U64 = struct.Struct(">Q")
_RESPONSE_PREFIX = struct.Struct(">QB")
_U8 = struct.Struct(">B")


def checksum(payload: bytes) -> int:
    """CRC32 of ``payload`` as an unsigned 32-bit integer."""
    return zlib.crc32(payload) & 0xFFFFFFFF


def _check_u64(name: str, value: int) -> None:
    if not 0 <= value <= U64_MAX:
        raise ValueError(f"{name} must fit in an unsigned 64-bit integer, got {value}")


def encode_payload(message: Message) -> bytes:
    """Serialize a message to its tagged payload (no frame header).

    Raises:
        ValueError: If a field does not fit its wire representation
    """
    if isinstance(message, AcquireRequest):
        _check_u64("correlation_id", message.correlation_id)
        _check_u64("amount", message.amount)
        if not message.key or len(message.key) > MAX_KEY_LENGTH:
            raise ValueError(f"key must be 1..{MAX_KEY_LENGTH} bytes")
        return b"".join((
            _U8.pack(MessageType.ACQUIRE_REQUEST),
            _REQUEST_PREFIX.pack(message.correlation_id, len(message.key)),
            message.key,
            _U64.pack(message.amount),
        ))

    if isinstance(message, AcquireResponse):
        _check_u64("correlation_id", message.correlation_id)
        parts = [
            _U8.pack(MessageType.ACQUIRE_RESPONSE),
            _RESPONSE_PREFIX.pack(message.correlation_id, message.outcome),
        ]
        if message.outcome == Outcome.DENIED:
            _check_u64("retry_after_ms", message.retry_after_ms)
            parts.append(_U64.pack(message.retry_after_ms))
        elif message.outcome == Outcome.ERROR:
            if message.error_kind is None or not 0 <= message.error_kind <= 0xFF:
                raise ValueError("error responses need an error kind in 0..255")
            parts.append(_U8.pack(message.error_kind))
        return b"".join(parts)

    raise TypeError(f"cannot encode {type(message).__name__}")


def encode_frame(message: Message) -> bytes:
    """Serialize a message into a complete frame."""
    payload = encode_payload(message)
    return _HEADER.pack(len(payload), checksum(payload)) + payload


def parse_header(header: bytes, max_frame_size: int) -> tuple[int, int]:
    """Split a frame header into ``(length, checksum)``.

    Raises:
        FrameTooLargeError: If the frame would exceed ``max_frame_size``
        MalformedFrameError: If the header is short or declares no payload
    """
    if len(header) < HEADER_SIZE:
        raise MalformedFrameError(
            f"Header too small: expected {HEADER_SIZE} bytes, got {len(header)}"
        )
    length, expected = _HEADER.unpack_from(header)
    if HEADER_SIZE + length > max_frame_size:
        raise FrameTooLargeError(length, max_frame_size - HEADER_SIZE)
    if length == 0:
        raise MalformedFrameError("Frame has no type tag")
    return length, expected


def decode_payload(payload: bytes, expected_checksum: int) -> Message:
    """Verify and parse a tagged payload.

    Raises:
        ChecksumMismatchError: If the CRC32 does not match the header
        MalformedFrameError: If the payload is not a well-formed message
    """
    actual = checksum(payload)
    if actual != expected_checksum:
        raise ChecksumMismatchError(expected_checksum, actual)

    tag, body = payload[0], memoryview(payload)[1:]
    try:
        if tag == MessageType.ACQUIRE_REQUEST:
            return _decode_request(body)
        if tag == MessageType.ACQUIRE_RESPONSE:
            return _decode_response(body)
    except struct.error as e:
        raise MalformedFrameError(f"Truncated message body: {e}") from e
    raise MalformedFrameError(f"Unknown message type tag {tag:#04x}")


def _decode_request(body: memoryview) -> AcquireRequest:
    correlation_id, key_len = _REQUEST_PREFIX.unpack_from(body)
    offset = _REQUEST_PREFIX.size
    if key_len == 0:
        raise MalformedFrameError("Request key is empty")
    key = bytes(body[offset:offset + key_len])
    if len(key) != key_len:
        raise MalformedFrameError("Request key is truncated")
    offset += key_len
    (amount,) = _U64.unpack_from(body, offset)
    offset += _U64.size
    if offset != len(body):
        raise MalformedFrameError(f"{len(body) - offset} trailing bytes after request")
    return AcquireRequest(correlation_id=correlation_id, key=key, amount=amount)


def _decode_response(body: memoryview) -> AcquireResponse:
    correlation_id, raw_outcome = _RESPONSE_PREFIX.unpack_from(body)
    offset = _RESPONSE_PREFIX.size
    try:
        outcome = Outcome(raw_outcome)
    except ValueError:
        raise MalformedFrameError(f"Unknown outcome tag {raw_outcome}") from None

    retry_after_ms = 0
    error_kind = None
    if outcome == Outcome.DENIED:
        (retry_after_ms,) = _U64.unpack_from(body, offset)
        offset += _U64.size
    elif outcome == Outcome.ERROR:
        (error_kind,) = _U8.unpack_from(body, offset)
        offset += _U8.size
    if offset != len(body):
        raise MalformedFrameError(f"{len(body) - offset} trailing bytes after response")
    return AcquireResponse(
        correlation_id=correlation_id,
        outcome=outcome,
        retry_after_ms=retry_after_ms,
        error_kind=error_kind,
    )


def decode_frame(frame: bytes, max_frame_size: Optional[int] = None) -> Message:
    """Decode exactly one complete frame."""
    limit = _resolve_limit(max_frame_size)
    length, expected = parse_header(frame, limit)
    payload = frame[HEADER_SIZE:]
    if len(payload) != length:
        raise MalformedFrameError(
            f"Frame declares {length} payload bytes, got {len(payload)}"
        )
    return decode_payload(payload, expected)


def _resolve_limit(max_frame_size: Optional[int]) -> int:
    limit = max_frame_size if max_frame_size is not None else settings.max_frame_size
    if limit < HEADER_SIZE:
        raise ConfigurationError(f"max_frame_size must be at least {HEADER_SIZE} bytes")
    return limit


class FrameDecoder:
    """Incremental decoder for a byte stream split at arbitrary points.

    Once a feed raises, the decoder is desynchronized and must be discarded
    along with its connection.
    """

    def __init__(self, max_frame_size: Optional[int] = None):
        self.max_frame_size = _resolve_limit(max_frame_size)
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> List[Message]:
        """Append ``data`` and return every message completed by it."""
        self._buffer += data
        messages: List[Message] = []

        while len(self._buffer) >= HEADER_SIZE:
            # The length guard runs before waiting for the payload.
            length, expected = parse_header(self._buffer[:HEADER_SIZE], self.max_frame_size)
            total_size = HEADER_SIZE + length
            if len(self._buffer) < total_size:
                break
            payload = bytes(self._buffer[HEADER_SIZE:total_size])
            del self._buffer[:total_size]
            messages.append(decode_payload(payload, expected))

        return messages


async def read_frame(
    reader: asyncio.StreamReader,
    max_frame_size: Optional[int] = None,
) -> Optional[Message]:
    """Read one frame from a stream.

    Returns:
        The decoded message, or None on a clean end of stream between frames

    Raises:
        asyncio.IncompleteReadError: If the stream ends inside a frame
        ProtocolError: If the frame is oversized, corrupt or malformed
    """
    limit = _resolve_limit(max_frame_size)
    try:
        header = await reader.readexactly(HEADER_SIZE)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise
    length, expected = parse_header(header, limit)
    payload = await reader.readexactly(length)
    return decode_payload(payload, expected)
