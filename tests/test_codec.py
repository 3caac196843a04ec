"""Tests for the frame codec of the distributed protocol."""

import asyncio
import struct
import zlib

import pytest

from tokenbucket.distributed.codec import (
    HEADER_SIZE,
    U64_MAX,
    FrameDecoder,
    decode_frame,
    encode_frame,
    read_frame,
)
from tokenbucket.distributed.messages import (
    AcquireRequest,
    AcquireResponse,
    MessageType,
    Outcome,
    seconds_to_millis,
)
from tokenbucket.exceptions import (
    ChecksumMismatchError,
    ConfigurationError,
    FrameTooLargeError,
    MalformedFrameError,
)
from tokenbucket.models import AcquireResult, ErrorKind

LIMIT = 128 * 1024


def frame_for(payload: bytes) -> bytes:
    """Wrap an arbitrary payload in a header with a correct checksum."""
    return struct.pack(">II", len(payload), zlib.crc32(payload)) + payload


class TestRoundTrip:
    """Encode then decode gives back the same message."""

    @pytest.mark.parametrize("message", [
        AcquireRequest(correlation_id=0, key=b"k", amount=0),
        AcquireRequest(correlation_id=U64_MAX, key=b"user:42", amount=U64_MAX),
        AcquireRequest(correlation_id=7, key="ключ".encode("utf-8"), amount=3),
        AcquireResponse(correlation_id=1, outcome=Outcome.GRANTED),
        AcquireResponse(correlation_id=2, outcome=Outcome.DENIED, retry_after_ms=0),
        AcquireResponse(correlation_id=3, outcome=Outcome.DENIED, retry_after_ms=U64_MAX),
        AcquireResponse(correlation_id=4, outcome=Outcome.ERROR, error_kind=ErrorKind.UNKNOWN_KEY),
    ])
    def test_round_trip(self, message):
        assert decode_frame(encode_frame(message), LIMIT) == message

    def test_maximum_length_key(self):
        message = AcquireRequest(correlation_id=9, key=b"x" * 0xFFFF, amount=1)
        frame = encode_frame(message)
        assert len(frame) == HEADER_SIZE + 1 + 8 + 2 + 0xFFFF + 8
        assert decode_frame(frame, LIMIT) == message


class TestLayout:
    """Frames are bit-exact on the wire."""

    def test_request_layout(self):
        frame = encode_frame(AcquireRequest(correlation_id=0x0102, key=b"k", amount=5))
        length, crc = struct.unpack(">II", frame[:8])

        assert length == 20
        assert len(frame) == 28
        assert crc == zlib.crc32(frame[8:])
        assert frame[8] == MessageType.ACQUIRE_REQUEST == 0x01
        assert frame[9:17] == b"\x00\x00\x00\x00\x00\x00\x01\x02"
        assert frame[17:19] == b"\x00\x01"
        assert frame[19:20] == b"k"
        assert frame[20:28] == b"\x00" * 7 + b"\x05"

    @pytest.mark.parametrize("response,length,tail", [
        (AcquireResponse(1, Outcome.GRANTED), 10, b"\x00"),
        (AcquireResponse(1, Outcome.DENIED, retry_after_ms=1000), 18,
         b"\x01" + (1000).to_bytes(8, "big")),
        (AcquireResponse(1, Outcome.ERROR, error_kind=ErrorKind.INVALID_AMOUNT), 11, b"\x02\x01"),
    ])
    def test_response_layout(self, response, length, tail):
        frame = encode_frame(response)
        assert struct.unpack(">I", frame[:4])[0] == length
        assert frame[8] == MessageType.ACQUIRE_RESPONSE == 0x02
        assert frame[9:17] == (1).to_bytes(8, "big")
        assert frame[17:] == tail


class TestCorruption:
    """Every corruption is detected and reported as a protocol error."""

    def test_single_bit_flip_detected(self):
        frame = encode_frame(AcquireRequest(correlation_id=5, key=b"abc", amount=2))
        # Flip every bit of the checksum field and the payload.
        for index in range(4, len(frame)):
            for bit in range(8):
                corrupted = bytearray(frame)
                corrupted[index] ^= 1 << bit
                with pytest.raises(ChecksumMismatchError):
                    decode_frame(bytes(corrupted), LIMIT)

    def test_oversized_header_rejected_before_payload(self):
        decoder = FrameDecoder(max_frame_size=1024)
        header = struct.pack(">II", 1_000_000, 0)
        with pytest.raises(FrameTooLargeError) as exc_info:
            decoder.feed(header)
        assert exc_info.value.length == 1_000_000

    def test_frame_exactly_at_limit_accepted(self):
        frame = encode_frame(AcquireRequest(correlation_id=1, key=b"k", amount=1))
        assert decode_frame(frame, len(frame)).key == b"k"
        with pytest.raises(FrameTooLargeError):
            decode_frame(frame, len(frame) - 1)

    @pytest.mark.parametrize("payload", [
        pytest.param(b"", id="zero-length"),
        pytest.param(b"\x07" + b"\x00" * 10, id="unknown-tag"),
        pytest.param(b"\x01\x00\x00\x00\x00\x00", id="truncated-request"),
        pytest.param(b"\x01" + struct.pack(">QH", 1, 0) + struct.pack(">Q", 1), id="empty-key"),
        pytest.param(b"\x01" + struct.pack(">QH", 1, 5) + b"ab", id="short-key"),
        pytest.param(
            b"\x01" + struct.pack(">QH", 1, 1) + b"k" + struct.pack(">Q", 1) + b"!",
            id="trailing-bytes",
        ),
        pytest.param(b"\x02" + struct.pack(">QB", 1, 9), id="unknown-outcome"),
        pytest.param(b"\x02" + struct.pack(">QB", 1, 1) + b"\x00\x01", id="truncated-denied"),
        pytest.param(b"\x02" + struct.pack(">QB", 1, 0) + b"\x00", id="trailing-granted"),
    ])
    def test_malformed_payload(self, payload):
        with pytest.raises(MalformedFrameError):
            decode_frame(frame_for(payload), LIMIT)

    def test_declared_length_mismatch(self):
        frame = encode_frame(AcquireResponse(1, Outcome.GRANTED))
        with pytest.raises(MalformedFrameError):
            decode_frame(frame + b"\x00", LIMIT)

    def test_short_header(self):
        with pytest.raises(MalformedFrameError):
            decode_frame(b"\x00\x00\x00", LIMIT)


class TestFrameDecoder:
    """Incremental decoding of split and coalesced frames."""

    def test_byte_by_byte(self):
        message = AcquireRequest(correlation_id=11, key=b"split", amount=4)
        frame = encode_frame(message)
        decoder = FrameDecoder(LIMIT)

        decoded = []
        for i in range(len(frame)):
            decoded.extend(decoder.feed(frame[i:i + 1]))
            if i < len(frame) - 1:
                assert decoded == []

        assert decoded == [message]
        assert decoder.buffered == 0

    def test_coalesced_frames(self):
        messages = [
            AcquireResponse(n, Outcome.DENIED, retry_after_ms=n * 10) for n in range(5)
        ]
        stream = b"".join(encode_frame(m) for m in messages)
        decoder = FrameDecoder(LIMIT)

        assert decoder.feed(stream[:-3]) == messages[:4]
        assert decoder.buffered == len(encode_frame(messages[4])) - 3
        assert decoder.feed(stream[-3:]) == messages[4:]

    def test_limit_below_header_rejected(self):
        with pytest.raises(ConfigurationError):
            FrameDecoder(max_frame_size=4)


class TestReadFrame:
    """Reading frames from an asyncio stream."""

    @pytest.mark.asyncio
    async def test_reads_frames_then_eof(self):
        first = AcquireRequest(correlation_id=1, key=b"a", amount=1)
        second = AcquireRequest(correlation_id=2, key=b"b", amount=2)
        reader = asyncio.StreamReader()
        reader.feed_data(encode_frame(first) + encode_frame(second))
        reader.feed_eof()

        assert await read_frame(reader, LIMIT) == first
        assert await read_frame(reader, LIMIT) == second
        assert await read_frame(reader, LIMIT) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cut", [3, HEADER_SIZE + 4])
    async def test_eof_inside_frame(self, cut):
        frame = encode_frame(AcquireRequest(correlation_id=1, key=b"key", amount=1))
        reader = asyncio.StreamReader()
        reader.feed_data(frame[:cut])
        reader.feed_eof()

        with pytest.raises(asyncio.IncompleteReadError):
            await read_frame(reader, LIMIT)

    @pytest.mark.asyncio
    async def test_oversized_frame(self):
        reader = asyncio.StreamReader()
        reader.feed_data(struct.pack(">II", 10_000, 0))

        with pytest.raises(FrameTooLargeError):
            await read_frame(reader, 1024)


class TestEncodeValidation:
    @pytest.mark.parametrize("message", [
        AcquireRequest(correlation_id=-1, key=b"k", amount=1),
        AcquireRequest(correlation_id=1, key=b"k", amount=U64_MAX + 1),
        AcquireRequest(correlation_id=1, key=b"", amount=1),
        AcquireRequest(correlation_id=1, key=b"x" * 0x10000, amount=1),
        AcquireResponse(correlation_id=1, outcome=Outcome.ERROR),
        AcquireResponse(correlation_id=1, outcome=Outcome.DENIED, retry_after_ms=-5),
    ])
    def test_unrepresentable_fields(self, message):
        with pytest.raises(ValueError):
            encode_frame(message)

    def test_unknown_message_type(self):
        with pytest.raises(TypeError):
            encode_frame("not a message")


class TestMessages:
    @pytest.mark.parametrize("seconds,millis", [
        (0.0, 0),
        (1.0, 1000),
        (0.0005, 1),
        (0.0011, 2),
        (5e-10, 1),
        (1e-9, 1),
        (999.0, 999000),
        (-1.0, 0),
        (1e30, U64_MAX),
    ])
    def test_seconds_to_millis_rounds_up(self, seconds, millis):
        assert seconds_to_millis(seconds) == millis

    def test_response_from_denied_result(self):
        response = AcquireResponse.from_result(3, AcquireResult.denied(0.25))
        assert response.outcome == Outcome.DENIED
        assert response.retry_after_ms == 250
        assert response.to_result() == AcquireResult.denied(0.25)

    def test_response_from_granted_result(self):
        response = AcquireResponse.from_result(3, AcquireResult.granted())
        assert response.to_result().allowed is True

    def test_error_response_has_no_result(self):
        with pytest.raises(ValueError):
            AcquireResponse.error(3, ErrorKind.INTERNAL).to_result()
