"""Networked storage: one authoritative server, many clients.

Requests and responses travel as length-prefixed, CRC32-checked frames
over TCP.
"""

from tokenbucket.distributed.client import DistributedStorage
from tokenbucket.distributed.codec import (
    HEADER_SIZE,
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
)
from tokenbucket.distributed.retry import RetryPolicy, with_retry
from tokenbucket.distributed.server import ConnectionState, DistributedServer

__all__ = [
    "DistributedStorage",
    "DistributedServer",
    "ConnectionState",
    "HEADER_SIZE",
    "FrameDecoder",
    "decode_frame",
    "encode_frame",
    "read_frame",
    "AcquireRequest",
    "AcquireResponse",
    "MessageType",
    "Outcome",
    "RetryPolicy",
    "with_retry",
]
