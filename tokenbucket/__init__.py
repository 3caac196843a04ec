"""Token bucket admission control.

Decides whether a request may proceed now, based on a continuously
refilling token pool per key. Bucket state lives in a pluggable storage:
in-process (``InMemoryStorage``) or on a shared server reached over TCP
(``DistributedStorage``).
"""

from tokenbucket.bucket import Bucket
from tokenbucket.core.clock import Clock, ManualClock, MonotonicClock
from tokenbucket.exceptions import (
    ChecksumMismatchError,
    ConfigurationError,
    FrameTooLargeError,
    InvalidAmountError,
    MalformedFrameError,
    ProtocolError,
    StorageError,
    StorageUnavailableError,
    TokenBucketError,
    UnknownKeyError,
)
from tokenbucket.limiter import RateLimiter
from tokenbucket.models import AcquireResult, BucketSnapshot, ErrorKind
from tokenbucket.storage import InMemoryStorage, Storage

__version__ = "0.1.0"

__all__ = [
    "Bucket",
    "Clock",
    "ManualClock",
    "MonotonicClock",
    "AcquireResult",
    "BucketSnapshot",
    "ErrorKind",
    "Storage",
    "InMemoryStorage",
    "RateLimiter",
    "TokenBucketError",
    "ConfigurationError",
    "StorageError",
    "InvalidAmountError",
    "UnknownKeyError",
    "StorageUnavailableError",
    "ProtocolError",
    "FrameTooLargeError",
    "ChecksumMismatchError",
    "MalformedFrameError",
]
