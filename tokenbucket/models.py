"""Token bucket data models.

This module contains dataclasses for acquire outcomes and bucket state.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


class ErrorKind(IntEnum):
    """Error codes carried in an ``Error`` acquire response."""
    INVALID_AMOUNT = 1
    UNKNOWN_KEY = 2
    INTERNAL = 3


@dataclass(frozen=True)
class AcquireResult:
    """Result of an acquire attempt.

    A denied result is a normal outcome, not an error. ``retry_after`` is the
    minimum number of seconds until the request could be granted.
    """
    allowed: bool
    retry_after: Optional[float] = None

    @classmethod
    def granted(cls) -> "AcquireResult":
        return cls(allowed=True)

    @classmethod
    def denied(cls, retry_after: float) -> "AcquireResult":
        return cls(allowed=False, retry_after=retry_after)


@dataclass(frozen=True)
class BucketSnapshot:
    """Point-in-time view of a bucket, as returned by ``peek``."""
    capacity: int
    refill_rate: float
    tokens: float
    observed_at: float
