"""Token bucket algorithm.

A bucket holds up to ``capacity`` tokens and refills continuously at
``refill_rate`` tokens per second. The bucket itself is not thread-safe;
its owner serializes access (see ``tokenbucket.storage.in_memory``).
"""

import math
from typing import Optional

from tokenbucket.exceptions import ConfigurationError, InvalidAmountError
from tokenbucket.models import AcquireResult, BucketSnapshot


class Bucket:
    """Continuously refilling token bucket.

    Refill and acquire are applied together in one call, so an owner that
    holds a lock around each call never exposes an intermediate state.

    Attributes:
        capacity: Maximum tokens held
        refill_rate: Tokens added per second
        tokens: Available tokens as of ``last_refill_at`` (fractional)
        last_refill_at: Timestamp ``tokens`` was last brought up to date
    """

    __slots__ = ("capacity", "refill_rate", "tokens", "last_refill_at")

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        now: float,
        initial_tokens: Optional[float] = None,
    ):
        """Create a bucket, full unless ``initial_tokens`` is given.

        Args:
            capacity: Maximum tokens held, positive
            refill_rate: Tokens per second, positive
            now: Creation timestamp
            initial_tokens: Starting fill, between 0 and capacity

        Raises:
            ConfigurationError: If any value is out of range
        """
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
            raise ConfigurationError(f"capacity must be a positive integer, got {capacity!r}")
        if not refill_rate > 0 or math.isinf(refill_rate):
            raise ConfigurationError(f"refill_rate must be positive, got {refill_rate!r}")
        if initial_tokens is None:
            initial_tokens = float(capacity)
        elif not 0 <= initial_tokens <= capacity:
            raise ConfigurationError(
                f"initial_tokens must be between 0 and {capacity}, got {initial_tokens!r}"
            )

        self.capacity = capacity
        self.refill_rate = float(refill_rate)
        self.tokens = float(initial_tokens)
        self.last_refill_at = now

    def __repr__(self) -> str:
        return (
            f"Bucket(capacity={self.capacity}, refill_rate={self.refill_rate}, "
            f"tokens={self.tokens:.3f}, last_refill_at={self.last_refill_at})"
        )

    def _available_at(self, now: float) -> float:
        # A clock that went backwards adds nothing.
        elapsed = max(0.0, now - self.last_refill_at)
        return min(float(self.capacity), self.tokens + elapsed * self.refill_rate)

    def _validate_amount(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise InvalidAmountError(f"amount must be a positive integer, got {amount!r}")
        if amount > self.capacity:
            raise InvalidAmountError(
                f"amount {amount} exceeds bucket capacity {self.capacity}"
            )

    def _commit(self, tokens: float, now: float) -> None:
        self.tokens = tokens
        # Never move backwards, or an already credited interval would be
        # credited a second time.
        self.last_refill_at = max(self.last_refill_at, now)

    def try_acquire(self, now: float, amount: int = 1) -> AcquireResult:
        """Refill up to ``now`` and take ``amount`` tokens if available.

        On denial the state is left untouched and the result carries the
        minimum wait until ``amount`` tokens would be available.

        Args:
            now: Current timestamp in seconds
            amount: Tokens requested, 1..capacity

        Returns:
            Granted or denied AcquireResult

        Raises:
            InvalidAmountError: If amount is zero or exceeds capacity
        """
        self._validate_amount(amount)
        available = self._available_at(now)
        if available >= amount:
            self._commit(available - amount, now)
            return AcquireResult.granted()
        return AcquireResult.denied((amount - available) / self.refill_rate)

    def acquire_up_to(self, now: float, amount: int) -> int:
        """Take ``amount`` tokens, or every whole token available if fewer.

        Never denies; returns how many tokens were granted (possibly 0).
        ``amount`` may exceed capacity.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise InvalidAmountError(f"amount must be a positive integer, got {amount!r}")
        available = self._available_at(now)
        granted = min(amount, int(math.floor(available)))
        if granted:
            self._commit(available - granted, now)
        return granted

    def peek(self, now: float) -> BucketSnapshot:
        """Return the token count as of ``now`` without mutating state."""
        return BucketSnapshot(
            capacity=self.capacity,
            refill_rate=self.refill_rate,
            tokens=self._available_at(now),
            observed_at=now,
        )
