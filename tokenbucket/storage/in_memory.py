"""In-process storage backend.

Holds one exclusively owned Bucket per key, each guarded by its own lock.
Suitable for single-process deployments and as the authoritative state
behind the distributed server.
"""

import threading
from typing import Dict, Mapping, Optional

from pydantic import ValidationError

from tokenbucket.bucket import Bucket
from tokenbucket.core.clock import Clock, MonotonicClock
from tokenbucket.core.config import BucketConfig, settings
from tokenbucket.core.logging import get_logger
from tokenbucket.exceptions import ConfigurationError, UnknownKeyError
from tokenbucket.models import AcquireResult, BucketSnapshot
from tokenbucket.storage.base import BucketKey, normalize_key

logger = get_logger(__name__)


class _GuardedBucket:
    """A bucket and the lock that serializes every access to it."""

    __slots__ = ("bucket", "lock")

    def __init__(self, bucket: Bucket):
        self.bucket = bucket
        self.lock = threading.Lock()


class InMemoryStorage:
    """Thread-safe map from key to lock-guarded Bucket.

    Unknown-key policy: with ``auto_provision`` on, a key seen for the first
    time gets a full bucket configured from ``overrides[key]`` or the
    defaults. With it off, only keys listed in ``overrides`` exist and any
    other key raises UnknownKeyError.

    The registry lock is only held to look up or insert a key; the bucket lock
    only for one refill+acquire computation. Neither is held across I/O.
    """

    def __init__(
        self,
        capacity: Optional[int] = None,
        refill_rate: Optional[float] = None,
        clock: Optional[Clock] = None,
        auto_provision: Optional[bool] = None,
        overrides: Optional[Mapping[BucketKey, BucketConfig]] = None,
    ):
        """Initialize storage.

        Args:
            capacity: Default bucket capacity (settings.default_capacity)
            refill_rate: Default tokens per second (settings.default_refill_rate)
            clock: Time source used when callers pass no timestamp
            auto_provision: Create unknown keys on first use
                (settings.auto_provision_keys)
            overrides: Per-key capacity/rate (settings.bucket_overrides)

        Raises:
            ConfigurationError: If capacity or refill rate is out of range
        """
        self.capacity = capacity if capacity is not None else settings.default_capacity
        self.refill_rate = (
            refill_rate if refill_rate is not None else settings.default_refill_rate
        )
        try:
            self._default_config = BucketConfig(
                capacity=self.capacity, refill_rate=self.refill_rate
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid bucket defaults: {e}") from e

        self.auto_provision = (
            auto_provision if auto_provision is not None else settings.auto_provision_keys
        )
        raw_overrides = overrides if overrides is not None else settings.bucket_overrides
        self._overrides: Dict[bytes, BucketConfig] = {
            normalize_key(key): config for key, config in raw_overrides.items()
        }
        self._clock = clock or MonotonicClock()
        self._buckets: Dict[bytes, _GuardedBucket] = {}
        self._registry_lock = threading.Lock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def __len__(self) -> int:
        return len(self._buckets)

    def _resolve(self, key: bytes, now: float) -> _GuardedBucket:
        slot = self._buckets.get(key)
        if slot is not None:
            return slot

        with self._registry_lock:
            slot = self._buckets.get(key)
            if slot is not None:
                return slot

            config = self._overrides.get(key)
            if config is None:
                if not self.auto_provision:
                    raise UnknownKeyError(f"Unknown bucket key {key!r}", key=key)
                config = self._default_config

            slot = _GuardedBucket(Bucket(config.capacity, config.refill_rate, now))
            self._buckets[key] = slot
            logger.debug(
                f"Created bucket capacity={config.capacity} rate={config.refill_rate}",
                extra={"key": key.decode("utf-8", "replace")},
            )
            return slot

    def acquire(
        self,
        key: BucketKey,
        amount: int = 1,
        now: Optional[float] = None,
    ) -> AcquireResult:
        """Synchronous acquire; safe to call from any thread.

        Raises:
            InvalidAmountError: If amount is zero or exceeds capacity
            UnknownKeyError: If the key is unknown and auto-provisioning is off
        """
        key = normalize_key(key)
        if now is None:
            now = self._clock.now()
        slot = self._resolve(key, now)
        with slot.lock:
            return slot.bucket.try_acquire(now, amount)

    async def try_acquire(
        self,
        key: BucketKey,
        amount: int = 1,
        now: Optional[float] = None,
    ) -> AcquireResult:
        """Storage capability entry point; never suspends."""
        return self.acquire(key, amount, now)

    def acquire_up_to(
        self,
        key: BucketKey,
        amount: int,
        now: Optional[float] = None,
    ) -> int:
        """Take ``amount`` tokens or all whole tokens available; returns the count."""
        key = normalize_key(key)
        if now is None:
            now = self._clock.now()
        slot = self._resolve(key, now)
        with slot.lock:
            return slot.bucket.acquire_up_to(now, amount)

    def snapshot(self, key: BucketKey, now: Optional[float] = None) -> BucketSnapshot:
        """Observe a bucket without consuming tokens.

        Observing a key that does not exist yet provisions it (full), so the
        result matches what the next acquire would see.
        """
        key = normalize_key(key)
        if now is None:
            now = self._clock.now()
        slot = self._resolve(key, now)
        with slot.lock:
            return slot.bucket.peek(now)
