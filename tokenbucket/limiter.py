"""Rate limiter facade over a storage backend."""

from typing import Optional

from tokenbucket.core.config import settings
from tokenbucket.core.logging import get_logger
from tokenbucket.exceptions import ConfigurationError
from tokenbucket.models import AcquireResult
from tokenbucket.storage.base import BucketKey, Storage
from tokenbucket.storage.in_memory import InMemoryStorage

logger = get_logger(__name__)


class RateLimiter:
    """Main rate limiter that selects appropriate backend.

    Uses the injected storage if given, otherwise builds the backend named by
    ``settings.storage_backend`` (``memory`` or ``distributed``).
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        backend: Optional[str] = None,
    ):
        """Initialize rate limiter with appropriate backend.

        Args:
            storage: Storage to use; takes precedence over ``backend``
            backend: Backend name (None = read from settings)
        """
        if storage is not None:
            self._storage: Storage = storage
            return

        backend = (backend or settings.storage_backend).lower()
        if backend == "distributed":
            from tokenbucket.distributed.client import DistributedStorage

            self._storage = DistributedStorage()
            logger.info(f"Using distributed storage backend at {self._storage.target}")
        elif backend == "memory":
            self._storage = InMemoryStorage()
            logger.debug("Using in-memory storage backend")
        else:
            raise ConfigurationError(f"Unknown storage backend {backend!r}")

    @property
    def storage(self) -> Storage:
        return self._storage

    async def try_acquire(
        self,
        key: BucketKey,
        amount: int = 1,
        now: Optional[float] = None,
    ) -> AcquireResult:
        """Try to acquire ``amount`` tokens for ``key``."""
        return await self._storage.try_acquire(key, amount, now)

    async def try_acquire_one(self, key: BucketKey) -> AcquireResult:
        """Try to acquire a single token for ``key``."""
        return await self._storage.try_acquire(key, 1)

    async def close(self) -> None:
        close = getattr(self._storage, "close", None)
        if close is not None:
            await close()
