"""Storage capability shared by every backend.

Callers depend on this protocol, not on concrete storage classes, so the
in-memory and networked backends (or any other store with the same
atomicity guarantees) are interchangeable.
"""

from typing import Optional, Protocol, Union, runtime_checkable

from tokenbucket.models import AcquireResult

BucketKey = Union[bytes, str]

# Wire limit: key length is a u16.
MAX_KEY_LENGTH = 0xFFFF


def normalize_key(key: BucketKey) -> bytes:
    """Return ``key`` as bytes, validating it is non-empty and fits the wire.

    Args:
        key: Bucket identifier; ``str`` keys are UTF-8 encoded

    Returns:
        The key as bytes

    Raises:
        ValueError: If the key is empty or longer than 65535 bytes
        TypeError: If the key is neither bytes nor str
    """
    if isinstance(key, str):
        key = key.encode("utf-8")
    elif isinstance(key, (bytearray, memoryview)):
        key = bytes(key)
    elif not isinstance(key, bytes):
        raise TypeError(f"bucket key must be bytes or str, got {type(key).__name__}")
    if not key:
        raise ValueError("bucket key must not be empty")
    if len(key) > MAX_KEY_LENGTH:
        raise ValueError(f"bucket key exceeds {MAX_KEY_LENGTH} bytes")
    return key


@runtime_checkable
class Storage(Protocol):
    """Acquire tokens from the bucket named ``key``.

    Operations on distinct keys never interfere. Concurrent operations on the
    same key are linearizable: no two acquires jointly overdraw the bucket.
    """

    async def try_acquire(
        self,
        key: BucketKey,
        amount: int = 1,
        now: Optional[float] = None,
    ) -> AcquireResult:
        """Try to take ``amount`` tokens.

        Args:
            key: Bucket identifier
            amount: Tokens requested
            now: Timestamp to evaluate at; defaults to the backend's clock

        Returns:
            Granted or denied AcquireResult

        Raises:
            StorageError: InvalidAmountError, UnknownKeyError or
                StorageUnavailableError
        """
        ...
