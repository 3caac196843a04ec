"""Custom exceptions for tokenbucket.

Denied acquires are results, not exceptions. Everything here is either a
caller bug, a protocol fault, or a storage failure.
"""

from typing import Dict, Optional, Type

from tokenbucket.models import ErrorKind


class TokenBucketError(Exception):
    """Base class for all tokenbucket exceptions."""

    def __init__(self, message: str = "Token bucket error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(TokenBucketError, ValueError):
    """Raised at construction time for out-of-range configuration values."""


class StorageError(TokenBucketError):
    """Base class for errors returned by a storage backend.

    Subclasses that can travel over the wire define ``kind``.
    """
    kind: Optional[ErrorKind] = None

    @staticmethod
    def from_kind(kind: int, message: Optional[str] = None) -> "StorageError":
        """Rebuild the exception matching a wire error code.

        Args:
            kind: Error code from an ``Error`` acquire response
            message: Optional message override

        Returns:
            Instance of the matching StorageError subclass
        """
        try:
            error_kind = ErrorKind(kind)
        except ValueError:
            return RemoteStorageError(f"Server reported unknown error kind {kind}")
        error_cls = _ERRORS_BY_KIND[error_kind]
        return error_cls(message or f"Server rejected request: {error_kind.name.lower()}")


class InvalidAmountError(StorageError):
    """Raised when the amount is zero or exceeds the bucket capacity.

    A request that can never be satisfied is rejected, not queued. Never
    retried.
    """
    kind = ErrorKind.INVALID_AMOUNT


class UnknownKeyError(StorageError):
    """Raised for keys that are not configured when auto-provisioning is off."""
    kind = ErrorKind.UNKNOWN_KEY

    def __init__(self, message: str = "Unknown bucket key", key: Optional[bytes] = None):
        self.key = key
        super().__init__(message)


class RemoteStorageError(StorageError):
    """Raised when the server failed unexpectedly while handling a request."""
    kind = ErrorKind.INTERNAL


class StorageUnavailableError(StorageError):
    """Raised when the storage could not be reached after all retries.

    Terminal for the call; ``__cause__`` holds the last transient failure.
    """

    def __init__(self, message: str = "Storage unavailable", attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class ProtocolError(TokenBucketError):
    """Base class for wire protocol violations.

    The connection that produced one is considered desynchronized and is
    closed.
    """


class FrameTooLargeError(ProtocolError):
    """Raised when a frame header declares a length above the configured limit."""

    def __init__(self, length: int, limit: int):
        self.length = length
        self.limit = limit
        super().__init__(f"Frame length {length} exceeds limit of {limit} bytes")


class ChecksumMismatchError(ProtocolError):
    """Raised when the CRC32 over a frame payload does not match its header."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum does not match: header = {expected:#010x} computed = {actual:#010x}"
        )


class MalformedFrameError(ProtocolError):
    """Raised when a frame payload cannot be parsed as a message."""


_ERRORS_BY_KIND: Dict[ErrorKind, Type[StorageError]] = {
    ErrorKind.INVALID_AMOUNT: InvalidAmountError,
    ErrorKind.UNKNOWN_KEY: UnknownKeyError,
    ErrorKind.INTERNAL: RemoteStorageError,
}
