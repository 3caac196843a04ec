"""Retry mechanism with exponential backoff for the distributed client.

This module provides a configurable retry policy and decorator that implements
exponential backoff for transient connection failures and timeouts.
"""

import asyncio
import functools
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from tokenbucket.core.config import settings
from tokenbucket.core.logging import get_logger, get_log_context
from tokenbucket.exceptions import ConfigurationError, ProtocolError

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Retry attempts after the first one (default: 3)
        base_delay: Initial delay between retries in seconds (default: 0.05)
        max_delay: Maximum delay between retries in seconds (default: 1.0)
        exponential_base: Base for exponential calculation (default: 2.0)
        retryable_exceptions: Tuple of exception types that trigger a retry

    Example:
        >>> policy = RetryPolicy(max_retries=5, base_delay=0.1)
        >>> delay = policy.calculate_delay(attempt=2)  # Returns 0.4
    """

    max_retries: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    exponential_base: float = 2.0
    retryable_exceptions: Tuple[Type[BaseException], ...] = (
        ConnectionError,
        asyncio.TimeoutError,
        asyncio.IncompleteReadError,
        ProtocolError,
        OSError,
    )

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must not be negative")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must not be negative")
        if self.exponential_base < 1:
            raise ConfigurationError("exponential_base must be at least 1")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        """Build a policy from the global settings."""
        return cls(
            max_retries=settings.retry_count,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            exponential_base=settings.retry_exponential_base,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Uses exponential backoff: delay = min(base_delay * (exponential_base ^ attempt), max_delay)

        Args:
            attempt: The current retry attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)

    def is_retryable(self, exception: BaseException) -> bool:
        """Check if an exception should trigger a retry.

        Args:
            exception: The exception to check

        Returns:
            True if the exception should trigger a retry
        """
        return isinstance(exception, self.retryable_exceptions)


def with_retry(policy: Optional[RetryPolicy] = None) -> Callable[[F], F]:
    """Decorator that adds retry logic with exponential backoff.

    This decorator wraps async functions and retries them on the policy's
    retryable exceptions. The last exception is re-raised once retries are
    exhausted; anything else propagates immediately.

    Args:
        policy: RetryPolicy configuration. Uses settings if not provided.

    Returns:
        Decorated function with retry logic

    Example:
        >>> @with_retry(policy=RetryPolicy(max_retries=3))
        ... async def send(self, request):
        ...     return await self._send_once(request)
    """
    retry_policy = policy or RetryPolicy.from_settings()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(retry_policy.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not retry_policy.is_retryable(e):
                        logger.debug(
                            f"Non-retryable exception in {func.__name__}: {type(e).__name__}: {e}"
                        )
                        raise

                    if attempt >= retry_policy.max_retries:
                        logger.warning(
                            f"Max retries ({retry_policy.max_retries}) exceeded for {func.__name__}: "
                            f"{type(e).__name__}: {e}",
                            extra=get_log_context(attempt=attempt + 1),
                        )
                        raise

                    delay = retry_policy.calculate_delay(attempt)
                    logger.warning(
                        f"Retry {attempt + 1}/{retry_policy.max_retries} for {func.__name__} "
                        f"after {type(e).__name__}: {e}. Waiting {delay:.2f}s...",
                        extra=get_log_context(attempt=attempt + 1),
                    )
                    await asyncio.sleep(delay)

        return wrapper  # type: ignore

    return decorator
