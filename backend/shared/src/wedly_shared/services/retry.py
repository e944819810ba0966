"""Retry with exponential backoff for external calls.

An error is retried only when its normalized message, code or type contains
one of the configured signatures (case-insensitive). Attempts run strictly
one after another; the worst-case wait is bounded by
``max_attempts * max_delay``.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from wedly_shared.models.context import RequestContext
from wedly_shared.models.errors import describe_error
from wedly_shared.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Floor for any computed delay, so a zero or negative base delay still backs off
MIN_RETRY_DELAY = 0.05

DEFAULT_RETRYABLE_SIGNATURES: tuple[str, ...] = (
    "econnreset",
    "etimedout",
    "enotfound",
    "eai_again",
    "econnrefused",
    "timeout",
    "network",
    "temporary",
    "unavailable",
)

DATABASE_RETRYABLE_SIGNATURES: tuple[str, ...] = (
    "timeout",
    "connection",
    "network",
    "unavailable",
    "temporary",
    "econnreset",
    "etimedout",
    "throttl",
    "throughput",
)


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior (delays in seconds)."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_error_signatures: tuple[str, ...] = DEFAULT_RETRYABLE_SIGNATURES

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        delay = min(
            self.base_delay * self.backoff_multiplier ** (attempt - 1),
            self.max_delay,
        )
        return max(delay, MIN_RETRY_DELAY)

    def is_retryable(self, error: BaseException) -> bool:
        """Whether the error's message, code or type matches a signature."""
        haystacks = describe_error(error).fields()
        return any(
            signature.lower() in haystack
            for signature in self.retryable_error_signatures
            for haystack in haystacks
        )

    @property
    def worst_case_delay(self) -> float:
        """Upper bound on total time spent sleeping between attempts."""
        return self.max_attempts * max(self.max_delay, MIN_RETRY_DELAY)


DATABASE_RETRY_CONFIG = RetryConfig(
    max_attempts=2,
    base_delay=1.0,
    retryable_error_signatures=DATABASE_RETRYABLE_SIGNATURES,
)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    context: RequestContext | None = None,
) -> T:
    """Run an async operation, retrying transient failures with backoff.

    Args:
        operation: Zero-argument coroutine factory, invoked once per attempt
        config: Retry behavior; defaults to ``RetryConfig()``
        context: Request context for diagnostics

    Returns:
        The operation's result

    Raises:
        Exception: The last observed failure, unchanged, once the error is
            not retryable or attempts are exhausted
    """
    config = config or RetryConfig()
    request_id = context.request_id if context else None
    endpoint = context.endpoint if context else None

    attempt = 1
    while True:
        try:
            result = await operation()
        except Exception as e:
            retryable = config.is_retryable(e)
            if not retryable or attempt >= config.max_attempts:
                logger.error(
                    "Operation failed after %d/%d attempts (retryable=%s): %s",
                    attempt,
                    config.max_attempts,
                    retryable,
                    describe_error(e).message,
                    extra={"request_id": request_id, "endpoint": endpoint, "attempt": attempt},
                )
                raise

            delay = config.delay_for(attempt)
            logger.warning(
                "Operation failed on attempt %d/%d, retrying in %.2fs: %s",
                attempt,
                config.max_attempts,
                delay,
                describe_error(e).message,
                extra={"request_id": request_id, "endpoint": endpoint, "attempt": attempt},
            )
            await asyncio.sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            logger.info(
                "Operation succeeded on attempt %d/%d",
                attempt,
                config.max_attempts,
                extra={"request_id": request_id, "endpoint": endpoint, "attempt": attempt},
            )
        return result


async def with_database_retry(
    operation: Callable[[], Awaitable[T]],
    context: RequestContext | None = None,
) -> T:
    """Retry a store or gateway read at most once on connection-class failures."""
    return await with_retry(operation, DATABASE_RETRY_CONFIG, context)
