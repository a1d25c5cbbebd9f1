"""
Exponential backoff for provider calls.

``retry_async`` re-runs an awaitable factory while its failures look
transient. Classified ``OAuthError`` instances decide for themselves through
their ``retryable`` flag; other exceptions fall back to type and message
heuristics.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Type

import httpx
import structlog

from services.oauth_hub.exceptions import NotFoundError, OAuthError, ServiceError

logger = structlog.get_logger(__name__)

TRANSIENT_MESSAGE_MARKERS = (
    "connection",
    "timeout",
    "timed out",
    "network",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "too many requests",
    "temporar",
)


class RetryError(Exception):
    """Every attempt failed with a transient error."""

    def __init__(self, message: str, attempts: int, last_exception: Exception):
        self.message = message
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"{message} (after {attempts} attempts): {last_exception}")


def is_transient_error(exception: Exception) -> bool:
    if isinstance(exception, OAuthError):
        return exception.retryable
    if isinstance(exception, NotFoundError):
        return False
    if isinstance(exception, (httpx.TransportError, ServiceError)):
        return True
    message = str(exception).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


def compute_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
) -> float:
    """Delay before retry number ``attempt`` (zero based), without jitter."""
    return min(base_delay * (exponential_base**attempt), max_delay)


def _matches(exc: Exception, types: Optional[Sequence[Type[Exception]]]) -> bool:
    return bool(types) and isinstance(exc, tuple(types))


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retry_exceptions: Optional[List[Type[Exception]]] = None,
    ignore_exceptions: Optional[List[Type[Exception]]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Await ``func()`` until it succeeds or ``max_attempts`` is used up.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total attempts including the first
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor between consecutive delays
        jitter: Scale each delay by a random factor in [0.5, 1.0]
        retry_exceptions: Retry only these types instead of using
            ``is_transient_error``
        ignore_exceptions: Types that are re-raised without retrying
        sleep: Awaitable used to wait between attempts (injected in tests)

    Raises:
        RetryError: Every attempt failed with a retryable error
        Exception: The first non-retryable error, unchanged
    """
    attempt = 0
    while True:
        try:
            result = await func()
        except Exception as e:
            if _matches(e, ignore_exceptions):
                raise
            retryable = (
                _matches(e, retry_exceptions)
                if retry_exceptions
                else is_transient_error(e)
            )
            if not retryable:
                logger.info("retry_not_attempted", error_type=type(e).__name__)
                raise

            attempt += 1
            if attempt >= max_attempts:
                raise RetryError(
                    f"Function failed after {max_attempts} attempts", max_attempts, e
                ) from e

            delay = compute_backoff_delay(
                attempt - 1, base_delay, max_delay, exponential_base
            )
            if jitter:
                delay *= 0.5 + random.random() * 0.5
            logger.warning(
                "retry_backoff",
                attempt=attempt,
                max_attempts=max_attempts,
                error_type=type(e).__name__,
                delay_seconds=round(delay, 2),
            )
            await sleep(delay)
            continue

        if attempt:
            logger.info("retry_recovered", attempts=attempt + 1)
        return result
