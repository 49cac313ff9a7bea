"""
Retry utilities for Kubernetes API calls.

Provides decorators to handle transient failures with exponential backoff
and to re-run read-modify-write sequences that lost an optimistic
concurrency race.
"""
import asyncio
import functools
from typing import Callable, TypeVar, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_none,
)

from memcached_operator.config.logging import get_logger
from memcached_operator.exceptions import ConflictError, TransientAPIError

logger = get_logger(__name__)

T = TypeVar('T')

# HTTP status codes that are retryable
RETRYABLE_STATUS_CODES = frozenset({
    408,  # Request Timeout
    429,  # Too Many Requests (rate limiting)
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
})


def is_retryable_k8s_error(exception: Exception) -> bool:
    """
    Determine if an exception should trigger an in-call retry.

    Only TransientAPIError is retryable; conflicts and validation errors
    need a fresh read or a spec change instead.
    """
    return isinstance(exception, TransientAPIError)


def backoff_delay(attempt: int, initial_delay: float, max_delay: float, exponential_base: float = 2.0) -> float:
    """Capped exponential backoff delay for a zero-based attempt number."""
    return min(initial_delay * (exponential_base ** attempt), max_delay)


def retry_on_k8s_error(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
) -> Callable:
    """
    Decorator to retry Kubernetes API calls with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay between retries in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        exponential_base: Base for exponential backoff calculation (default: 2.0)
        retry_on: Additional exception types to retry on (default: None)

    Example:
        @retry_on_k8s_error(max_retries=5, initial_delay=2.0)
        async def read_statefulset(name: str):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 0:
                        logger.info(
                            "k8s_api_call_succeeded_after_retry",
                            function=func.__name__,
                            attempt=attempt + 1,
                            max_retries=max_retries,
                        )

                    return result

                except Exception as e:
                    should_retry = is_retryable_k8s_error(e)
                    if retry_on and isinstance(e, retry_on):
                        should_retry = True

                    if attempt >= max_retries or not should_retry:
                        if should_retry:
                            logger.error(
                                "k8s_api_call_failed_max_retries",
                                function=func.__name__,
                                attempt=attempt + 1,
                                max_retries=max_retries,
                                error_type=type(e).__name__,
                                error=str(e),
                            )
                        raise

                    delay = backoff_delay(attempt, initial_delay, max_delay, exponential_base)

                    logger.warning(
                        "k8s_api_call_failed_retrying",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay_seconds=delay,
                        error_type=type(e).__name__,
                        error=str(e),
                        status_code=getattr(e, "status", None),
                    )

                    await asyncio.sleep(delay)

            raise AssertionError("unreachable")

        return wrapper
    return decorator


async def retry_on_conflict(
    func: Callable[..., T],
    *args,
    attempts: int = 5,
    **kwargs
) -> T:
    """
    Re-run a read-modify-write callable immediately when it hits a conflict.

    The callable must re-read the object itself on every invocation.

    Example:
        await retry_on_conflict(self._write_status, namespace, name, status)
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(ConflictError),
        stop=stop_after_attempt(attempts),
        wait=wait_none(),
        reraise=True,
    ):
        with attempt:
            try:
                return await func(*args, **kwargs)
            except ConflictError as e:
                logger.info(
                    "write_conflict_refetching",
                    function=getattr(func, "__name__", repr(func)),
                    attempt=attempt.retry_state.attempt_number,
                    kind=e.kind,
                    name=e.name,
                )
                raise
