#!/usr/bin/env python3

"""
Retry utilities with exponential backoff for transient failures.

The Kubernetes client is synchronous, so blocking callables are run in a worker
thread to keep the monitor's event loop responsive while retrying.
"""

import asyncio
import logging
import random
from typing import TypeVar, Callable, Optional

import config
from metrics import record_retry, record_retries_exhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted"""

    pass


def backoff_delay(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Delay before the retry that follows the given (1-based) attempt"""
    delay = min(initial_delay * (exponential_base ** (attempt - 1)), max_delay)
    # Add jitter to prevent thundering herd
    if jitter:
        delay = delay * (0.5 + random.random())
    return delay


async def retry_with_backoff(
    func: Callable[..., T],
    *args,
    operation: Optional[str] = None,
    max_attempts: int = config.RETRY_MAX_ATTEMPTS,
    initial_delay: float = config.RETRY_INITIAL_DELAY,
    max_delay: float = config.RETRY_MAX_DELAY,
    exponential_base: float = 2.0,
    jitter: bool = True,
    exceptions: tuple = (Exception,),
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    **kwargs,
) -> T:
    """
    Retry a function with exponential backoff.

    Args:
        func: Function to retry (sync functions run in a worker thread)
        *args: Positional arguments to pass to func
        operation: Name used in logs and metrics, defaults to func.__name__
        max_attempts: Maximum number of attempts
        initial_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Whether to add random jitter to delay
        exceptions: Tuple of exceptions to catch and retry on
        retry_if: Predicate deciding whether a caught exception is transient;
            non-transient exceptions propagate immediately
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result of successful function call

    Raises:
        RetryExhaustedError: If all retry attempts are exhausted
        Exception: Any exception rejected by retry_if
    """
    name = operation or getattr(func, "__name__", "operation")
    last_exception = None

    for attempt in range(1, max_attempts + 1):
        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = await asyncio.to_thread(func, *args, **kwargs)

            if attempt > 1:
                logger.info(f"{name} succeeded on attempt {attempt}")

            return result

        except exceptions as e:
            if retry_if is not None and not retry_if(e):
                raise

            last_exception = e

            if attempt == max_attempts:
                logger.error(f"{name} failed after {max_attempts} attempts: {e}")
                record_retries_exhausted(name)
                break

            delay = backoff_delay(attempt, initial_delay, max_delay, exponential_base, jitter)
            record_retry(name, attempt)

            logger.warning(
                f"{name} failed on attempt {attempt}/{max_attempts}: {e}. "
                f"Retrying in {delay:.2f}s..."
            )

            await asyncio.sleep(delay)

    raise RetryExhaustedError(
        f"{name} failed after {max_attempts} attempts"
    ) from last_exception
