"""Retry logic with exponential backoff for transient host failures.

mount, umount and losetup can fail with EBUSY/EAGAIN while the kernel is
still settling a previous operation on the same device or mount point.
Those failures are raised as HostBusyError and retried here with bounded
backoff. Nothing else is retried inside the core: input defects fail fast,
and cloud client calls rely on the Azure SDK's own retry pipeline.

Usage:
    retry = retry_with_exponential_backoff(
        max_attempts=3, retryable_exceptions=(HostBusyError,)
    )
    device = retry(host.loop_attach)(backing_file)
"""

import functools
import logging
import random
import time
from typing import Any, Callable, TypeVar

from azfilevol.errors import HostBusyError
from azfilevol.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

# Type variable for generic function wrapping
F = TypeVar("F", bound=Callable[..., Any])


def retry_with_exponential_backoff(
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 5.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] = (HostBusyError,),
) -> Callable[[F], F]:
    """Decorator for retrying operations with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 0.5)
        max_delay: Maximum delay between retries in seconds (default: 5.0)
        jitter: Add random jitter of +/-25% to delays (default: True)
        retryable_exceptions: Exception types to retry (default: HostBusyError)

    Returns:
        Decorated function that will retry on transient failures
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay
            name = getattr(func, "__name__", "operation")

            for attempt in range(1, max_attempts + 1):
                try:
                    result = func(*args, **kwargs)
                    if attempt > 1:
                        logger.info(f"{name} succeeded on attempt {attempt}/{max_attempts}")
                    return result

                except retryable_exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(f"{name} failed after {max_attempts} attempts: {_safe_error_message(e)}")
                        raise

                    actual_delay = delay
                    if jitter:
                        jitter_amount = delay * 0.25
                        actual_delay = delay + random.uniform(-jitter_amount, jitter_amount)
                    actual_delay = min(actual_delay, max_delay)

                    logger.warning(
                        f"{name} failed on attempt {attempt}/{max_attempts}, "
                        f"retrying in {actual_delay:.2f}s: {_safe_error_message(e)}"
                    )
                    time.sleep(actual_delay)
                    delay *= 2

            raise RuntimeError(f"{name} exhausted retries without raising")

        return wrapper  # type: ignore

    return decorator


def _safe_error_message(exception: Exception) -> str:
    """Create a truncated, credential-free error message for logging."""
    error_str = LogSanitizer.sanitize(exception)
    if len(error_str) > 200:
        error_str = error_str[:200] + "..."
    return error_str


__all__ = ["retry_with_exponential_backoff"]
