"""
Retry utilities with exponential backoff and jitter.
"""
import logging
import random
import time
from functools import wraps
from typing import Any, Callable, TypeVar

T = TypeVar('T')

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, initial_delay: float, max_delay: float,
                  exponential_base: float, jitter: bool) -> float:
    """Delay before retry number ``attempt`` (0-based), capped at ``max_delay``."""
    delay = initial_delay * (exponential_base ** attempt)
    if jitter:
        # Add random jitter (0 to 25% of delay)
        delay += delay * 0.25 * random.random()
    return min(delay, max_delay)


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    exceptions: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator for retrying functions with exponential backoff and jitter.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential backoff
        jitter: Whether to add random jitter to delay
        exceptions: Tuple of exceptions to catch and retry
        sleep: Function used to wait between attempts
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        raise
                    delay = backoff_delay(attempt, initial_delay, max_delay, exponential_base, jitter)
                    logger.warning(
                        "retrying_after_error",
                        extra={
                            "operation": func.__name__,
                            "attempt": attempt + 1,
                            "delay": round(delay, 3),
                            "error": str(e),
                        },
                    )
                    sleep(delay)
                    attempt += 1

        return wrapper
    return decorator
