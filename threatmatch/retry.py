"""
Caller-side retry with exponential backoff.

The transaction managers never retry on their own. Callers that know a unit
of work is safe to repeat (a partition exchange, a file read from a mounted
bucket) wrap it with the decorator below.
"""

import time
import functools
from typing import Callable, Type, Tuple, Optional


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation (delay *= base)
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function(attempt, exception, delay)
        sleep: Function used to wait between attempts

    Example:
        @exponential_backoff(max_retries=3, exceptions=(TransientStorageError,))
        def exchange():
            tm.transact(lambda: store.replace(...))
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = base_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        raise RetryError(
                            f"Failed after {max_retries + 1} attempts: {e}"
                        ) from e

                    current_delay = min(delay, max_delay)
                    if on_retry:
                        on_retry(attempt + 1, e, current_delay)
                    sleep(current_delay)
                    delay *= exponential_base

        return wrapper
    return decorator


def is_connection_error(exception: Exception) -> bool:
    """
    Determine if a storage driver error means the backend cannot be reached.

    Checked before is_transient_error: a connect attempt that times out is an
    unreachable database, not lock contention.

    Args:
        exception: Exception raised by the storage driver

    Returns:
        True if the database is down, unreachable or missing
    """
    if getattr(exception, 'connection_invalidated', False):
        return True

    error_str = str(exception).lower()

    connection_keywords = [
        'could not connect',
        'connection to server',
        'connection refused',
        'server closed the connection',
        'lost connection',
        "can't connect",
        'no route to host',
        'unable to open database',
    ]

    return any(keyword in error_str for keyword in connection_keywords)


def is_transient_error(exception: Exception) -> bool:
    """
    Determine if a storage driver error is likely transient.

    Lock contention, serialization failures and lock or statement timeouts are
    transient; an unreachable server or missing database file is not.

    Args:
        exception: Exception raised by the storage driver

    Returns:
        True if repeating the unit of work may succeed
    """
    if is_connection_error(exception):
        return False

    error_str = str(exception).lower()

    transient_keywords = [
        'database is locked',
        'database table is locked',
        'deadlock',
        'could not serialize',
        'serialization failure',
        'lock wait timeout',
        'lock timeout',
        'statement timeout',
        'concurrent modification',
    ]

    return any(keyword in error_str for keyword in transient_keywords)
