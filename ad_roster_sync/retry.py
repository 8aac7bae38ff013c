"""
Retry helpers for transient directory failures.

Only the directory transport retries (when opening and binding its
connection); the sync pipeline itself never retries a person.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional
from ldap3.core.exceptions import LDAPSocketOpenError, LDAPSocketReceiveError, LDAPSessionTerminatedByServerError

logger = logging.getLogger(__name__)

# LDAP result codes for busy (51), unavailable (52) and server down (81)
TRANSIENT_LDAP_RESULTS = (51, 52, 81)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, including the first
        delay: Initial delay between retries
        backoff: Delay multiplier for exponential backoff
        exceptions: Exception types to catch
        should_retry: Optional predicate; a caught exception it rejects is re-raised at once
        on_retry: Optional callback for retry events

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}

    last_exception = None
    current_delay = delay
    attempts = max(1, max_attempts)

    for attempt in range(attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except exceptions as e:
            if should_retry is not None and not should_retry(e):
                raise
            last_exception = e

            if attempt == attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")
            logger.debug(f"Retrying in {current_delay:.1f} seconds...")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(attempts, last_exception)


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception indicates a transient directory failure.

    Args:
        exception: Exception to check

    Returns:
        True if the exception indicates a transient failure
    """
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    if isinstance(exception, (LDAPSocketOpenError, LDAPSocketReceiveError, LDAPSessionTerminatedByServerError)):
        return True

    result = getattr(exception, 'result', None)
    if isinstance(result, dict) and result.get('result') in TRANSIENT_LDAP_RESULTS:
        return True

    error_msg = str(exception).lower()
    transient_patterns = [
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'network is unreachable',
        'server is busy',
        'unavailable',
    ]
    return any(pattern in error_msg for pattern in transient_patterns)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
