"""
Retry utilities for transient directory failures.

Domain connections are retried according to the error_handling section of
the configuration; only failures that look transient (socket errors,
timeouts, a server dropping the session) are retried.
"""

import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple, Type

from ldap3.core.exceptions import (
    LDAPSessionTerminatedByServerError,
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSocketSendError,
    LDAPResponseTimeoutError,
    LDAPServerPoolExhaustedError,
)

logger = logging.getLogger(__name__)

TRANSIENT_LDAP_ERRORS = (
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSocketSendError,
    LDAPSessionTerminatedByServerError,
    LDAPResponseTimeoutError,
    LDAPServerPoolExhaustedError,
)

# Lower-cased fragments of error messages from servers and sockets that
# recover on their own
TRANSIENT_MESSAGES = (
    'timeout',
    'timed out',
    'connection reset',
    'connection refused',
    'network is unreachable',
    'server unavailable',
    'busy',
)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: Optional[dict] = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call func until it succeeds, fails with a non-transient error, or
    max_attempts calls have been made.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Number of calls to make at most (at least one is made)
        delay: Seconds to wait before the second call
        backoff: Factor applied to the wait after every failed call
        exceptions: Exception types that count as a failed call
        on_retry: Called with (attempt, exception) before each wait

    Raises:
        MaxRetriesExceeded: With the number of calls made and the last error
    """
    kwargs = kwargs or {}
    attempts = max(1, max_attempts)
    wait = delay

    for attempt in range(1, attempts + 1):
        try:
            result = func(*args, **kwargs)
        except exceptions as e:
            if attempt == attempts or not is_retryable_error(e):
                raise MaxRetriesExceeded(attempt, e)

            logger.debug(f"Attempt {attempt}/{attempts} failed with {type(e).__name__}: {e}; "
                         f"retrying in {wait:.1f} seconds")
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(wait)
            wait *= backoff
        else:
            if attempt > 1:
                logger.info(f"Operation succeeded on attempt {attempt}")
            return result


def retry_settings(error_handling: Dict[str, Any]) -> Dict[str, Any]:
    """
    Translate the error_handling section into retry_call keyword arguments.

    max_retries counts retries, so the number of attempts is one more.
    """
    return {
        'max_attempts': int(error_handling.get('max_retries', 3)) + 1,
        'delay': float(error_handling.get('retry_wait_seconds', 5)),
        'backoff': float(error_handling.get('retry_backoff', 1.0)),
    }


def is_retryable_error(exception: Exception) -> bool:
    """True for socket level and timeout failures; bind or query errors are final."""
    if isinstance(exception, TRANSIENT_LDAP_ERRORS + (ConnectionError, TimeoutError)):
        return True
    message = str(exception).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """Return an on_retry callback that logs a warning naming the operation."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
