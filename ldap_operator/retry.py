"""
Short in-call retries for directory connections.

Only socket level failures are retried here, with a few seconds between
attempts. Anything that needs a longer wait (a missing parent, a directory
that is not Ready yet) is handed back to the dispatcher as a requeue delay.
"""

import logging
import time
from typing import Any, Callable, Iterator, Optional

from ldap3.core.exceptions import (
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSocketSendError,
    LDAPSessionTerminatedByServerError,
    LDAPResponseTimeoutError,
)

logger = logging.getLogger(__name__)

TRANSIENT_LDAP_ERRORS = (
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSocketSendError,
    LDAPSessionTerminatedByServerError,
    LDAPResponseTimeoutError,
)

# Raised by the socket layer before ldap3 gets a chance to wrap them
TRANSIENT_OS_ERRORS = (ConnectionError, TimeoutError)

RetryCallback = Callable[[int, Exception], None]


class MaxRetriesExceeded(Exception):
    """Every attempt failed; last_exception is the error of the final one."""
    
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"gave up after {attempts} attempts: {last_exception}")


def is_transient_error(error: BaseException) -> bool:
    """
    Whether another attempt could succeed where this one failed.
    
    Lost or refused sockets and timeouts qualify. LDAP result codes never do:
    the server answered, and asking again gets the same answer.
    """
    if isinstance(error, MaxRetriesExceeded):
        return is_transient_error(error.last_exception)
    return isinstance(error, TRANSIENT_LDAP_ERRORS + TRANSIENT_OS_ERRORS)


def backoff_delays(delay: float, backoff: float, attempts: int) -> Iterator[float]:
    """Yield the waits between attempts: delay, delay * backoff, and so on."""
    for _ in range(attempts - 1):
        yield delay
        delay *= backoff


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: Optional[dict] = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    retry_if: Callable[[Exception], bool] = is_transient_error,
    on_retry: Optional[RetryCallback] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call func until it returns or fails in a way retry_if rejects.
    
    Args:
        func: Callable to invoke
        args: Positional arguments for func
        kwargs: Keyword arguments for func
        max_attempts: Attempts including the first one
        delay: Wait before the second attempt, in seconds
        backoff: Factor applied to the wait after every attempt
        retry_if: Decides whether an error is worth another attempt
        on_retry: Called with the attempt number and error before each wait
        sleep: Wait function, replaceable in tests
    
    Returns:
        Whatever func returns
    
    Raises:
        MaxRetriesExceeded: If the last attempt failed with a retryable error
    """
    kwargs = kwargs or {}
    waits = backoff_delays(delay, backoff, max_attempts)
    attempt = 0
    
    while True:
        attempt += 1
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not retry_if(e):
                raise
            wait = next(waits, None)
            if wait is None:
                raise MaxRetriesExceeded(attempt, e) from e
            _notify(on_retry, attempt, e)
            logger.debug(f"Attempt {attempt} raised {type(e).__name__}, next attempt in {wait:.1f}s")
            sleep(wait)
        else:
            if attempt > 1:
                logger.info(f"Succeeded on attempt {attempt}")
            return result


def _notify(on_retry: Optional[RetryCallback], attempt: int, error: Exception) -> None:
    if on_retry is None:
        return
    try:
        on_retry(attempt, error)
    except Exception as callback_error:
        logger.warning(f"Ignoring failed retry callback: {callback_error}")


def retry_logger(operation: str) -> RetryCallback:
    """An on_retry callback that reports each failed attempt of operation as a warning."""
    def on_retry(attempt: int, error: Exception):
        logger.warning(f"{operation}: attempt {attempt} failed "
                       f"({type(error).__name__}: {error}), trying again")
    return on_retry
