from __future__ import annotations

import errno
import logging
import subprocess
import time
from typing import Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

_TRANSIENT_ERRNOS = {
    errno.EAGAIN,
    errno.EBUSY,
    errno.ETIMEDOUT,
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
}


def run_with_retry(
    *,
    operation: Callable[[], T],
    should_retry: Callable[[Exception], bool],
    max_retries: int = 2,
    base_delay_seconds: float = 1.0,
    sleep_fn: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, float, Exception], None] | None = None,
) -> T:
    """Call ``operation`` until it succeeds or retries are exhausted.

    The delay doubles after every failed attempt. The last error is
    re-raised unchanged once ``max_retries`` is reached or ``should_retry``
    rejects it.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as error:  # noqa: BLE001
            if attempt >= max_retries or not should_retry(error):
                raise

            delay = base_delay_seconds * (2**attempt)
            if on_retry is None:
                logger.warning(
                    "Attempt %d failed (%s: %s), retrying in %.1fs",
                    attempt + 1,
                    error.__class__.__name__,
                    error,
                    delay,
                )
            else:
                on_retry(attempt + 1, delay, error)
            sleep_fn(delay)
            attempt += 1


def is_transient_transfer_error(error: Exception) -> bool:
    if isinstance(error, subprocess.TimeoutExpired):
        return True
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    if isinstance(error, OSError) and error.errno in _TRANSIENT_ERRNOS:
        return True

    message = str(error).lower()
    return "connection" in message or "timed out" in message
