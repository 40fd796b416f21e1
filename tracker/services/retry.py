"""
Exponential backoff for platform fetches.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay slept after the given (1-based) failed attempt."""
    return base_delay * (2 ** (attempt - 1))


def retry_with_backoff(
    func: Callable,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    retry_if: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable] = None,
):
    """
    Call ``func`` until it succeeds or ``max_attempts`` calls have failed.

    After failed attempt ``n`` the executor sleeps ``base_delay * 2**(n-1)``
    seconds, without jitter. The last error is re-raised unchanged. Errors for
    which ``retry_if`` returns False are re-raised immediately.

    Args:
        func: zero-argument callable.
        max_attempts: total number of calls, including the first.
        base_delay: delay in seconds after the first failure.
        retry_if: optional predicate deciding whether an error is worth retrying.
        sleep: injected for tests.
        on_retry: optional callback(attempt, exception, delay).
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except Exception as exc:
            if attempt >= max_attempts or (retry_if is not None and not retry_if(exc)):
                raise
            delay = backoff_delay(attempt, base_delay)
            if on_retry:
                on_retry(attempt, exc, delay)
            logger.debug("Attempt %s/%s failed (%s); retrying in %.1fs", attempt, max_attempts, exc, delay)
            sleep(delay)
