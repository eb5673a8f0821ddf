"""Bounded retry with exponential backoff for transient failures.

Only errors classified as retryable (TransientNetworkError) are retried. Every
other StackError, and any exception that was never classified, propagates on
the first attempt. The loop is explicit so callers can see how many attempts
an operation took.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Tuple, TypeVar

from .errors import StackError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between.

    Delay before attempt n+1 is base_delay * backoff_factor ** (n - 1), capped
    at max_delay. With the defaults: 1s, then 2s.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0

    def delay_after(self, attempt: int) -> float:
        """Seconds to sleep after the given (1-based) failed attempt."""
        return min(self.base_delay * (self.backoff_factor ** (attempt - 1)), self.max_delay)


NO_RETRY = RetryPolicy(max_attempts=1)


def call_with_retry(func: Callable[[], T], policy: RetryPolicy, description: str,
                    sleep: Callable[[float], None] = time.sleep) -> Tuple[T, int]:
    """Call func until it succeeds, fails permanently, or attempts run out.

    Args:
        func: Zero-argument callable doing one attempt
        policy: Retry bounds
        description: Human readable name used in log messages
        sleep: Injected for tests

    Returns:
        (result, attempts) where attempts is how many calls were made

    Raises:
        StackError: the last classified error, with its attempts attribute set
    """
    attempt = 1
    while True:
        try:
            return func(), attempt
        except StackError as e:
            e.attempts = attempt
            if not e.retryable or attempt >= policy.max_attempts:
                if e.retryable:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            delay = policy.delay_after(attempt)
            logger.warning(f"{description} failed: {e}")
            logger.warning(f"Retrying after {delay:.1f}s (attempt {attempt + 1}/{policy.max_attempts})...")
            sleep(delay)
            attempt += 1
