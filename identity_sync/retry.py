"""
Connection retry policy.

Only opening the connection to the identity provider is retried. The sync
engine reports failures to its caller and leaves retries to the next run.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Tuple, Type

logger = logging.getLogger(__name__)


class MaxRetriesExceeded(Exception):
    """Raised when every attempt of an operation failed."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Gave up after {attempts} attempts: {last_exception}")


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how long to wait when an operation keeps failing.

    Attributes:
        max_retries: Attempts made after the first failure
        wait_seconds: Wait before the first retry
        backoff: Factor applied to the wait after each retry
    """
    max_retries: int = 3
    wait_seconds: float = 5
    backoff: float = 1.0

    @property
    def attempts(self) -> int:
        return max(0, self.max_retries) + 1

    def waits(self) -> Iterator[float]:
        """Yield the wait before each retry."""
        wait = self.wait_seconds
        for _ in range(self.attempts - 1):
            yield wait
            wait *= self.backoff

    def call(self, func: Callable[[], Any], exceptions: Tuple[Type[Exception], ...] = (Exception,),
             description: str = "Operation") -> Any:
        """
        Call ``func`` until it succeeds or the retries are used up.

        Args:
            func: Operation without arguments
            exceptions: Exception types that trigger a retry; others propagate at once
            description: Name of the operation used in log messages

        Returns:
            Result of the first successful call

        Raises:
            MaxRetriesExceeded: If the last attempt failed too
        """
        waits = self.waits()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = func()
            except exceptions as e:
                wait = next(waits, None)
                if wait is None:
                    raise MaxRetriesExceeded(attempt, e) from e
                logger.warning(f"{description} failed on attempt {attempt}, retrying in {wait}s: "
                               f"{type(e).__name__}: {e}")
                time.sleep(wait)
                continue

            if attempt > 1:
                logger.info(f"{description} succeeded on attempt {attempt}")
            return result
