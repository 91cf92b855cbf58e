"""Retry strategy with exponential backoff for remote operations."""

import time
import random
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar, Optional

from fleetdeploy.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

# The ssh client reserves 255 for transport and authentication failures
CONNECTION_FAILURE_EXIT_CODE = 255


def is_connection_failure(exit_status: int) -> bool:
    """Retry policy: only connection-class failures are retried.

    A script that ran and returned non-zero has already consumed its stdin,
    so re-sending it would not be the same operation.
    """
    return exit_status == CONNECTION_FAILURE_EXIT_CODE


def never_retry(exit_status: int) -> bool:
    return False


def _exit_code(result) -> int:
    return result.exit_code


@dataclass
class RetryResult(Generic[T]):
    """Final result of a retried operation and how many attempts it took."""
    value: T
    attempts: int


class RetryStrategy:
    """Implements exponential backoff retry for status-returning operations."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 5.0,
        backoff_factor: float = 2.0,
        max_delay: Optional[float] = None,
        jitter: bool = False,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry strategy.

        Args:
            max_attempts: Maximum number of attempts, including the first
            initial_delay: Delay in seconds before the second attempt
            backoff_factor: Multiplier applied to the delay after each failure
            max_delay: Optional upper bound for a single delay
            jitter: Whether to add random jitter to delay
            sleep: Function used to wait between attempts
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.jitter = jitter
        self.sleep = sleep

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Number of attempts already made (1-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        # Up to 10% extra so parallel workers do not retry in lockstep
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute(
        self,
        operation: Callable[[], T],
        is_retryable: Callable[[int], bool] = is_connection_failure,
        status: Callable[[T], int] = _exit_code,
        description: str = 'operation'
    ) -> RetryResult[T]:
        """Execute an operation, retrying retryable non-zero statuses.

        Args:
            operation: Zero-argument callable producing a result
            is_retryable: Policy deciding whether a non-zero status is retried
            status: Extracts the exit status from the operation's result
            description: Label used in log messages

        Returns:
            RetryResult holding the last result and the attempt count
        """
        attempt = 0
        while True:
            attempt += 1
            result = operation()
            exit_status = status(result)

            if exit_status == 0:
                if attempt > 1:
                    logger.info(f"{description} succeeded on attempt {attempt}")
                return RetryResult(value=result, attempts=attempt)

            if not is_retryable(exit_status):
                logger.debug(
                    f"{description} failed with exit status {exit_status} (not retryable)"
                )
                return RetryResult(value=result, attempts=attempt)

            if attempt >= self.max_attempts:
                logger.error(
                    f"{description} failed after {attempt} attempts "
                    f"(exit status {exit_status})"
                )
                return RetryResult(value=result, attempts=attempt)

            delay = self.get_delay(attempt)
            logger.warning(
                f"Attempt {attempt}/{self.max_attempts} of {description} failed "
                f"with exit status {exit_status}. Waiting {delay:.1f}s before retry...",
                extra={'attempt': attempt}
            )
            self.sleep(delay)
