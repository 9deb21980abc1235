"""Retry strategies for AWS calls and cleanup deletions."""

import time
import random
from enum import Enum
from typing import Callable, TypeVar, Optional
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from labkeeper.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class BackoffMode(Enum):
    """How the delay grows between attempts."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class RetryStrategy:
    """Retries transient errors with fixed or exponential backoff."""

    # AWS error codes that should trigger a retry
    RETRYABLE_ERROR_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'SlowDown',
        'ThrottlingException',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'Throttling',
        'RequestThrottled',
        'InternalError',
        'InternalFailure',
        '500',
        '503',
    }

    # Network-related exceptions that should trigger a retry
    RETRYABLE_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
        EndpointConnectionError,
        ConnectTimeoutError,
        ReadTimeoutError,
        ConnectionClosedError,
    )

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        backoff: BackoffMode = BackoffMode.EXPONENTIAL,
        retry_on: Optional[Callable[[Exception], bool]] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retries after the first attempt
            base_delay: Delay in seconds before the first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Growth factor for exponential backoff
            jitter: Whether to add up to 10% random jitter to each delay
            backoff: Fixed or exponential delay growth
            retry_on: Predicate deciding whether an error is retryable;
                defaults to transient AWS and network errors
            sleep: Sleep function, replaceable in tests
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff = backoff
        self.retry_on = retry_on or self.is_transient
        self.sleep = sleep
        self.attempts = 0

    @classmethod
    def fixed(cls, max_attempts: int, delay: float, **kwargs) -> "RetryStrategy":
        """Build a strategy making at most `max_attempts` attempts, `delay` seconds apart."""
        return cls(
            max_retries=max(max_attempts - 1, 0),
            base_delay=delay,
            max_delay=delay,
            jitter=False,
            backoff=BackoffMode.FIXED,
            **kwargs
        )

    def is_transient(self, error: Exception) -> bool:
        """Whether an error is a transient AWS or network failure."""
        if isinstance(error, self.RETRYABLE_EXCEPTIONS):
            return True

        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', '')
            if error_code in self.RETRYABLE_ERROR_CODES:
                return True
            status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
            return status >= 500

        return False

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is retryable and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False
        return self.retry_on(error)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before the next retry.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        if self.backoff == BackoffMode.FIXED:
            delay = self.base_delay
        else:
            delay = min(
                self.base_delay * (self.exponential_base ** attempt),
                self.max_delay
            )

        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        The number of attempts made is left in `self.attempts`.

        Raises:
            The last exception if it is not retryable or retries are exhausted
        """
        self.attempts = 0

        for attempt in range(self.max_retries + 1):
            self.attempts = attempt + 1
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")

                return result

            except Exception as e:
                if not self.should_retry(e, attempt):
                    if attempt >= self.max_retries and self.max_retries > 0:
                        logger.error(f"All {self.max_retries + 1} attempts exhausted: {self._get_error_info(e)}")
                    else:
                        logger.debug(f"Error is not retryable: {e}")
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: {self._get_error_info(e)}. "
                    f"Retrying in {delay:.2f}s..."
                )
                self.sleep(delay)

        raise AssertionError("unreachable")

    def _get_error_info(self, error: Exception) -> str:
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            error_message = error.response.get('Error', {}).get('Message', str(error))
            return f"{error_code}: {error_message}"

        return f"{type(error).__name__}: {str(error)}"
