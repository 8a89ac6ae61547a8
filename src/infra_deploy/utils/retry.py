"""Retry strategy with exponential backoff for contended operations."""

import threading
import time
import random
from typing import Callable, TypeVar, Optional
from functools import wraps
from botocore.exceptions import ClientError
from infra_deploy.utils.errors import DeploymentError, OperationCancelledError
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements exponential backoff retry strategy for transient errors."""

    # AWS error codes that should trigger a retry
    RETRYABLE_ERROR_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'ThrottlingException',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'Throttling',
        'SlowDown',
        'ProvisionedThroughputExceededException',
        'TransactionConflictException',
        'InternalError',
        'InternalServerError',
    }

    # Network-related exceptions that should trigger a retry
    RETRYABLE_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
    )

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts after the first call
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Sleep function (defaults to time.sleep)
            cancel_event: Event that interrupts backoff waits when set
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep or time.sleep
        self.cancel_event = cancel_event

    @property
    def max_attempts(self) -> int:
        """Total number of calls including the first one."""
        return self.max_retries + 1

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

        if isinstance(error, DeploymentError):
            return error.retryable

        if isinstance(error, self.RETRYABLE_EXCEPTIONS):
            return True

        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', '')
            if error_code in self.RETRYABLE_ERROR_CODES:
                return True

        return False

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Random value between 0 and 10% of delay
        if self.jitter:
            jitter_amount = random.uniform(0, delay * 0.1)
            delay += jitter_amount

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            OperationCancelledError: If the cancel event was set while waiting
            The last exception if all retries are exhausted
        """
        last_exception = None

        for attempt in range(self.max_retries + 1):
            self._check_cancelled()
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")

                return result

            except Exception as e:
                last_exception = e

                if not self.should_retry(e, attempt):
                    logger.debug(f"Error is not retryable or max retries exceeded: {e}")
                    raise

                delay = self.get_delay(attempt)

                error_info = self._get_error_info(e)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: {error_info}. "
                    f"Retrying in {delay:.2f}s..."
                )

                self._wait(delay)

        logger.error(f"All {self.max_retries} retry attempts exhausted")
        raise last_exception

    def _wait(self, delay: float) -> None:
        """Sleep for the backoff delay, waking early on cancellation."""
        if self.cancel_event is not None:
            if self.cancel_event.wait(delay):
                raise OperationCancelledError("Cancelled while waiting to retry")
            return
        self.sleep(delay)

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelledError()

    def _get_error_info(self, error: Exception) -> str:
        """Extract useful error information for logging.

        Args:
            error: The exception

        Returns:
            Human-readable error description
        """
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            error_message = error.response.get('Error', {}).get('Message', str(error))
            return f"{error_code}: {error_message}"

        return f"{type(error).__name__}: {str(error)}"


def with_retry(
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
):
    """Decorator to add retry logic to a function.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds for first retry
        max_delay: Maximum delay in seconds between retries
        exponential_base: Base for exponential backoff calculation
        jitter: Whether to add random jitter to delay

    Returns:
        Decorated function with retry logic

    Example:
        @with_retry(max_retries=3, base_delay=0.5)
        def read_item(client, key):
            return client.get_item(TableName=TABLE, Key=key)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            strategy = RetryStrategy(
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter
            )
            return strategy.execute_with_retry(func, *args, **kwargs)

        return wrapper

    return decorator
