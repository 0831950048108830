"""
Retry utilities for AWS API calls.

This module provides:
- Error classification for throttling and transient AWS API errors
- throttling_backoff() for wrapping a single API call in exponential
  backoff with full jitter

Whole-stack deploy operations are never wrapped; they fail fast.
"""

import logging
from typing import Callable, TypeVar

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import (
    RetryError,
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from ..errors import TransientCloudError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 20
DEFAULT_STARTING_DELAY = 0.15
DEFAULT_MAX_DELAY = 30.0

# Error codes that should trigger a retry
THROTTLING_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ConcurrentModificationException",
    "InternalErrorException",
    "InternalException",
    "InternalFailure",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "LimitExceededException",
    "OperationNotPermittedException",
    "RequestTimeout",
    "RequestTimeoutException",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
}

CONNECTION_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ReadTimeoutError,
    ConnectTimeoutError,
)


def is_throttling_error(exception: BaseException) -> bool:
    """Check if exception should trigger a retry of the same call."""
    if isinstance(exception, ClientError):
        error_code = exception.response.get("Error", {}).get("Code", "")
        return error_code in THROTTLING_ERROR_CODES
    return isinstance(exception, CONNECTION_ERRORS)


def throttling_backoff(
    request: Callable[[], T],
    attempts: int = DEFAULT_ATTEMPTS,
    starting_delay: float = DEFAULT_STARTING_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> T:
    """
    Call request() and retry throttling errors with exponential backoff.

    Args:
        request: Zero-argument callable performing one AWS API call
        attempts: Maximum number of attempts, including the first
        starting_delay: Initial backoff window in seconds
        max_delay: Upper bound of a single wait in seconds

    Returns:
        Whatever request() returns.

    Raises:
        TransientCloudError: The call kept throttling until attempts ran out.
        Exception: Any non-retryable error, unchanged.
    """

    @retry(
        retry=retry_if_exception(is_throttling_error),
        stop=stop_after_attempt(attempts),
        wait=wait_random_exponential(multiplier=starting_delay, max=max_delay),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        reraise=False,
    )
    def _call():
        return request()

    try:
        return _call()
    except RetryError as e:
        last_error = e.last_attempt.exception()
        logger.warning("Retries exhausted after %d attempts: %s", attempts, last_error)
        raise TransientCloudError(
            f"AWS API call still failing after {attempts} attempts: {last_error}"
        ) from last_error
