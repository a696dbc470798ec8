"""
Retry classification and bounded exponential backoff.

Classification is kept separate from the retry driver: ``classify_error``
decides whether an outcome is worth another attempt, ``call_with_retry``
only counts attempts and sleeps.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

import httpx
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .errors import NonRetryableError, RetryableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0   # seconds
DEFAULT_MAX_DELAY = 10.0   # seconds

# Error codes AWS services use for throttling and transient unavailability
TRANSIENT_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "LimitExceededException",
    "ProvisionedThroughputExceededException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalServerError",
    "InternalServerException",
    "InternalFailure",
    "RequestTimeout",
    "RequestTimeoutException",
})

_TRANSIENT_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


class RetryDecision(Enum):
    """Outcome of classifying a failed external call."""
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff shape for one external call."""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")


def classify_status(status_code: int) -> RetryDecision:
    """Classify an HTTP status: 429 and 5xx are retryable, everything else fatal."""
    if status_code == 429 or status_code >= 500:
        return RetryDecision.RETRYABLE
    return RetryDecision.FATAL


def _client_error_status(error: ClientError) -> Optional[int]:
    metadata = error.response.get("ResponseMetadata") or {}
    status = metadata.get("HTTPStatusCode")
    return status if isinstance(status, int) else None


def classify_error(error: BaseException) -> RetryDecision:
    """Decide whether a failed external call should be attempted again.

    AWS reports throttling with HTTP 400, so named transient error codes are
    recognised first. Any other 4xx except 429 is fatal: a malformed request
    costs exactly one attempt.
    """
    if isinstance(error, NonRetryableError):
        return RetryDecision.FATAL
    if isinstance(error, RetryableError):
        return RetryDecision.RETRYABLE

    if isinstance(error, ClientError):
        status = _client_error_status(error)
        code = error.response.get("Error", {}).get("Code", "")
        if code in TRANSIENT_ERROR_CODES:
            return RetryDecision.RETRYABLE
        if status is not None:
            return classify_status(status)
        return RetryDecision.FATAL

    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code)

    if isinstance(error, _TRANSIENT_BOTOCORE_ERRORS):
        return RetryDecision.RETRYABLE
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return RetryDecision.RETRYABLE

    return RetryDecision.FATAL


def backoff_delay(attempt: int, base: float = DEFAULT_BASE_DELAY, cap: float = DEFAULT_MAX_DELAY) -> float:
    """Delay in seconds before retry number ``attempt`` (0-based)."""
    return min(base * (2 ** attempt), cap)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy = RetryPolicy(),
    classifier: Callable[[BaseException], RetryDecision] = classify_error,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "external call",
) -> T:
    """Call ``fn`` until it succeeds, fails fatally, or attempts run out.

    Args:
        fn: Zero-argument callable performing the external call
        policy: Attempt budget and backoff shape
        classifier: Maps an exception to RETRYABLE or FATAL
        sleep: Blocking sleep used between attempts
        description: Human-readable name used in log messages

    Returns:
        Whatever ``fn`` returns

    Raises:
        The fatal error immediately, or the last retryable error once the
        attempt budget is exhausted
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as error:
            if classifier(error) is RetryDecision.FATAL:
                raise

            attempt += 1
            if attempt >= policy.max_attempts:
                logger.error(
                    "All %d attempts exhausted for %s", policy.max_attempts, description,
                    extra={"attempts": attempt, "error": str(error)},
                )
                raise

            delay = backoff_delay(attempt - 1, policy.base_delay, policy.max_delay)
            logger.warning(
                "Transient error on attempt %d/%d for %s, retrying in %.1fs: %s",
                attempt, policy.max_attempts, description, delay, error,
            )
            sleep(delay)
