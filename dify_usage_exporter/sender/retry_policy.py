"""
Retry Policy
============
Classification of delivery failures and the backoff between attempts.
"""

from typing import Callable

from tenacity import RetryCallState

from dify_usage_exporter.errors import DeliveryError

NETWORK_ERROR_CODES = frozenset({"ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "ECONNRESET"})

NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404})

CONFLICT_STATUS_CODE = 409


def is_retryable(error: BaseException) -> bool:
    """Network faults, response-less failures, 5xx and 429."""
    if not isinstance(error, DeliveryError):
        return False

    if error.code in NETWORK_ERROR_CODES:
        return True

    status = error.status
    if status is None:
        return True

    return 500 <= status < 600 or status == 429


def is_non_retryable(error: BaseException) -> bool:
    """Client errors that a retry cannot fix."""
    if not isinstance(error, DeliveryError):
        return False
    return error.status in NON_RETRYABLE_STATUS_CODES


def is_conflict(error: BaseException) -> bool:
    """409 means the partner API already recorded this batch."""
    if not isinstance(error, DeliveryError):
        return False
    return error.status == CONFLICT_STATUS_CODE


def backoff_delay(attempt_number: int, base_seconds: float = 1.0) -> float:
    """Delay before retry N: base, 2*base, 4*base, ..."""
    return base_seconds * (2 ** max(attempt_number - 1, 0))


def wait_retry_after(base_seconds: float = 1.0) -> Callable[[RetryCallState], float]:
    """
    Tenacity wait strategy.

    A Retry-After value from the server wins and is used as is; otherwise
    exponential backoff.
    """

    def _wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            error = outcome.exception()
            if isinstance(error, DeliveryError) and error.retry_after is not None:
                return error.retry_after
        return backoff_delay(retry_state.attempt_number, base_seconds)

    return _wait
