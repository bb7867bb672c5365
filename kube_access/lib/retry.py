"""Bounded exponential backoff for transient cluster and ledger errors.

Only errors flagged ``retryable`` in the taxonomy (Timeout, Conflict,
ServiceUnavailable) are retried. Everything else, PermissionDenied in
particular, propagates on the first attempt.
"""

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryPolicy
from .errors import AccessError, RetriesExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    """Return True if the error is a transient AccessError."""
    return isinstance(error, AccessError) and error.retryable


def call_with_retry(
    fn: Callable[[], T],
    *,
    step: str,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` retrying transient errors with exponential backoff.

    Args:
        fn: Zero-argument callable performing one attempt
        step: Lifecycle step name used in logs and the terminal error
        policy: Attempt cap and delay bounds
        sleep: Sleep function (injectable for tests)

    Returns:
        The value returned by the first successful attempt

    Raises:
        RetriesExhausted: If every attempt failed with a retryable error
        AccessError: Non-retryable errors are raised unchanged
    """
    retrying = Retrying(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.initial_delay_seconds,
            min=policy.initial_delay_seconds,
            max=policy.max_delay_seconds,
        ),
        before_sleep=_log_retry_attempt(step),
        sleep=sleep,
    )

    try:
        return retrying(fn)
    except RetryError as e:
        last = e.last_attempt.exception()
        raise RetriesExhausted(
            f"gave up after {policy.max_attempts} attempts, last error: {last}",
            step=step,
            cause=last,
            attempts=policy.max_attempts,
        ) from last


def _log_retry_attempt(step: str) -> Callable[[RetryCallState], None]:
    def _log(retry_state: RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        next_wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            "Retrying %s after %s (attempt %d, next wait %.2fs)",
            step,
            type(exception).__name__ if exception else "unknown",
            retry_state.attempt_number,
            next_wait,
            extra={"step": step},
        )

    return _log
