"""
Bounded retry with exponential backoff for collaborator calls.

Contract:
    ``call_with_retry`` re-invokes the callable on ``TransientError`` only,
    waiting ``backoff_base * 2^(attempt-1)`` seconds plus up to ``jitter``
    seconds (capped at ``backoff_max``) between attempts.  When the budget
    is spent it raises ``RetryExhaustedError`` (a PermanentError).  Every
    other exception propagates unchanged on the first occurrence.

Architecture: bundle_batch/services.  Built on tenacity; sleep is
injectable so tests never wait.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from bundle_kernel.exceptions import RetryExhaustedError, TransientError
from bundle_kernel.logging_config import get_logger

logger = get_logger("batch.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for collaborator retry behaviour.

    max_attempts is the TOTAL number of tries: 3 means try, retry, retry.
    """

    max_attempts: int = 3
    backoff_base: float = 0.5  # seconds before the first retry
    backoff_max: float = 30.0  # cap on delay between retries
    jitter: float = 0.2  # seconds added at random, 0..jitter

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def wait(self) -> wait_exponential_jitter:
        """The tenacity wait strategy for this policy."""
        return wait_exponential_jitter(
            initial=self.backoff_base,
            max=self.backoff_max,
            exp_base=2,
            jitter=self.jitter,
        )


NO_RETRY = RetryPolicy(max_attempts=1)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    operation: str,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Callable[[int], None] | None = None,
) -> T:
    """
    Invoke ``fn`` until it succeeds or the retry budget is spent.

    Args:
        fn: Zero-argument callable performing one collaborator call.
        policy: Attempt budget and backoff shape.
        operation: Name used in logs and in RetryExhaustedError.
        sleep: Injected for tests.
        on_attempt: Called with the 1-based attempt number before each try.

    Raises:
        RetryExhaustedError: Transient failures persisted past
            ``policy.max_attempts``.
    """

    def _log_retry(retry_state: RetryCallState) -> None:
        logger.info(
            "transient_failure_retrying",
            extra={
                "operation": operation,
                "attempt": retry_state.attempt_number,
                "max_attempts": policy.max_attempts,
                "delay_seconds": round(retry_state.next_action.sleep, 3),
                "error": str(retry_state.outcome.exception()),
            },
        )

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait(),
        retry=retry_if_exception_type(TransientError),
        sleep=sleep,
        before_sleep=_log_retry,
        reraise=False,
    )

    try:
        for attempt in retrying:
            with attempt:
                if on_attempt is not None:
                    on_attempt(attempt.retry_state.attempt_number)
                return fn()
    except RetryError as exc:
        last_error = exc.last_attempt.exception()
        attempts = exc.last_attempt.attempt_number
        logger.warning(
            "retry_exhausted",
            extra={"operation": operation, "attempts": attempts, "last_error": str(last_error)},
        )
        raise RetryExhaustedError(operation, attempts, str(last_error)) from last_error

    raise RuntimeError(f"retry loop for {operation} ended without an outcome")  # pragma: no cover
