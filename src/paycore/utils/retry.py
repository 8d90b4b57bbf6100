"""Bounded retry for gateway calls.

Thin wrapper over tenacity: exponential backoff starting at
``initial_delay`` and doubling, only for exceptions the predicate accepts.
The last exception is re-raised unchanged once attempts run out.
"""

import time
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from paycore.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _log_before_sleep(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(
        "Retrying %s after attempt %d failed: %s (sleeping %.1fs)",
        getattr(retry_state.fn, "__name__", "call"),
        retry_state.attempt_number,
        error,
        delay,
    )


def retry_call(
    fn: Callable[[], T],
    *,
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` up to ``max_attempts`` times.

    With the defaults a persistently failing call runs three times and
    sleeps 1s then 2s between attempts.

    Args:
        fn: Zero-argument callable to invoke
        is_retryable: Predicate selecting exceptions worth another attempt
        max_attempts: Total attempts, including the first
        initial_delay: Delay before the second attempt, doubled after that
        sleep: Sleep function (injected by tests)

    Returns:
        Whatever ``fn`` returns on its first successful attempt
    """
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=initial_delay, exp_base=2),
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        before_sleep=_log_before_sleep,
        reraise=True,
    )
    return retrying(fn)
