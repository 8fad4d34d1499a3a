from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    jitter_ratio: float = 0.25

    def delay_for_attempt(self, attempt: int) -> float:
        backoff = min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)
        jitter = backoff * self.jitter_ratio * random.random()
        return backoff + jitter


# Short backoff for optimistic stock updates; contention clears in milliseconds.
STOCK_CAS_POLICY = RetryPolicy(max_attempts=5, base_delay_seconds=0.005, max_delay_seconds=0.1)


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def run_with_retry(
    operation: Callable[[], T],
    should_retry: Callable[[Exception], bool],
    policy: RetryPolicy | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy runs out.

    Errors rejected by ``should_retry`` propagate unchanged on the first
    occurrence. ``RetryExhaustedError`` is raised only when every attempt
    failed with a retryable error; the last one is chained as its cause.
    """
    active = policy or RetryPolicy()
    last_error: Exception | None = None
    for attempt in range(1, active.max_attempts + 1):
        try:
            return operation()
        except Exception as exc:  # noqa: BLE001
            if not should_retry(exc):
                raise
            last_error = exc
            if attempt >= active.max_attempts:
                break
            delay = active.delay_for_attempt(attempt)
            logger.debug("Retrying after %s (attempt %d, sleeping %.3fs)", exc, attempt, delay)
            sleep_fn(delay)
    raise RetryExhaustedError(
        f"Operation failed after {active.max_attempts} attempts", attempts=active.max_attempts
    ) from last_error
