from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff for transient API failures.

    attempts counts the first call, so attempts=4 allows three retries.
    """

    attempts: int = 5
    first_delay_secs: float = 0.5
    max_delay_secs: float = 15.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.first_delay_secs < 0 or self.max_delay_secs < self.first_delay_secs:
            raise ValueError("delays must satisfy 0 <= first_delay_secs <= max_delay_secs")
        if not (0.0 <= self.jitter <= 1.0):
            raise ValueError("jitter must be between 0 and 1")

    def delay_after(self, failures: int, *, rng: Callable[[float, float], float] | None = None) -> float:
        base = min(self.max_delay_secs, self.first_delay_secs * (2 ** max(0, failures - 1)))
        if base <= 0 or self.jitter <= 0:
            return max(0.0, base)
        draw = rng or random.uniform
        return max(0.0, base * draw(1.0 - self.jitter, 1.0 + self.jitter))


@dataclass(frozen=True)
class RetryAttempt:
    operation: str
    failures: int
    attempts: int
    delay_secs: float
    reason: str
    error_type: str
    error_message: str


ClassifyFn = Callable[[BaseException], str | None]
OnRetryFn = Callable[[RetryAttempt], None]
SleepFn = Callable[[float], None]


def call_with_retries(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    classify: ClassifyFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
) -> T:
    """
    Run fn(), retrying while classify(exc) returns a reason string.

    A None reason means the failure is permanent and is re-raised immediately.
    """
    sleeper = sleep_fn or time.sleep
    failures = 0

    while True:
        try:
            return fn()
        except Exception as exc:
            failures += 1
            reason = classify(exc)
            if reason is None or failures >= policy.attempts:
                raise

            delay = policy.delay_after(failures)
            if on_retry is not None:
                on_retry(
                    RetryAttempt(
                        operation=operation,
                        failures=failures,
                        attempts=policy.attempts,
                        delay_secs=delay,
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=str(exc).strip(),
                    )
                )
            if delay > 0:
                sleeper(delay)
