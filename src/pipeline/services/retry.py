"""Bounded-attempt retry policy for oracle calls.

RetryPolicy is injected into the proposal and evaluation agents so the
attempt budget and delay are configuration, not code. Tests pass
``RetryPolicy(max_attempts=n, delay=0)`` to retry without sleeping.

Usage:
    async for attempt in policy.attempts():
        with attempt:
            number = attempt.retry_state.attempt_number
            result = await call_oracle(...)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    wait_none,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Max attempts plus a fixed or exponential delay between attempts.

    Attributes:
        max_attempts: Total attempts including the first one.
        delay: Seconds between attempts (the multiplier for exponential).
        backoff: "fixed" or "exponential".
        max_delay: Upper bound for exponential waits.
    """

    max_attempts: int = 3
    delay: float = 1.0
    backoff: Literal["fixed", "exponential"] = "fixed"
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must be non-negative")

    def _wait(self):
        if self.delay == 0:
            return wait_none()
        if self.backoff == "exponential":
            return wait_exponential(multiplier=self.delay, max=self.max_delay)
        return wait_fixed(self.delay)

    def attempts(
        self,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
    ) -> AsyncRetrying:
        """Build a tenacity AsyncRetrying iterator for one retried operation.

        The last exception is re-raised once the budget is exhausted.
        """
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception_type(retry_on),
            reraise=True,
        )
