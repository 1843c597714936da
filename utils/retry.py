"""
Retry policy shared by the GitHub crawler, the LLM call primitive and the
pipeline nodes.

A policy is a bounded attempt count plus an exponential backoff schedule and a
predicate deciding which exceptions are worth another attempt. A retry_after
hint on the exception (rate-limit responses) overrides the computed delay,
capped at max_delay.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from utils.errors import is_retryable_error

logger = logging.getLogger("repo_scrapper")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        """Delay in seconds before the attempt following `attempt` (1-based)."""
        hint = getattr(exc, "retry_after", None)
        if isinstance(hint, (int, float)) and hint >= 0:
            return min(float(hint), self.max_delay)
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def run(
        self,
        fn: Callable[[int], T],
        description: str = "operation",
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    ) -> T:
        """
        Call fn(attempt) until it returns, the exception is not retryable, or
        max_attempts is reached. The last exception propagates unchanged.
        """
        attempt = 1
        while True:
            try:
                return fn(attempt)
            except Exception as exc:
                if attempt >= self.max_attempts or not self.is_retryable(exc):
                    raise
                delay = self.delay_for(attempt, exc)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    description,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                if delay > 0:
                    self.sleep(delay)
                attempt += 1


def default_retry_policy() -> RetryPolicy:
    """Policy from LLM_RATE_LIMIT_MAX_RETRIES (attempts, clamped to 1..10)."""
    raw = os.environ.get("LLM_RATE_LIMIT_MAX_RETRIES", "")
    try:
        max_attempts = int(raw) if raw.strip() else 3
    except ValueError:
        logger.warning("Ignoring invalid LLM_RATE_LIMIT_MAX_RETRIES=%r", raw)
        max_attempts = 3
    return RetryPolicy(max_attempts=max(1, min(max_attempts, 10)))
