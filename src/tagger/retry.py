"""Bounded retry for status-returning API calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import RATE_LIMIT_COOLDOWN_SECONDS

logger = logging.getLogger(__name__)

HTTP_TOO_MANY_REQUESTS = 429


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-delay retry policy.

    Attributes:
        max_retries: Extra attempts after the first one.
        delay_seconds: Wait before each retry (no backoff growth).
        retry_on: Status codes that trigger a retry.
    """

    max_retries: int = 1
    delay_seconds: float = RATE_LIMIT_COOLDOWN_SECONDS
    retry_on: frozenset[int] = field(default_factory=lambda: frozenset({HTTP_TOO_MANY_REQUESTS}))


@dataclass(frozen=True)
class RetryOutcome:
    """Final status code and number of attempts made."""

    status_code: int
    attempts: int

    @property
    def succeeded(self) -> bool:
        return 200 <= self.status_code < 300


def call_with_retry(
    operation: Callable[[], int],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome:
    """Run operation, retrying on retryable statuses up to the policy limit.

    Exceptions raised by operation propagate unchanged.
    """
    attempts = 0
    while True:
        attempts += 1
        status_code = operation()

        if status_code not in policy.retry_on or attempts > policy.max_retries:
            return RetryOutcome(status_code=status_code, attempts=attempts)

        logger.warning(
            "Request throttled, retrying after cooldown",
            extra={
                "status_code": status_code,
                "attempt": attempts,
                "max_attempts": policy.max_retries + 1,
                "wait_seconds": policy.delay_seconds,
            },
        )
        sleep(policy.delay_seconds)
