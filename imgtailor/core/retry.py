# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Retry policy shared by the mount, hive and settings code.

One RetryPolicy describes attempts, backoff shape and which errors are worth
another try. Callers hook remediation in through `on_retry`, which runs after a
failed attempt and before the backoff sleep.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, TypeVar

from .exceptions import RetriesExhausted

T = TypeVar("T")

BACKOFF_EXPONENTIAL = "exponential"
BACKOFF_LINEAR = "linear"
BACKOFF_CONSTANT = "constant"


def _always(_e: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """
    Args:
        max_attempts: total attempts including the first one
        base_backoff_s: delay after the first failure
        backoff: "exponential" (base * 2**(n-1)), "linear" (base * n) or "constant"
        max_backoff_s: cap for a single delay
        jitter_s: random extra delay in [0, jitter_s]
        is_retryable: predicate; False re-raises the error immediately
        sleep: injectable for tests
    """
    max_attempts: int = 3
    base_backoff_s: float = 1.0
    backoff: str = BACKOFF_EXPONENTIAL
    max_backoff_s: float = 60.0
    jitter_s: float = 0.0
    is_retryable: Callable[[BaseException], bool] = _always
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {self.max_attempts})")
        if self.backoff not in (BACKOFF_EXPONENTIAL, BACKOFF_LINEAR, BACKOFF_CONSTANT):
            raise ValueError(f"unknown backoff: {self.backoff!r}")

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        if self.backoff == BACKOFF_EXPONENTIAL:
            d = self.base_backoff_s * (2 ** (attempt - 1))
        elif self.backoff == BACKOFF_LINEAR:
            d = self.base_backoff_s * attempt
        else:
            d = self.base_backoff_s
        d = min(d, self.max_backoff_s)
        if self.jitter_s > 0:
            d += random.uniform(0, self.jitter_s)
        return max(0.0, d)

    def with_overrides(self, **kw) -> "RetryPolicy":
        return replace(self, **kw)

    def call(
        self,
        operation: Callable[[int], T],
        *,
        operation_name: str = "operation",
        logger: Optional[logging.Logger] = None,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        log_level: int = logging.WARNING,
    ) -> T:
        """
        Run `operation(attempt)` until it returns.

        Non-retryable errors propagate unchanged. When attempts run out,
        RetriesExhausted is raised with the last error as cause.
        """
        last: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation(attempt)
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last = e

                if attempt >= self.max_attempts:
                    break

                delay = self.delay_for(attempt)
                if logger:
                    logger.log(
                        log_level,
                        "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                        operation_name,
                        attempt,
                        self.max_attempts,
                        e,
                        delay,
                    )
                if on_retry is not None:
                    on_retry(attempt, e)
                if delay > 0:
                    self.sleep(delay)

        if logger:
            logger.error("%s failed after %d attempts: %s", operation_name, self.max_attempts, last)
        raise RetriesExhausted(
            code=1,
            msg=f"{operation_name} failed after {self.max_attempts} attempts: {last}",
            cause=last,
            attempts=self.max_attempts,
            last_error=last,
        )


def no_sleep(_s: float) -> None:
    """Sleep replacement for dry runs and tests."""
    return None
