"""
Bounded retry policy.

A small value object describing how many times an operation may be attempted
and how long to wait between attempts (jittered exponential backoff). Used for
usage writes, where a failed write must be retried before it is surfaced.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    base_delay_s: float = 0.05
    max_delay_s: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        base = min(self.max_delay_s, self.base_delay_s * (2 ** (attempt - 1)))
        return base + random.uniform(0, base / 2)

    def call(self, fn: Callable[[], T], *, operation: str = "operation") -> T:
        """Run *fn* until it succeeds or attempts are exhausted.

        The last exception is re-raised unchanged once attempts run out.
        """
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except self.retry_on as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "%s failed after %d attempt(s): %s",
                        operation, attempt, exc,
                    )
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.3fs: %s",
                    operation, attempt, self.max_attempts, delay, exc,
                )
                time.sleep(delay)
        raise AssertionError("unreachable")
