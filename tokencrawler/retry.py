"""
Retry Policy
============
Exponential backoff and the retry decision for a single failed task.

Every phase shares this one policy; the PhaseRunner asks it whether a failed
task goes back on the queue and how long to wait first.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass

from .errors import CrawlerError, NetworkError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry decisions with exponential backoff.

    ``attempt`` is always the 0-based index of the attempt that just failed,
    so with ``max_retries=2`` a task is tried at most three times.
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

    max_retries: int = 2
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    exponential_base: float = 2.0
    jitter: bool = False

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_ms(self, attempt: int) -> int:
        """
        Delay before the retry that follows ``attempt``.

        Args:
            attempt: 0-based attempt number that just failed

        Returns:
            Delay in milliseconds (``base * 2^attempt``, capped)
        """
        delay = self.base_delay_ms * (self.exponential_base ** max(0, attempt))
        delay = min(delay, self.max_delay_ms)

        if self.jitter:
            # ±25% so retries from a burst of failures spread out
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return int(max(0, delay))

    def backoff_seconds(self, attempt: int) -> float:
        return self.backoff_ms(attempt) / 1000.0

    def is_transient(self, error: BaseException) -> bool:
        if isinstance(error, ValidationError):
            return False
        if isinstance(error, NetworkError):
            if error.status_code is not None:
                return error.status_code in self.RETRYABLE_STATUS_CODES or error.status_code >= 500
            return error.transient
        if isinstance(error, CrawlerError):
            return error.transient
        return False

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """
        Determine if a failed task should be retried.

        Permanent errors never retry; transient ones retry until
        ``max_retries`` extra attempts have been used.
        """
        if attempt >= self.max_retries:
            return False
        return self.is_transient(error)
