"""
VoiceDoc Worker - Backoff

Two flavours of exponential backoff:

RetryPolicy
    Schedules the next attempt of a released job:
    ``base * 2**attempt_count + jitter`` seconds, jitter in ``[0, jitter_max)``.
    Pure; the random source is injectable for deterministic tests.

BackoffState
    Consecutive-failure backoff for the worker loop itself (claim errors,
    unexpected loop exceptions). Resets on the first success.

Usage:
    from voicedoc.workers.backoff import RetryPolicy

    policy = RetryPolicy()
    if policy.is_exhausted(job.attempt_count):
        ...
    run_at = policy.next_run_at(job.attempt_count)
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

DEFAULT_BASE_SECONDS = 60.0
DEFAULT_JITTER_SECONDS = 30.0
DEFAULT_MAX_ATTEMPTS = 5

# Loop backoff
INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2.0
BACKOFF_JITTER = 0.1  # 10% jitter to prevent thundering herd


@dataclass(frozen=True)
class RetryPolicy:
    """Retry schedule for released jobs."""

    base_seconds: float = DEFAULT_BASE_SECONDS
    jitter_max_seconds: float = DEFAULT_JITTER_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def next_run_delay(self, attempt_count: int) -> float:
        """
        Seconds until the job becomes eligible again.

        The result lies in ``[base*2**n, base*2**n + jitter_max)``.
        """
        if attempt_count < 0:
            raise ValueError("attempt_count must be >= 0")
        delay = self.base_seconds * (2**attempt_count)
        if self.jitter_max_seconds > 0:
            delay += self.rng.random() * self.jitter_max_seconds
        return delay

    def next_run_at(self, attempt_count: int, now: Optional[datetime] = None) -> datetime:
        """Absolute UTC time of the next eligible run."""
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.next_run_delay(attempt_count))

    def is_exhausted(self, attempt_count: int) -> bool:
        """True once the job has been claimed ``max_attempts`` times."""
        return attempt_count >= self.max_attempts


@dataclass
class BackoffState:
    """
    Tracks exponential backoff state for the worker loop.

    Attributes:
        consecutive_failures: Count of consecutive failures
        total_failures: Total failures since creation
    """

    consecutive_failures: int = 0
    total_failures: int = 0
    initial_delay: float = INITIAL_BACKOFF_SECONDS
    max_delay: float = MAX_BACKOFF_SECONDS

    def record_failure(self) -> float:
        """
        Record a failure and return the backoff delay to use.

        The delay grows exponentially up to ``max_delay`` with +/-10% jitter.
        """
        self.consecutive_failures += 1
        self.total_failures += 1

        delay = min(
            self.initial_delay * (BACKOFF_MULTIPLIER ** (self.consecutive_failures - 1)),
            self.max_delay,
        )
        jitter = delay * BACKOFF_JITTER * random.uniform(-1.0, 1.0)
        return max(self.initial_delay, delay + jitter)

    def record_success(self) -> None:
        """Reset consecutive failures. Total failure count is preserved."""
        self.consecutive_failures = 0
