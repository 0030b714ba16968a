"""Retry delay policy for failed jobs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from jobqueue.core.config import BackoffStrategy

if TYPE_CHECKING:
    from jobqueue.core.config import QueueSettings


@dataclass(frozen=True)
class BackoffPolicy:
    """Computes how long a retried job waits before it is claimable again.

    Attributes:
        strategy: FIXED (same delay every retry) or EXPONENTIAL.
        base_seconds: Fixed delay, or the first retry's delay.
        max_seconds: Cap for exponential delays.
    """

    strategy: BackoffStrategy = BackoffStrategy.FIXED
    base_seconds: int = 300
    max_seconds: int = 3600

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> BackoffPolicy:
        return cls(
            strategy=settings.backoff_strategy,
            base_seconds=settings.backoff_base_seconds,
            max_seconds=settings.backoff_max_seconds,
        )

    def delay_for(self, attempt: int) -> timedelta:
        """Delay before the given retry (1 = first retry)."""
        if self.strategy == BackoffStrategy.FIXED:
            return timedelta(seconds=self.base_seconds)

        exponent = max(attempt, 1) - 1
        seconds = min(self.max_seconds, self.base_seconds * (2**exponent))
        return timedelta(seconds=seconds)
