"""
Retry backoff policy for rescheduling failed jobs.
"""

from dataclasses import dataclass

from jobqueue.config import Settings, get_settings
from jobqueue.constants import RetryStrategy


@dataclass(frozen=True)
class RetryPolicy:
    """
    Computes the delay before a failed job becomes eligible again.

    FIXED waits base_delay every time. EXPONENTIAL doubles it per attempt
    already made, capped at max_delay.
    """

    strategy: RetryStrategy = RetryStrategy.FIXED
    base_delay: float = 60.0
    max_delay: float = 3600.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            strategy=settings.retry_strategy,
            base_delay=settings.retry_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )

    def delay_for(self, attempts: int, base_delay: float | None = None) -> float:
        """
        Seconds to wait before the next attempt.

        Args:
            attempts: Attempts made so far (at least 1 after a failure).
            base_delay: Per-job-type override of the base delay.
        """
        base = self.base_delay if base_delay is None else base_delay
        if self.strategy == RetryStrategy.EXPONENTIAL:
            return min(base * (2 ** max(attempts - 1, 0)), self.max_delay)
        return base
