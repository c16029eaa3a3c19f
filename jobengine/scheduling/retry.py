import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..models.job import Job, JobState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    retry_count: int
    delay: Optional[timedelta] = None
    run_at: Optional[datetime] = None


class RetryPolicy:
    """Exponential backoff bounded by a maximum number of retries.

    The n-th retry (0-based ``retry_count`` before it is consumed) waits
    ``backoff_base * 2 ** retry_count`` seconds, capped at ``backoff_max``.
    """

    def __init__(self, max_retries: int = 3, backoff_base: float = 2.0, backoff_max: float = 300.0):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if backoff_base < 0 or backoff_max < 0:
            raise ValueError("backoff values must be >= 0")
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
        )

    def backoff(self, retry_count: int) -> timedelta:
        # Cap the exponent so huge retry counts cannot overflow a float.
        exponent = min(max(retry_count, 0), 64)
        seconds = min(self.backoff_base * (2 ** exponent), self.backoff_max)
        return timedelta(seconds=seconds)

    def decide(self, retry_count: int, now: datetime) -> RetryDecision:
        if retry_count < self.max_retries:
            delay = self.backoff(retry_count)
            return RetryDecision(True, retry_count + 1, delay, now + delay)
        return RetryDecision(False, retry_count)

    def handle_failure(self, store, job: Job, detail: str, now: datetime) -> Job:
        """Reschedule or finalize a job whose execution failed."""
        decision = self.decide(job.retry_count, now)
        if decision.retry:
            logger.warning(
                f"Job {job.id} failed (attempt {job.retry_count + 1}), "
                f"retry {decision.retry_count}/{self.max_retries} in {decision.delay.total_seconds():g}s: {detail}"
            )
            return store.transition(
                job.id,
                [JobState.PROCESSING],
                JobState.SCHEDULED,
                retry_count=decision.retry_count,
                scheduled_for=decision.run_at,
                exception=None,
            )

        logger.error(f"Job {job.id} failed permanently after {job.retry_count} retries: {detail}")
        return store.transition(
            job.id,
            [JobState.PROCESSING],
            JobState.FAILED,
            completed_at=now,
            exception=detail,
        )
