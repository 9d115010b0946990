from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Callable, Optional

from newtube.config import get_settings
from newtube.embeddings.models.job import EmbeddingJob
from newtube.embeddings.services.job_errors import ErrorClass


class RetryManager:
    """
    Retry policy for embedding jobs.

    Backoff is exponential from base_delay, capped at max_delay, with equal
    jitter (half fixed, half random) so retries of jobs that failed together
    do not hit the inference service in lockstep.
    """

    def __init__(
        self,
        *,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        rng: Optional[Callable[[float, float], float]] = None,
    ):
        settings = get_settings()
        self.base_delay = (
            base_delay if base_delay is not None else settings.JOB_RETRY_BASE_DELAY_SECONDS
        )
        self.max_delay = (
            max_delay if max_delay is not None else settings.JOB_RETRY_MAX_DELAY_SECONDS
        )
        self._uniform = rng or random.uniform

    def with_overrides(
        self, *, base_delay: Optional[float] = None, max_delay: Optional[float] = None
    ) -> "RetryManager":
        if base_delay is None and max_delay is None:
            return self
        return RetryManager(
            base_delay=self.base_delay if base_delay is None else base_delay,
            max_delay=self.max_delay if max_delay is None else max_delay,
            rng=self._uniform,
        )

    def retries_left(self, job: EmbeddingJob) -> bool:
        return (job.retry_count or 0) < (job.max_retries or 0)

    def should_retry(self, job: EmbeddingJob, error_class: ErrorClass = ErrorClass.TRANSIENT) -> bool:
        if error_class == ErrorClass.FATAL:
            return False
        return self.retries_left(job)

    def can_resume(self, job: EmbeddingJob) -> bool:
        """A RETRYING job may re-enter RUNNING while retry_count <= max_retries."""
        return (job.retry_count or 0) <= (job.max_retries or 0)

    def backoff_delay(self, retry_count: int) -> float:
        """Delay in seconds before attempt number `retry_count` (1-based)."""
        if self.base_delay <= 0:
            return 0.0
        exponent = min(max(retry_count - 1, 0), 32)
        delay = min(self.base_delay * (2 ** exponent), self.max_delay)
        half = delay / 2.0
        return half + self._uniform(0.0, half)

    def next_attempt_at(self, retry_count: int, *, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.utcnow()
        return now + timedelta(seconds=self.backoff_delay(retry_count))
